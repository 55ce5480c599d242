"""
Database package: engine, session factory and Alembic migrations.
"""
