"""
Column types shared by the models and the migrations.

Each resolves to the native PostgreSQL type in production and to a portable
equivalent on SQLite, which the test suite runs on.
"""

from sqlalchemy import JSON, Uuid
from sqlalchemy.dialects.postgresql import JSONB


# JSONB on PostgreSQL, JSON text elsewhere
JSONDocument = JSON().with_variant(JSONB(), "postgresql")

# Native UUID on PostgreSQL, CHAR(32) elsewhere; Python values are uuid.UUID
UUIDColumn = Uuid(as_uuid=True)
