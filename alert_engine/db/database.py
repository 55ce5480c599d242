"""
Engine and session factory.

Every engine process must point at the same database: the suppression ledger
in it is what keeps alert dedup correct across processes, and the email job
leases in it are what keep workers from sending the same job twice.

The URL comes from ALERT_ENGINE_DB_URL (see AppSettings).
"""

from typing import Generator

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from alert_engine.config.settings import get_settings


def _enable_sqlite_foreign_keys(dbapi_connection, connection_record):
    dbapi_connection.execute("PRAGMA foreign_keys=ON")


def build_engine(url: str) -> Engine:
    """
    Create an engine for a database URL.

    - In-memory SQLite: one connection shared by every session (StaticPool)
    - File SQLite: default pool, so sessions really use separate connections
    - PostgreSQL: pooled, sized for consumer workers plus HTTP traffic
    """
    if url.startswith("sqlite"):
        kwargs = {"connect_args": {"check_same_thread": False}}
        if ":memory:" in url or url in ("sqlite://", "sqlite:///"):
            kwargs["poolclass"] = StaticPool
        sqlite_engine = create_engine(url, **kwargs)
        event.listen(sqlite_engine, "connect", _enable_sqlite_foreign_keys)
        return sqlite_engine

    return create_engine(
        url,
        pool_size=20,
        max_overflow=10,
        pool_pre_ping=True,  # Drop connections the server closed
        pool_recycle=3600,
    )


engine = build_engine(get_settings().database_url)

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def get_db() -> Generator[Session, None, None]:
    """FastAPI dependency yielding a request-scoped session."""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
