"""SQLAlchemy engine & connection helpers.

Single shared engine with connection pooling.  Authorized queries run
through `readonly_connection`, which puts the connection in read-only mode
for the duration of the query:

  - PostgreSQL: ``SET TRANSACTION READ ONLY`` + ``SET LOCAL statement_timeout``
  - SQLite:     ``PRAGMA query_only``
"""
from __future__ import annotations

from contextlib import contextmanager
from typing import Generator

from sqlalchemy import create_engine, text
from sqlalchemy.engine import Connection, Engine

from src.core.config import get_settings
from src.core.logging import get_logger

logger = get_logger(__name__)

_engine: Engine | None = None


def get_engine() -> Engine:
    """Return the shared SQLAlchemy engine (lazy-created, cached)."""
    global _engine
    if _engine is None:
        settings = get_settings()
        url = settings.database_url
        if url.startswith("sqlite"):
            _engine = create_engine(url, echo=False)
        else:
            _engine = create_engine(
                url,
                pool_pre_ping=True,
                pool_size=5,
                max_overflow=10,
                echo=False,
            )
        logger.info("DB engine created  dialect=%s", _engine.dialect.name)
    return _engine


def set_engine(engine: Engine | None) -> None:
    """Replace the shared engine (embedding applications, tests)."""
    global _engine
    _engine = engine


@contextmanager
def readonly_connection(timeout_ms: int | None = None) -> Generator[Connection, None, None]:
    """Yield a connection that cannot write.

    Guarantees that no writes can happen, even if the SQL slipped past the
    text checks.  The transaction is rolled back and the connection returned
    to the pool on exit.
    """
    engine = get_engine()
    dialect = engine.dialect.name
    conn = engine.connect()
    try:
        if dialect == "postgresql":
            conn.execute(text("SET TRANSACTION READ ONLY"))
            if timeout_ms:
                conn.execute(text(f"SET LOCAL statement_timeout = {int(timeout_ms)}"))
        elif dialect == "sqlite":
            conn.execute(text("PRAGMA query_only = ON"))
        yield conn
    finally:
        try:
            conn.rollback()
            if dialect == "sqlite":
                conn.execute(text("PRAGMA query_only = OFF"))
        finally:
            conn.close()
