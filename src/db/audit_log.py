"""
Authorization audit log -- records every query -> decision -> result cycle.

The table is created automatically on first use via `ensure_audit_table()`.
Logging failures never fail the request; they are reported and swallowed.
"""
from __future__ import annotations

import json

from sqlalchemy import text
from sqlalchemy.engine import Engine

from src.core.logging import get_logger
from src.db.connection import get_engine

logger = get_logger(__name__)

_TABLE = "authz_audit_logs"

_ID_COLUMN = {
    "postgresql": "SERIAL PRIMARY KEY",
    "sqlite": "INTEGER PRIMARY KEY AUTOINCREMENT",
}

_CREATE_SQL = """
CREATE TABLE IF NOT EXISTS {table} (
    id              {id_column},
    principal_id    VARCHAR(120) NOT NULL,
    organization_id VARCHAR(120) NOT NULL,
    connection_id   VARCHAR(120) NOT NULL,
    role            VARCHAR(20) NOT NULL,
    original_sql    TEXT NOT NULL,
    final_sql       TEXT,
    status          VARCHAR(20) NOT NULL,   -- allowed | blocked | failed
    error_kind      VARCHAR(60),
    error_message   TEXT,
    applied_filters TEXT,                   -- JSON array
    row_count       INTEGER,
    latency_ms      INTEGER,
    created_at      TIMESTAMP NOT NULL DEFAULT CURRENT_TIMESTAMP
)
"""

_ensured: set[int] = set()


def ensure_audit_table(engine: Engine | None = None) -> None:
    """Create the audit table if it doesn't exist."""
    engine = engine or get_engine()
    ddl = _CREATE_SQL.format(
        table=_TABLE,
        id_column=_ID_COLUMN.get(engine.dialect.name, "INTEGER PRIMARY KEY"),
    )
    with engine.connect() as conn:
        conn.execute(text(ddl))
        conn.commit()
    _ensured.add(id(engine))
    logger.info("Audit table '%s' ensured", _TABLE)


def log_decision(
    *,
    principal_id: str,
    organization_id: str,
    connection_id: str,
    role: str,
    original_sql: str,
    final_sql: str | None,
    status: str,
    error_kind: str | None = None,
    error_message: str | None = None,
    applied_filters: list[str] | None = None,
    row_count: int | None = None,
    latency_ms: int | None = None,
) -> None:
    """Insert one row into the audit table."""
    insert_sql = text(f"""
        INSERT INTO {_TABLE}
            (principal_id, organization_id, connection_id, role,
             original_sql, final_sql, status, error_kind, error_message,
             applied_filters, row_count, latency_ms)
        VALUES
            (:principal_id, :organization_id, :connection_id, :role,
             :original_sql, :final_sql, :status, :error_kind, :error_message,
             :applied_filters, :row_count, :latency_ms)
    """)

    params = {
        "principal_id": principal_id,
        "organization_id": organization_id,
        "connection_id": connection_id,
        "role": role,
        "original_sql": original_sql,
        "final_sql": final_sql or None,
        "status": status,
        "error_kind": error_kind,
        "error_message": error_message,
        "applied_filters": json.dumps(applied_filters) if applied_filters else None,
        "row_count": row_count,
        "latency_ms": latency_ms,
    }

    try:
        engine = get_engine()
        if id(engine) not in _ensured:
            ensure_audit_table(engine)
        with engine.connect() as conn:
            conn.execute(insert_sql, params)
            conn.commit()
        logger.debug("Decision logged: status=%s principal=%s", status, principal_id)
    except Exception:
        logger.exception("Failed to write audit log -- continuing without logging")
