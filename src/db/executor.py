"""
Read-only SQL executor.

Authorized queries run through `execute_readonly`, which:
  1. Opens a read-only connection (see ``readonly_connection``)
  2. Wraps the query in text() -- the SQL is the pipeline's rewritten text
  3. Converts Decimal/date/datetime to JSON-safe Python types
  4. Enforces the per-query timeout where the dialect supports it
"""
from __future__ import annotations

import datetime
import decimal
from typing import Any

from sqlalchemy import text

from src.core.config import get_settings
from src.core.logging import get_logger
from src.db.connection import readonly_connection
from src.governance.models import QueryResult

logger = get_logger(__name__)


def _serialise_value(val: Any) -> Any:
    """Convert DB types to JSON-serialisable Python types."""
    if isinstance(val, decimal.Decimal):
        return float(val)
    if isinstance(val, (datetime.date, datetime.datetime)):
        return val.isoformat()
    if isinstance(val, datetime.timedelta):
        return str(val)
    if isinstance(val, (bytes, bytearray, memoryview)):
        return bytes(val).hex()
    return val


def execute_readonly(
    sql: str,
    params: dict | None = None,
    timeout_ms: int | None = None,
) -> QueryResult:
    """Execute a read-only SQL query and return its columns and rows.

    Errors from the driver propagate unchanged (``sqlalchemy.exc.DBAPIError``
    and friends).
    """
    if timeout_ms is None:
        timeout_ms = get_settings().query_timeout_ms
    logger.info("Executing SQL (%d chars)", len(sql))

    with readonly_connection(timeout_ms) as conn:
        # without params, colons are literal text, not bind markers
        stmt = text(sql) if params else text(sql.replace(":", "\\:"))
        result = conn.execute(stmt, params or {})
        columns = list(result.keys()) if result.returns_rows else []
        rows = [
            {col: _serialise_value(val) for col, val in zip(columns, row)}
            for row in result.fetchall()
        ] if result.returns_rows else []

    logger.info("Returned %d rows", len(rows))
    return QueryResult(columns=columns, rows=rows)
