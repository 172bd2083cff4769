"""
Deterministic SQL safety checks.

First gate of the pipeline.  Works purely on the SQL text:

  1. Empty input is rejected
  2. Comments are stripped and whitespace collapsed (``clean_sql``)
  3. Exactly one ``;``-delimited statement
  4. Default mode: the statement starts with a read verb and contains no
     write / DDL / privilege keyword anywhere as a whole word
  5. Dialect-dependent quoting (backslash-escaped quotes, $$, #) is rejected
  6. Privileged mode (operator-configured tool SQL): writes are allowed,
     schema-destroying and privilege statements still are not

The statement split ignores string literals on purpose: a ``;`` inside a
literal makes the query look like two statements and it is rejected.
"""
from __future__ import annotations

import re

from src.core.logging import get_logger
from src.governance.errors import EmptyQuery, ForbiddenOperation, MultiStatementRejected
from src.governance.extractor import clean_sql, scan
from src.governance.models import Operation

logger = get_logger(__name__)

# ── Compiled patterns ────────────────────────────────────

_FORBIDDEN_KW = re.compile(
    r"\b(INSERT|UPDATE|DELETE|DROP|CREATE|ALTER|TRUNCATE|GRANT|REVOKE|"
    r"EXEC|EXECUTE|MERGE|CALL|REPLACE|COMMIT|ROLLBACK|SAVEPOINT|COPY|LOAD)\b",
    re.IGNORECASE,
)

_PRIVILEGED_BLOCKED_KW = re.compile(
    r"\b(DROP|TRUNCATE|ALTER|CREATE|GRANT|REVOKE)\b",
    re.IGNORECASE,
)

_READ_VERB = re.compile(r"^\s*(SELECT|SHOW|DESCRIBE|DESC|EXPLAIN)\b", re.IGNORECASE)

_FIRST_WORD = re.compile(r"^\s*(\w+)")

_DOLLAR_QUOTE = re.compile(r"\$\w*\$")


def split_statements(sql: str) -> list[str]:
    """Non-empty ``;``-delimited statements of *sql*."""
    return [s.strip() for s in sql.split(";") if s.strip()]


def statement_operation(sql: str) -> Operation:
    """Operation a (validated) statement performs; read verbs map to SELECT."""
    m = _FIRST_WORD.match(sql)
    word = m.group(1).upper() if m else ""
    if word in ("INSERT", "UPDATE", "DELETE"):
        return Operation(word)
    return Operation.SELECT


def _ambiguous_quoting(sql: str) -> str | None:
    """Return the construct whose meaning depends on the SQL dialect, if any.

    Rewriting appends predicates to the query text, so the scanner and the
    database must agree on where literals and comments end.
    """
    backslash_lit, _ = scan(sql, backslash=True)
    standard_lit, _ = scan(sql, backslash=False)
    if backslash_lit != standard_lit:
        return "\\'"
    if _DOLLAR_QUOTE.search(backslash_lit):
        return "$$"
    if "#" in backslash_lit:
        return "#"
    return None


def validate_safety(sql: str, allow_all_ops: bool = False) -> str:
    """Validate *sql* and return its cleaned single statement.

    Parameters
    ----------
    sql : str
        Raw SQL as submitted by the caller.
    allow_all_ops : bool
        Privileged mode for operator-configured tool SQL.  Writes pass;
        DROP / TRUNCATE / ALTER / CREATE / GRANT / REVOKE still fail.

    Raises
    ------
    EmptyQuery, MultiStatementRejected, ForbiddenOperation
    """
    if not sql or not sql.strip():
        raise EmptyQuery()

    cleaned = clean_sql(sql)
    statements = split_statements(cleaned)
    if not statements:
        raise EmptyQuery()
    if len(statements) > 1:
        logger.warning("Rejected multi-statement SQL  statements=%d", len(statements))
        raise MultiStatementRejected(len(statements))
    statement = statements[0]

    construct = _ambiguous_quoting(statement)
    if construct:
        logger.warning("Rejected SQL with dialect-dependent quoting  construct=%s", construct)
        raise ForbiddenOperation(
            construct,
            f"'{construct}' is not permitted: backslash-escaped quotes, dollar quoting and '#' "
            "comments are read differently by different databases. Use doubled quotes ('') instead.",
        )

    if allow_all_ops:
        m = _PRIVILEGED_BLOCKED_KW.search(statement)
        if m:
            keyword = m.group(1).upper()
            logger.warning("Rejected privileged SQL  keyword=%s", keyword)
            raise ForbiddenOperation(
                keyword,
                f"'{keyword}' statements are not permitted, even for privileged tool queries.",
            )
        m = _FORBIDDEN_KW.search(statement)
        if m:
            logger.warning("Privileged SQL allowed  keyword=%s", m.group(1).upper())
        return statement

    if not _READ_VERB.match(statement):
        first = _FIRST_WORD.match(statement)
        keyword = first.group(1).upper() if first else statement[:1]
        logger.warning("Rejected non-read SQL  first_word=%s", keyword)
        raise ForbiddenOperation(
            keyword,
            "Only SELECT, SHOW, DESCRIBE and EXPLAIN queries are permitted.",
        )

    m = _FORBIDDEN_KW.search(statement)
    if m:
        keyword = m.group(1).upper()
        logger.warning("Rejected SQL with forbidden keyword  keyword=%s", keyword)
        raise ForbiddenOperation(keyword)

    return statement
