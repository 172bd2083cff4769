"""
Column-level access enforcement.

Runs after safety, schema validation and row-filter injection, immediately
before execution.  Fails closed: when a reference cannot be attributed to a
single table, every candidate table's policy is checked and any deny wins.

Order of checks:
  1. ``SELECT *`` / ``alias.*``, and whole-row values (``row_to_json(u.*)``,
     ``to_jsonb(u)``, ``SELECT u FROM users u``), over a table that has an
     inaccessible column -> ``SelectStarBlocked``
  2. every column reference (projection, WHERE, JOIN ON, GROUP BY, HAVING,
     ORDER BY, sub-queries) is resolved to its candidate tables and checked
     -> ``ColumnAccessBlocked`` listing every offending ``table.column``

A column renamed in FROM (``users u(a, b)``) is checked under its real name;
when the catalog cannot say which column that is, every inaccessible column
of the table counts as referenced.

A bare ORDER BY item naming a SELECT alias of the final segment refers to
the output column, not a table column, and is skipped.  Aliases are never
skipped anywhere else.
"""
from __future__ import annotations

from src.core.logging import get_logger
from src.governance.catalog import Catalog
from src.governance.errors import ColumnAccessBlocked, SelectStarBlocked
from src.governance.extractor import (
    DERIVED_TABLE,
    Clause,
    ColumnRef,
    ReferenceExtractor,
    TextReferenceExtractor,
    candidate_tables,
    source_columns,
    whole_row_table,
    wildcard_tables,
)
from src.governance.policy import CompiledPolicy

logger = get_logger(__name__)


def _is_output_alias(ref: ColumnRef) -> bool:
    return (
        ref.clause == Clause.ORDER_BY
        and ref.bare
        and ref.scope is not None
        and ref.column.lower() in ref.scope.order_aliases
    )


def _check_whole_rows(tables: list[str], policy: CompiledPolicy) -> None:
    blocked: list[str] = []
    for table in tables:
        if policy.has_denied_columns(table) and table not in blocked:
            blocked.append(table)
    if blocked:
        logger.warning("SELECT * blocked on %s", blocked)
        raise SelectStarBlocked(blocked)


def enforce_column_access(
    sql: str,
    catalog: Catalog | None,
    policy: CompiledPolicy,
    extractor: ReferenceExtractor | None = None,
) -> None:
    """Raise if *sql* touches a column *policy* marks inaccessible.

    Parameters
    ----------
    sql : str
        The query as the caller wrote it (cleaned).
    catalog : Catalog, optional
        Used to attribute unqualified columns in multi-table scopes and to
        tell a bare table alias from a column.  Without it every visible
        table is a candidate and a name that matches an alias is a row.
    policy : CompiledPolicy
        Compiled permissions of the principal.
    """
    extraction = (extractor or TextReferenceExtractor()).extract(sql)

    row_tables = [t for wc in extraction.wildcards for t in wildcard_tables(wc)]
    column_refs: list[ColumnRef] = []
    for ref in extraction.column_refs:
        whole = whole_row_table(ref, catalog)
        if whole is not None and whole != DERIVED_TABLE:
            row_tables.append(whole)
        if ref.column != "*":
            column_refs.append(ref)
    _check_whole_rows(row_tables, policy)

    blocked: list[str] = []
    for ref in column_refs:
        if _is_output_alias(ref):
            continue
        for table in candidate_tables(ref, catalog):
            columns = source_columns(ref, table, catalog)
            if columns is None:
                columns = policy.denied_columns(table)
            for column in columns:
                cp = policy.column_policy(table, column)
                if cp is not None and not cp.accessible:
                    name = f"{table}.{column}"
                    if name not in blocked:
                        blocked.append(name)
    if blocked:
        logger.warning("Column access blocked: %s", blocked)
        raise ColumnAccessBlocked(blocked)
