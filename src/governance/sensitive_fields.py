"""
Credential and secret fields.

Independent of any policy, and for every role including admin, a query may
not read a column whose name looks like a password, token, key or other
credential:

  - before execution, ``enforce_sensitive_fields`` rejects a query that
    references such a column anywhere, or reads a whole row
    (``SELECT *``, ``row_to_json(u.*)``) of a table the catalog says has one
    -> ``SensitiveFieldBlocked``
  - after execution, ``strip_sensitive_columns`` drops any result column
    with such a name (a ``SELECT *`` run without a catalog)

Controlled by ``settings.block_sensitive_fields``.
"""
from __future__ import annotations

import re

from src.core.logging import get_logger
from src.governance.catalog import Catalog
from src.governance.errors import SensitiveFieldBlocked
from src.governance.extractor import (
    DERIVED_TABLE,
    Clause,
    ReferenceExtractor,
    TextReferenceExtractor,
    candidate_tables,
    source_columns,
    whole_row_table,
    wildcard_tables,
)
from src.governance.models import QueryResult

logger = get_logger(__name__)

_SENSITIVE_PATTERNS = [
    r"password",
    r"passwd",
    r"pwd",
    r"(?:^|_)pass(?:_|$)",      # pass, pass_hash; not passenger / compass
    r"secret",
    r"token",
    r"api[_-]?key",
    r"credential",
    r"private[_-]?key",
    r"密码",
    r"口令",
    r"密钥",
    r"私钥",
    r"凭证",
]
_SENSITIVE_RE = re.compile("|".join(_SENSITIVE_PATTERNS), re.IGNORECASE)


def is_sensitive_field(name: str) -> bool:
    """True when *name* (optionally ``table.column``) looks like a credential."""
    if not name:
        return False
    return bool(_SENSITIVE_RE.search(name.rsplit(".", 1)[-1]))


def find_sensitive_fields(
    sql: str,
    catalog: Catalog | None = None,
    extractor: ReferenceExtractor | None = None,
) -> list[str]:
    """Credential-like columns *sql* reads, as ``table.column`` (or bare) names."""
    extraction = (extractor or TextReferenceExtractor()).extract(sql)
    found: list[str] = []

    def add(name: str) -> None:
        if name not in found:
            found.append(name)

    def whole_row(table: str, in_expression: bool) -> None:
        columns = catalog.ordered_columns(table) if catalog is not None else None
        if columns is None:
            # a bare SELECT * keeps real column names and is stripped from the result
            if in_expression:
                add(f"{table}.*")
            return
        for column in columns:
            if is_sensitive_field(column):
                add(f"{table}.{column}")

    for wc in extraction.wildcards:
        for table in wildcard_tables(wc):
            found_ref = wc.scope.table_ref(wc.qualifier or table)
            whole_row(table, in_expression=bool(found_ref and found_ref.column_aliases))

    for ref in extraction.column_refs:
        whole = whole_row_table(ref, catalog)
        if whole is not None and whole != DERIVED_TABLE:
            whole_row(whole, in_expression=True)
        if ref.column == "*":
            continue
        if ref.clause == Clause.ORDER_BY and ref.bare and ref.scope is not None \
                and ref.column.lower() in ref.scope.order_aliases:
            continue
        if is_sensitive_field(ref.column):
            tables = candidate_tables(ref, catalog)
            add(f"{tables[0]}.{ref.column}" if len(tables) == 1 else ref.column)
            continue
        for table in candidate_tables(ref, catalog):
            columns = source_columns(ref, table, catalog)
            if columns is None:
                whole_row(table, in_expression=True)
                continue
            for column in columns:
                if is_sensitive_field(column):
                    add(f"{table}.{column}")
    return found


def enforce_sensitive_fields(
    sql: str,
    catalog: Catalog | None = None,
    extractor: ReferenceExtractor | None = None,
) -> None:
    """Raise ``SensitiveFieldBlocked`` if *sql* reads a credential-like column."""
    found = find_sensitive_fields(sql, catalog, extractor)
    if found:
        logger.warning("Sensitive fields blocked: %s", found)
        raise SensitiveFieldBlocked(found)


def strip_sensitive_columns(result: QueryResult) -> QueryResult:
    """Return *result* without credential-like columns."""
    display_to_original = {d: o for o, d in result.column_name_map.items()}
    doomed = {
        key
        for key in list(result.columns) + [k for row in result.rows for k in row]
        if is_sensitive_field(key) or is_sensitive_field(display_to_original.get(key, ""))
    }
    if not doomed:
        return result
    logger.info("Sensitive result columns removed: %s", sorted(doomed))
    return result.model_copy(update={
        "columns": [c for c in result.columns if c not in doomed],
        "rows": [{k: v for k, v in row.items() if k not in doomed} for row in result.rows],
        "column_name_map": {o: d for o, d in result.column_name_map.items() if d not in doomed},
    })
