"""
Validates that a SQL query only references tables and columns that exist
in the catalog.

Checks performed:
  1. Every FROM / JOIN table is a catalog table
  2. Every qualified ``x.col`` resolves through the alias map to a catalog
     table that has ``col``
  3. Every unqualified column exists in at least one table visible to it
  4. Unknown names that match a SELECT alias are accepted (ORDER BY only
     looks at the aliases of the last UNION segment)

Columns of derived tables and CTEs are not checked: their shape is not in
the catalog.  Neither are whole-row values (``u.*`` inside an expression,
a bare table alias) and non-reserved keywords such as ``ROWS``, which may
be either a column or syntax.
"""
from __future__ import annotations

from dataclasses import dataclass, field

from src.core.logging import get_logger
from src.governance.catalog import Catalog
from src.governance.extractor import (
    DERIVED_TABLE,
    Clause,
    ColumnRef,
    ReferenceExtractor,
    TextReferenceExtractor,
    clean_sql,
    source_columns,
    whole_row_table,
)

logger = get_logger(__name__)

_QUERY_PREFIXES = ("SELECT", "WITH", "(")


@dataclass
class SchemaReport:
    valid: bool = True
    errors: list[str] = field(default_factory=list)
    invalid_tables: list[str] = field(default_factory=list)
    invalid_columns: list[tuple[str, str]] = field(default_factory=list)

    def _table(self, name: str) -> None:
        if name not in self.invalid_tables:
            self.invalid_tables.append(name)
            self.errors.append(f"Unknown table '{name}'.")

    def _column(self, table: str, column: str, message: str) -> None:
        if (table, column) not in self.invalid_columns:
            self.invalid_columns.append((table, column))
            self.errors.append(message)


def _alias_ok(ref: ColumnRef) -> bool:
    if ref.scope is None:
        return False
    aliases = ref.scope.order_aliases if ref.clause == Clause.ORDER_BY else ref.scope.query_aliases
    return ref.column.lower() in aliases


def validate_schema(
    sql: str,
    catalog: Catalog | None,
    extractor: ReferenceExtractor | None = None,
) -> SchemaReport:
    """Check *sql* against *catalog*.

    Parameters
    ----------
    sql : str
        Query text (raw or already cleaned).
    catalog : Catalog, optional
        When missing or empty, validation is skipped and the report is valid.
    extractor : ReferenceExtractor, optional
        Defaults to the text extractor.
    """
    report = SchemaReport()
    if catalog is None or not catalog.tables:
        return report
    cleaned = clean_sql(sql)
    if not cleaned.upper().startswith(_QUERY_PREFIXES):
        return report

    extraction = (extractor or TextReferenceExtractor()).extract(cleaned)

    for table in extraction.table_names():
        if not catalog.has_table(table):
            report._table(table)

    for ref in extraction.column_refs:
        scope = ref.scope
        if ref.keyword or whole_row_table(ref, catalog) is not None:
            continue
        if ref.table:
            resolved = scope.resolve(ref.table) if scope else None
            if resolved == DERIVED_TABLE:
                continue
            target = resolved or ref.table
            if not catalog.has_table(target):
                report._table(target)
                continue
            columns = source_columns(ref, target, catalog)
            if columns is not None and all(catalog.has_column(target, c) for c in columns):
                continue
            if _alias_ok(ref):
                continue
            report._column(target, ref.column, f"Unknown column '{ref.column}' in table '{target}'.")
            continue

        visible = scope.visible_table_names() if scope else []
        if not visible or (scope and scope.has_derived_sources()):
            continue
        if any(catalog.has_column(t, ref.column) for t in visible):
            continue
        if ref.column.lower() in scope.renamed_columns():
            continue
        if _alias_ok(ref) or ref.quoted:
            continue
        if not any(catalog.has_table(t) for t in visible):
            continue
        report._column(
            visible[0], ref.column,
            f"Unknown column '{ref.column}' (not in any of: {', '.join(visible)}).",
        )

    report.valid = not report.errors
    if not report.valid:
        logger.info("Schema validation failed: %s", report.errors)
    return report
