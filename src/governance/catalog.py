"""
Schema catalog -- the known tables and columns of one database connection.

The catalog is an externally supplied, read-only snapshot.  Two adapters
are provided:

  - ``load_catalog(path)``   parses the ``catalog.yml`` layout
  - ``reflect_catalog(engine)`` reads live metadata through SQLAlchemy

Lookups are case-insensitive.  Table names may be schema-qualified
(``public.users``); a bare name also matches the unqualified part.
"""
from __future__ import annotations

from functools import cached_property
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field
from sqlalchemy import inspect
from sqlalchemy.engine import Engine

from src.core.config import get_settings
from src.core.logging import get_logger
from src.governance.extractor import match_table_key

logger = get_logger(__name__)


# ── Typed domain objects ─────────────────────────────────

class Column(BaseModel):
    name: str
    type: str = ""
    nullable: bool = True
    is_primary_key: bool = False
    is_foreign_key: bool = False


class Table(BaseModel):
    name: str
    columns: list[Column] = Field(default_factory=list)

    def column_names(self) -> list[str]:
        return [c.name for c in self.columns]


class Catalog(BaseModel):
    """Ordered sequence of tables for a database connection."""

    tables: list[Table] = Field(default_factory=list)

    # ── Convenience look-ups ─────────────────────────

    @cached_property
    def column_index(self) -> dict[str, set[str]]:
        index: dict[str, set[str]] = {}
        for t in self.tables:
            key = t.name.lower()
            index[key] = {c.name.lower() for c in t.columns}
        return index

    def table_key(self, name: str) -> str | None:
        """Return the catalog key for *name*, or ``None`` if unknown."""
        return match_table_key(name, self.column_index)

    def has_table(self, name: str) -> bool:
        return self.table_key(name) is not None

    def columns_of(self, name: str) -> set[str] | None:
        """Lower-cased column names of *name*, or ``None`` if the table is unknown."""
        key = self.table_key(name)
        return self.column_index[key] if key is not None else None

    def has_column(self, table: str, column: str) -> bool:
        cols = self.columns_of(table)
        return cols is not None and column.lower() in cols

    def ordered_columns(self, name: str) -> list[str] | None:
        """Lower-cased column names of *name* in table order (``None`` if unknown).

        Positional renames (``FROM users u(a, b)``) are mapped through this
        order, so it must be the database's ordinal order.
        """
        key = self.table_key(name)
        if key is None:
            return None
        for t in self.tables:
            if t.name.lower() == key:
                return [c.name.lower() for c in t.columns]
        return None

    def get_table_names(self) -> list[str]:
        return [t.name for t in self.tables]


# ── Parsing ──────────────────────────────────────────────

def _parse_table(raw: dict[str, Any]) -> Table:
    cols = []
    for c in raw.get("columns") or []:
        if isinstance(c, str):
            cols.append(Column(name=c))
        else:
            cols.append(Column(**c))
    return Table(name=raw["name"], columns=cols)


def parse_catalog(raw_yaml: dict[str, Any] | None) -> Catalog:
    if not raw_yaml:
        return Catalog()
    return Catalog(tables=[_parse_table(t) for t in raw_yaml.get("tables", [])])


def load_catalog(path: str | Path | None = None) -> Catalog:
    """Load a catalog snapshot from YAML (defaults to ``settings.catalog_file``)."""
    path = Path(path or get_settings().catalog_file)
    with open(path, encoding="utf-8") as f:
        raw = yaml.safe_load(f)
    catalog = parse_catalog(raw)
    logger.info("Catalog loaded  path=%s  tables=%d", path.name, len(catalog.tables))
    return catalog


def reflect_catalog(engine: Engine, schema: str | None = None) -> Catalog:
    """Build a catalog from live database metadata."""
    insp = inspect(engine)
    tables: list[Table] = []
    for table_name in insp.get_table_names(schema=schema):
        pk = set(insp.get_pk_constraint(table_name, schema=schema).get("constrained_columns") or [])
        fk: set[str] = set()
        for fk_def in insp.get_foreign_keys(table_name, schema=schema):
            fk.update(fk_def.get("constrained_columns") or [])
        columns = [
            Column(
                name=col["name"],
                type=str(col["type"]),
                nullable=bool(col.get("nullable", True)),
                is_primary_key=col["name"] in pk,
                is_foreign_key=col["name"] in fk,
            )
            for col in insp.get_columns(table_name, schema=schema)
        ]
        name = f"{schema}.{table_name}" if schema else table_name
        tables.append(Table(name=name, columns=columns))
    logger.info("Catalog reflected  tables=%d", len(tables))
    return Catalog(tables=tables)
