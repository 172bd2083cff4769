"""
Policy compilation and table-level enforcement.

``compile_policy`` turns the stored policy record of a principal's role into
look-up structures used by the rest of the pipeline:

  - ``allowed_tables``           tables with an enabled permission entry
  - ``table_permission_map``     lower-cased table name -> TablePermission
  - ``column_permission_map``    table -> column -> ColumnPolicy

Access is deny-by-default: a non-admin without a policy record gets
``PolicyMissing``; a table without an entry is not readable.  Admins are
never restricted, but their masking rules (if a record exists) still apply.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Iterable, Mapping

from src.core.logging import get_logger
from src.governance.cache import PolicyCache
from src.governance.catalog import Catalog, Table
from src.governance.errors import PolicyMissing, TableAccessDenied
from src.governance.extractor import match_table_key
from src.governance.models import MaskType, Operation, PolicyRecord, Principal, TablePermission
from src.governance.policy_store import PolicyStore

logger = get_logger(__name__)


# ── Data classes ────────────────────────────────────────


@dataclass(frozen=True)
class ColumnPolicy:
    accessible: bool = True
    masked: bool = False
    mask_type: MaskType | None = None


@dataclass(frozen=True)
class CompiledPolicy:
    """Per-request view of a principal's permissions."""

    is_admin: bool
    record: PolicyRecord | None = None
    allowed_tables: frozenset[str] = frozenset()
    table_permission_map: Mapping[str, TablePermission] = field(default_factory=dict)
    column_permission_map: Mapping[str, Mapping[str, ColumnPolicy]] = field(default_factory=dict)

    def table_key(self, table: str) -> str | None:
        return match_table_key(table, self.table_permission_map)

    def table_permission(self, table: str) -> TablePermission | None:
        key = self.table_key(table)
        return self.table_permission_map[key] if key else None

    def column_policy(self, table: str, column: str) -> ColumnPolicy | None:
        key = self.table_key(table)
        if key is None:
            return None
        return self.column_permission_map.get(key, {}).get(column.lower())

    def denied_columns(self, table: str) -> list[str]:
        key = self.table_key(table)
        if key is None:
            return []
        return [col for col, cp in self.column_permission_map.get(key, {}).items() if not cp.accessible]

    def has_denied_columns(self, table: str) -> bool:
        return bool(self.denied_columns(table))

    def is_table_allowed(self, table: str, operation: Operation = Operation.SELECT) -> bool:
        if self.is_admin:
            return True
        tp = self.table_permission(table)
        return tp is not None and operation in tp.allowed_operations

    def masked_columns(self) -> dict[tuple[str, str], MaskType]:
        """``(table, column) -> mask type`` for every accessible masked column."""
        out: dict[tuple[str, str], MaskType] = {}
        for table, cols in self.column_permission_map.items():
            for col, cp in cols.items():
                if cp.accessible and cp.masked:
                    out[(table, col)] = cp.mask_type or MaskType.PARTIAL
        return out


# ── Compilation ─────────────────────────────────────────


def _lookup(principal: Principal, connection_id: str, store: PolicyStore, cache: PolicyCache | None) -> PolicyRecord | None:
    args = (principal.organization_id, connection_id, principal.role.value)
    if cache is not None:
        record = cache.get(*args)
        if record is not None:
            return record
    record = store.find(principal.organization_id, connection_id, principal.role)
    if record is not None and cache is not None:
        cache.put(*args, record)
    return record


def compile_policy(
    principal: Principal,
    connection_id: str,
    store: PolicyStore,
    cache: PolicyCache | None = None,
) -> CompiledPolicy:
    """Build the :class:`CompiledPolicy` for *principal* on *connection_id*.

    Raises
    ------
    PolicyMissing
        Non-admin principal whose role has no policy record.
    """
    record = _lookup(principal, connection_id, store, cache)

    if record is None:
        if principal.is_admin:
            return CompiledPolicy(is_admin=True)
        logger.warning(
            "No policy  org=%s conn=%s role=%s",
            principal.organization_id, connection_id, principal.role.value,
        )
        raise PolicyMissing(principal.role.value, connection_id)

    tables: dict[str, TablePermission] = {}
    columns: dict[str, dict[str, ColumnPolicy]] = {}
    for tp in record.table_permissions:
        if not tp.enabled:
            continue
        key = tp.table_name.lower()
        tables[key] = tp
        columns[key] = {
            cp.column_name.lower(): ColumnPolicy(
                accessible=cp.accessible,
                masked=cp.masked,
                mask_type=(cp.mask_type or MaskType.PARTIAL) if cp.masked else None,
            )
            for cp in tp.column_permissions
        }

    policy = CompiledPolicy(
        is_admin=principal.is_admin,
        record=record,
        allowed_tables=frozenset() if principal.is_admin else frozenset(tables),
        table_permission_map=tables,
        column_permission_map=columns,
    )
    logger.debug(
        "Compiled policy %s  role=%s  tables=%d", record.id, principal.role.value, len(tables),
    )
    return policy


# ── Enforcement ─────────────────────────────────────────


def check_table_access(
    policy: CompiledPolicy,
    tables: Iterable[str],
    operation: Operation = Operation.SELECT,
) -> None:
    """Raise ``TableAccessDenied`` if any of *tables* is not permitted."""
    if policy.is_admin:
        return
    denied: list[str] = []
    for table in tables:
        if not policy.is_table_allowed(table, operation) and table not in denied:
            denied.append(table)
    if denied:
        logger.warning("Table access denied: %s", denied)
        raise TableAccessDenied(denied)


def filter_catalog(catalog: Catalog, policy: CompiledPolicy) -> Catalog:
    """The part of *catalog* a principal may see: permitted tables, without denied columns."""
    if policy.is_admin:
        return catalog
    tables: list[Table] = []
    for table in catalog.tables:
        if not policy.is_table_allowed(table.name):
            continue
        columns = [
            c for c in table.columns
            if (cp := policy.column_policy(table.name, c.name)) is None or cp.accessible
        ]
        tables.append(Table(name=table.name, columns=columns))
    return Catalog(tables=tables)
