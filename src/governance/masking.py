"""
Result masking.

Masked (but accessible) columns are transformed after execution:

  - ``full``     -> ``***``
  - ``hash``     -> first 12 hex chars of sha256(salt + "|" + value)
  - ``partial``  -> e-mail ``a***@domain``; 7-20 digit numbers keep the first
                    3 and last 2 digits; short values become ``*``; anything
                    else keeps its first and last character

A result column is masked when a masked source column feeds it, either by
name (policy column name matches the output name, also through the
executor's column-name map) or through the SELECT item that produced it
(so ``SELECT email AS contact`` is still masked).  Items are matched to
result columns by position, so unnamed expressions (``lower(email)``,
``phone || ''``) are covered too; when positions cannot be worked out, any
column not explained by name takes the strongest mask of every unnamed
item.  A whole-row source (``row_to_json(u.*)``) carries the strongest mask
of its table.  Several masks on one column resolve to the strongest:
full > hash > partial.
"""
from __future__ import annotations

import hashlib
import json
import re
from dataclasses import dataclass, field
from typing import Any

from src.core.config import get_settings
from src.governance.catalog import Catalog
from src.governance.extractor import (
    DERIVED_TABLE,
    ColumnRef,
    Extraction,
    Wildcard,
    candidate_tables,
    source_columns,
    whole_row_table,
    wildcard_tables,
)
from src.governance.models import MaskType, QueryResult
from src.governance.policy import CompiledPolicy

FULL_MASK = "***"

_STRENGTH = {MaskType.PARTIAL: 1, MaskType.HASH: 2, MaskType.FULL: 3}
_EMAIL_RE = re.compile(r"^([^@]+)@(.+)$", re.DOTALL)


def _as_text(value: Any) -> str:
    if isinstance(value, str):
        return value
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return str(value)
    return json.dumps(value, default=str)


def mask_value(value: Any, mask_type: MaskType, salt: str | None = None) -> Any:
    """Mask a single value.  ``None`` passes through unchanged."""
    if value is None:
        return None
    text = _as_text(value)

    if mask_type == MaskType.FULL:
        return FULL_MASK

    if mask_type == MaskType.HASH:
        salt = get_settings().masking_salt if salt is None else salt
        return hashlib.sha256(f"{salt}|{text}".encode()).hexdigest()[:12]

    m = _EMAIL_RE.match(text)
    if m:
        return f"{m.group(1)[:1]}***@{m.group(2)}"
    digits = re.sub(r"\D", "", text)
    if 7 <= len(digits) <= 20:
        return f"{digits[:3]}****{digits[-2:]}"
    if len(text) <= 2:
        return "*" * len(text)
    return f"{text[0]}***{text[-1]}"


def _stronger(a: MaskType | None, b: MaskType | None) -> MaskType | None:
    if a is None:
        return b
    if b is None:
        return a
    return a if _STRENGTH[a] >= _STRENGTH[b] else b


def build_mask_map(policy: CompiledPolicy) -> dict[str, MaskType]:
    """Column name (lower) -> strongest mask type across all tables."""
    out: dict[str, MaskType] = {}
    for (_table, column), mask_type in policy.masked_columns().items():
        out[column] = _stronger(out.get(column), mask_type)
    return out


# ── Output sources ───────────────────────────────────────

Source = tuple[str, str]     # (table, column); column "*" is the whole row


@dataclass
class _Slot:
    """A SELECT item: one result column, or a wildcard's run of columns.

    ``width`` is ``None`` for a wildcard whose column count is unknown; its
    ``sources[0]`` then applies to every column it expands to.
    """
    width: int | None
    sources: list[set[Source]]


@dataclass
class OutputSources:
    """The table columns that feed each result column of a query.

    ``by_name`` maps output names to their sources.  ``layouts`` holds one
    slot list per top-level segment and places result columns by position,
    which also covers unnamed items (``lower(email)``).  ``unplaced`` is the
    union of every unnamed item's sources, applied to columns that neither
    names nor positions can explain.
    """
    by_name: dict[str, set[Source]] = field(default_factory=dict)
    layouts: list[list[_Slot]] = field(default_factory=list)
    unplaced: set[Source] = field(default_factory=set)

    def place(self, width: int) -> list[set[Source]] | None:
        """Per-position sources for a result *width* columns wide, if decidable."""
        if not self.layouts:
            return None
        placed: list[set[Source]] = [set() for _ in range(width)]
        for layout in self.layouts:
            fixed = sum(s.width for s in layout if s.width is not None)
            open_slots = sum(1 for s in layout if s.width is None)
            if open_slots > 1 or fixed > width or (not open_slots and fixed != width):
                return None
            columns: list[set[Source]] = []
            for slot in layout:
                if slot.width is None:
                    columns.extend([slot.sources[0]] * (width - fixed))
                else:
                    columns.extend(slot.sources)
            for i, sources in enumerate(columns):
                placed[i] |= sources
        return placed


def _nested_sources(extraction: Extraction, catalog: Catalog | None) -> set[Source]:
    """Everything read inside sub-queries, derived tables and CTEs."""
    top = {id(s) for s in extraction.segments}
    out: set[Source] = set()
    for ref in extraction.column_refs:
        if ref.scope is None or id(ref.scope) in top:
            continue
        out |= _direct_sources(ref, catalog)
    for wc in extraction.wildcards:
        if id(wc.scope) not in top:
            out.update((t.lower(), "*") for t in wildcard_tables(wc))
    return out


def _direct_sources(ref: ColumnRef, catalog: Catalog | None) -> set[Source]:
    out: set[Source] = set()
    whole = whole_row_table(ref, catalog)
    if whole is not None and whole != DERIVED_TABLE:
        out.add((whole.lower(), "*"))
    if ref.column == "*":
        return out
    for table in candidate_tables(ref, catalog):
        columns = source_columns(ref, table, catalog)
        out.update((table.lower(), c.lower()) for c in (columns or ["*"]))
    return out


def _reads_derived(ref: ColumnRef, catalog: Catalog | None) -> bool:
    scope = ref.scope
    if scope is None:
        return False
    if whole_row_table(ref, catalog) == DERIVED_TABLE:
        return True
    if ref.table:
        return scope.resolve(ref.table) == DERIVED_TABLE
    return scope.has_derived_sources()


def _wildcard_slot(wc: Wildcard, catalog: Catalog | None, nested: set[Source]) -> _Slot:
    if wc.qualifier is None:
        items = list(wc.scope.tables)
        derived = bool(wc.scope.derived)
    else:
        found = wc.scope.table_ref(wc.qualifier)
        items = [found] if found is not None else []
        derived = found is None and wc.scope.resolve(wc.qualifier) == DERIVED_TABLE

    if not derived and catalog is not None:
        per_column: list[set[Source]] = []
        for t in items:
            ordered = catalog.ordered_columns(t.name)
            if ordered is None:
                break
            per_column.extend({(t.name.lower(), c)} for c in ordered)
        else:
            if items:
                return _Slot(len(per_column), per_column)

    # unknown width: real columns keep their names, renamed ones do not
    sources = set(nested) if derived else set()
    sources.update((t.name.lower(), "*") for t in items if t.column_aliases)
    return _Slot(None, [sources])


def resolve_output_sources(extraction: Extraction, catalog: Catalog | None = None) -> OutputSources:
    """Work out which table columns feed each result column.

    UNION segments contribute by position, so every segment's name for a
    position maps to the sources of that position in all segments.  An item
    reading a derived table or CTE is fed by everything the inner queries
    read.
    """
    nested = _nested_sources(extraction, catalog)

    def sources_of(refs: list[ColumnRef]) -> set[Source]:
        out: set[Source] = set()
        for ref in refs:
            out |= _direct_sources(ref, catalog)
            if _reads_derived(ref, catalog):
                out |= nested
        return out

    result = OutputSources()
    by_item: dict[int, set[Source]] = {}
    names: dict[int, set[str]] = {}
    item_sources: dict[int, set[Source]] = {}
    for proj in extraction.projections:
        sources = sources_of(proj.refs)
        item_sources[id(proj)] = sources
        by_item.setdefault(proj.position, set()).update(sources)
        if proj.name:
            names.setdefault(proj.position, set()).add(proj.name)
        else:
            result.unplaced |= sources
    for position, position_names in names.items():
        for name in position_names:
            result.by_name.setdefault(name, set()).update(by_item.get(position, set()))

    for seg in extraction.segments:
        items: list[tuple[int, _Slot]] = [
            (p.position, _Slot(1, [item_sources[id(p)]]))
            for p in extraction.projections if p.scope is seg
        ]
        for wc in extraction.wildcards:
            if wc.scope is seg:
                slot = _wildcard_slot(wc, catalog, nested)
                items.append((wc.position or 0, slot))
                if slot.width is None:
                    result.unplaced |= slot.sources[0]
        if items:
            result.layouts.append([slot for _, slot in sorted(items, key=lambda x: x[0])])
    return result


def _sources_mask(sources: set[Source], policy: CompiledPolicy) -> MaskType | None:
    mask: MaskType | None = None
    masked = policy.masked_columns()
    for table, column in sources:
        if column == "*":
            key = policy.table_key(table)
            for (t, _c), mask_type in masked.items():
                if t == key:
                    mask = _stronger(mask, mask_type)
            continue
        cp = policy.column_policy(table, column)
        if cp is not None and cp.accessible and cp.masked:
            mask = _stronger(mask, cp.mask_type or MaskType.PARTIAL)
    return mask


def mask_result(
    result: QueryResult,
    policy: CompiledPolicy,
    output_sources: OutputSources | None = None,
    salt: str | None = None,
) -> QueryResult:
    """Return a copy of *result* with masked columns transformed."""
    name_map = build_mask_map(policy)
    if not name_map:
        return result
    sources = output_sources or OutputSources()

    display_to_original = {d.lower(): o.lower() for o, d in result.column_name_map.items()}
    columns = list(result.columns)
    placed = sources.place(len(columns))

    feeding: dict[str, set[Source]] = {}
    for i, key in enumerate(columns):
        if placed is not None:
            feeding.setdefault(key, set()).update(placed[i])
    keys = list(columns)
    for row in result.rows:
        keys.extend(k for k in row if k not in keys)

    masks: dict[str, MaskType] = {}
    for key in keys:
        lower = key.lower()
        original = display_to_original.get(lower, lower)
        named = sources.by_name.get(original, set()) | sources.by_name.get(lower, set())
        found = named | feeding.get(key, set())
        if placed is None and not named:
            found |= sources.unplaced
        mask = _stronger(name_map.get(lower), name_map.get(original))
        mask = _stronger(mask, _sources_mask(found, policy))
        if mask is not None:
            masks[key] = mask
    if not masks:
        return result

    rows = [
        {k: mask_value(v, masks[k], salt) if k in masks else v for k, v in row.items()}
        for row in result.rows
    ]
    return result.model_copy(update={"rows": rows})
