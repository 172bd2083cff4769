"""
Row-level filter construction and injection.

For every table whose permission has ``data_scope: user_related`` a
predicate restricting rows to the principal is AND-ed into the query:

  - ``row_level_filter`` template, with ``{{user_id}}``, ``{{user_email}}``,
    ``{{user_name}}`` and ``{{user_role}}`` substituted as-is (templates
    are administrator-authored)
  - otherwise an OR of equalities built from ``user_relation_fields``,
    qualified by the table alias, values quoted and escaped

Injection is applied to every UNION segment and every sub-query that
reads the table.  An existing WHERE is parenthesised before the filter is
AND-ed so an ``OR`` in the caller's predicate cannot widen the row set.
"""
from __future__ import annotations

from src.core.logging import get_logger
from src.governance.extractor import (
    TableRef,
    clause_keywords,
    clause_spans,
    names_match,
    scan,
    segment_spans,
    segment_tables,
    subquery_spans,
)
from src.governance.models import DataScope, Principal, TablePermission
from src.governance.policy import CompiledPolicy

logger = get_logger(__name__)

# clauses that end a WHERE body / mark the insertion point of a new WHERE
_AFTER_WHERE = ("GROUP BY", "HAVING", "WINDOW", "ORDER BY", "LIMIT", "OFFSET", "FETCH")


def _quote(value: str) -> str:
    return "'" + str(value).replace("'", "''") + "'"


def build_row_filter(tp: TablePermission, principal: Principal, qualifier: str | None = None) -> str | None:
    """Predicate text restricting *tp*'s table to *principal*, or ``None``."""
    if tp.row_level_filter and tp.row_level_filter.strip():
        text = tp.row_level_filter
        for name, value in (
            ("user_id", principal.id),
            ("user_email", principal.email),
            ("user_name", principal.display_name),
            ("user_role", principal.role.value),
        ):
            text = text.replace("{{" + name + "}}", value or "")
        return text.strip()

    rel = tp.user_relation_fields
    if rel is None:
        return None
    qualifier = qualifier or tp.table_name
    conditions = [
        f"{qualifier}.{col} = {_quote(value)}"
        for col, value in (
            (rel.user_id_col, principal.id),
            (rel.user_email_col, principal.email),
            (rel.user_name_col, principal.display_name),
        )
        if col and value
    ]
    return " OR ".join(conditions) or None


def _combine(filters: list[str]) -> str:
    return " AND ".join(f"({f})" for f in filters)


def _inject_where(segment: str, predicate: str) -> str:
    body = segment.rstrip()
    trailing = segment[len(body):]
    segment = body
    _, top = scan(segment)
    clauses = clause_spans(top)
    if "WHERE" in clauses:
        start, end = clauses["WHERE"]
        existing = segment[start:end].strip()
        rest = segment[end:].lstrip()
        out = f"{segment[:start]} ({existing}) AND {predicate}"
        return f"{out} {rest}{trailing}" if rest else f"{out}{trailing}"

    starts = clause_keywords(top)
    stops = [starts[name] for name in _AFTER_WHERE if name in starts]
    if not stops:
        return f"{segment} WHERE {predicate}{trailing}"
    at = min(stops)
    return f"{segment[:at].rstrip()} WHERE {predicate} {segment[at:]}{trailing}"


def _inject_query(sql: str, table: str, make_filter) -> tuple[str, list[str]]:
    _, top = scan(sql)
    out: list[str] = []
    applied: list[str] = []
    pos = 0
    for a, b in segment_spans(top):
        seg = sql[a:b]
        if not seg.strip():
            continue
        new_seg, seg_applied = _inject_segment(seg, table, make_filter)
        out.append(sql[pos:a])
        out.append(new_seg)
        applied.extend(seg_applied)
        pos = b
    out.append(sql[pos:])
    return "".join(out), applied


def _inject_segment(segment: str, table: str, make_filter) -> tuple[str, list[str]]:
    applied: list[str] = []

    lit, _ = scan(segment)
    for a, b in reversed(subquery_spans(lit)):
        inner, inner_applied = _inject_query(segment[a:b], table, make_filter)
        segment = segment[:a] + inner + segment[b:]
        applied = inner_applied + applied

    filters: list[str] = []
    for ref in segment_tables(segment):
        if not names_match(ref.name, table):
            continue
        f = make_filter(ref)
        if f:
            filters.append(f)
    if filters:
        segment = _inject_where(segment, _combine(filters))
        applied = filters + applied
    return segment, applied


def inject_row_filter(sql: str, table: str, tp: TablePermission, principal: Principal) -> str:
    """AND the row filter of *tp* into every place *sql* reads *table*."""
    sql, _ = _inject_table(sql, table, tp, principal)
    return sql


def _inject_table(sql: str, table: str, tp: TablePermission, principal: Principal) -> tuple[str, list[str]]:
    if tp.data_scope != DataScope.USER_RELATED:
        return sql, []

    def make_filter(ref: TableRef) -> str | None:
        return build_row_filter(tp, principal, ref.alias or ref.name)

    if build_row_filter(tp, principal) is None:
        logger.warning("Row filter skipped for '%s': no template or usable relation fields", table)
        return sql, []
    return _inject_query(sql, table, make_filter)


def apply_row_filters(
    sql: str,
    policy: CompiledPolicy,
    principal: Principal,
    tables: list[str],
) -> tuple[str, list[str]]:
    """Inject the filters of every user-scoped table in *tables*.

    Returns the rewritten SQL and ``"table: predicate"`` descriptions of the
    filters that were applied.
    """
    applied: list[str] = []
    done: set[str] = set()
    for table in tables:
        tp = policy.table_permission(table)
        if tp is None or tp.data_scope != DataScope.USER_RELATED:
            continue
        key = tp.table_name.lower()
        if key in done:
            continue
        done.add(key)
        sql, filters = _inject_table(sql, table, tp, principal)
        applied.extend(f"{tp.table_name}: {f}" for f in filters)
    if applied:
        logger.info("Row filters applied: %s", applied)
    return sql, applied
