"""
Authorization service -- orchestrates safety -> sensitive fields -> schema ->
policy -> row filter -> column access -> (execute -> mask -> audit).

``authorize_and_rewrite`` is the pure decision: it either returns the SQL
that may be executed for the principal or raises a typed ``AuthError``.
``run_query`` adds execution, masking and the audit trail, and returns the
outcome (rows or the error) instead of raising.

Every call works on one catalog / policy snapshot; nothing is re-fetched
between stages and nothing is retried.
"""
from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Callable

from src.core.config import get_settings
from src.core.logging import get_logger
from src.db.audit_log import log_decision
from src.db.executor import execute_readonly
from src.governance.cache import PolicyCache
from src.governance.catalog import Catalog
from src.governance.column_access import enforce_column_access
from src.governance.errors import AuthError, SchemaViolation
from src.governance.extractor import (
    ReferenceExtractor,
    TextReferenceExtractor,
    clause_keywords,
    scan,
    segment_spans,
)
from src.governance.masking import mask_result as _mask_result
from src.governance.masking import OutputSources, resolve_output_sources
from src.governance.models import Principal, QueryResult
from src.governance.policy import CompiledPolicy, check_table_access, compile_policy
from src.governance.policy_store import PolicyStore, load_policy_store
from src.governance.row_filter import apply_row_filters
from src.governance.schema_validator import validate_schema
from src.governance.sensitive_fields import enforce_sensitive_fields, strip_sensitive_columns
from src.governance.sql_safety import statement_operation, validate_safety

logger = get_logger(__name__)


@dataclass
class AuthorizedQuery:
    """SQL cleared for execution plus what masking needs afterwards."""
    sql: str
    original_sql: str
    policy: CompiledPolicy
    applied_filters: list[str] = field(default_factory=list)
    output_sources: OutputSources = field(default_factory=OutputSources)
    tables: list[str] = field(default_factory=list)


@dataclass
class QueryOutcome:
    original_sql: str
    sql: str | None = None
    result: QueryResult | None = None
    error: AuthError | None = None
    execution_error: str | None = None
    applied_filters: list[str] = field(default_factory=list)
    latency_ms: int = 0

    @property
    def success(self) -> bool:
        return self.error is None and self.execution_error is None


def apply_limit(sql: str, limit: int | None) -> str:
    """Append ``LIMIT n`` to a SELECT whose final segment has no row limit."""
    if not limit or limit <= 0:
        return sql
    if not sql.lstrip().upper().startswith(("SELECT", "WITH", "(")):
        return sql
    _, top = scan(sql)
    a, b = segment_spans(top)[-1]
    keywords = clause_keywords(top[a:b])
    if "LIMIT" in keywords or "FETCH" in keywords:
        return sql
    return f"{sql.rstrip()} LIMIT {int(limit)}"


def _check_schema(sql: str, catalog: Catalog | None, extractor: ReferenceExtractor) -> None:
    mode = get_settings().schema_validation.lower()
    if mode == "off":
        return
    report = validate_schema(sql, catalog, extractor)
    if report.valid:
        return
    if mode == "warn":
        logger.warning("Schema validation (warn only): %s", report.errors)
        return
    raise SchemaViolation(report.errors, report.invalid_tables, report.invalid_columns)


def authorize_and_rewrite(
    sql: str,
    principal: Principal,
    connection_id: str,
    catalog: Catalog | None = None,
    *,
    store: PolicyStore | None = None,
    cache: PolicyCache | None = None,
    allow_all_ops: bool = False,
    limit: int | None = None,
    extractor: ReferenceExtractor | None = None,
) -> AuthorizedQuery:
    """Decide whether *principal* may run *sql* and return the SQL to execute.

    Parameters
    ----------
    sql : str
        Raw SQL from the caller.
    principal : Principal
        Authenticated caller.
    connection_id : str
        Target database connection; selects the policy record.
    catalog : Catalog, optional
        Schema snapshot.  Without it schema validation is skipped and
        unqualified columns are checked against every visible table.
    store : PolicyStore, optional
        Defaults to the YAML store at ``settings.policy_file``.
    cache : PolicyCache, optional
        Policy cache handle; no caching when omitted.
    allow_all_ops : bool
        Privileged mode for operator-configured tool SQL.
    limit : int, optional
        Row limit appended when the query has none (``settings.default_row_limit``
        when omitted; 0 disables).

    Raises
    ------
    AuthError
        Any rejection, as its concrete subclass.
    """
    settings = get_settings()
    extractor = extractor or TextReferenceExtractor()
    store = store if store is not None else load_policy_store()

    cleaned = validate_safety(sql, allow_all_ops=allow_all_ops)
    if settings.block_sensitive_fields:
        enforce_sensitive_fields(cleaned, catalog, extractor)
    _check_schema(cleaned, catalog, extractor)
    policy = compile_policy(principal, connection_id, store, cache)

    extraction = extractor.extract(cleaned)
    tables = extraction.table_names()
    rewritten, applied = cleaned, []
    if not policy.is_admin:
        if settings.enforce_table_allowlist:
            check_table_access(policy, tables, statement_operation(cleaned))
        rewritten, applied = apply_row_filters(cleaned, policy, principal, tables)
        # the caller's text is checked; injected predicates are administrator-authored
        enforce_column_access(cleaned, catalog, policy, extractor)

    rewritten = apply_limit(rewritten, settings.default_row_limit if limit is None else limit)
    logger.info(
        "Authorized  principal=%s  role=%s  tables=%s  filters=%d",
        principal.id, principal.role.value, tables, len(applied),
    )
    return AuthorizedQuery(
        sql=rewritten,
        original_sql=sql,
        policy=policy,
        applied_filters=applied,
        output_sources=resolve_output_sources(extraction, catalog),
        tables=tables,
    )


def mask_result(result: QueryResult, authorized: AuthorizedQuery | CompiledPolicy) -> QueryResult:
    """Apply the principal's masking rules to an executed result.

    Credential-like columns are then dropped when
    ``settings.block_sensitive_fields`` is on.
    """
    if isinstance(authorized, AuthorizedQuery):
        result = _mask_result(result, authorized.policy, authorized.output_sources)
    else:
        result = _mask_result(result, authorized)
    if get_settings().block_sensitive_fields:
        result = strip_sensitive_columns(result)
    return result


def run_query(
    sql: str,
    principal: Principal,
    connection_id: str,
    catalog: Catalog | None = None,
    *,
    store: PolicyStore | None = None,
    cache: PolicyCache | None = None,
    allow_all_ops: bool = False,
    limit: int | None = None,
    execute: bool = True,
    audit: bool = True,
    executor: Callable[[str], QueryResult] = execute_readonly,
) -> QueryOutcome:
    """End-to-end: raw SQL -> authorized, executed and masked result.

    When ``execute=False`` the rewritten SQL is returned without running it.
    Rejections come back in ``QueryOutcome.error``; driver failures in
    ``QueryOutcome.execution_error``.
    """
    t0 = time.perf_counter()
    outcome = QueryOutcome(original_sql=sql)
    logger.info(
        "run_query | principal=%s | role=%s | conn=%s | execute=%s",
        principal.id, principal.role.value, connection_id, execute,
    )

    status = "allowed"
    try:
        authorized = authorize_and_rewrite(
            sql, principal, connection_id, catalog,
            store=store, cache=cache, allow_all_ops=allow_all_ops, limit=limit,
        )
    except AuthError as exc:
        logger.warning("Query blocked  kind=%s  principal=%s", exc.kind, principal.id)
        outcome.error = exc
        status = "blocked"
    else:
        outcome.sql = authorized.sql
        outcome.applied_filters = authorized.applied_filters
        if execute:
            try:
                result = executor(authorized.sql)
                outcome.result = mask_result(result, authorized)
            except Exception as exc:
                logger.exception("SQL execution failed")
                outcome.execution_error = str(exc)
                status = "failed"

    outcome.latency_ms = int((time.perf_counter() - t0) * 1000)

    if audit:
        log_decision(
            principal_id=principal.id,
            organization_id=principal.organization_id,
            connection_id=connection_id,
            role=principal.role.value,
            original_sql=sql,
            final_sql=outcome.sql,
            status=status,
            error_kind=outcome.error.kind if outcome.error else None,
            error_message=outcome.error.message if outcome.error else outcome.execution_error,
            applied_filters=outcome.applied_filters,
            row_count=outcome.result.row_count if outcome.result else None,
            latency_ms=outcome.latency_ms,
        )
    return outcome
