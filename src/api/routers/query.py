"""POST /authorize, POST /query -- the authorization pipeline over HTTP."""
from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field

from src.api.deps import get_catalog, get_policy_cache, get_policy_store, resolve_principal
from src.core.logging import get_logger
from src.governance.cache import PolicyCache
from src.governance.catalog import Catalog
from src.governance.errors import AuthError
from src.governance.models import Principal
from src.governance.policy_store import PolicyStore
from src.pipeline.service import authorize_and_rewrite, run_query

logger = get_logger(__name__)
router = APIRouter()

_STATUS = {"schema_violation": 400, "empty_query": 400}


class QueryRequest(BaseModel):
    sql: str = Field(..., max_length=20_000, description="SQL submitted by the principal")
    principal: Principal = Field(..., description="Caller identity, as vouched for by the identity layer")
    connection_id: str = Field(..., min_length=1, description="Target database connection")
    limit: int | None = Field(None, ge=0, description="Row limit appended when the query has none")


class AuthorizeResponse(BaseModel):
    sql: str
    original_sql: str
    tables: list[str]
    applied_filters: list[str]


class QueryResponse(BaseModel):
    sql: str
    columns: list[str]
    rows: list[dict]
    row_count: int
    applied_filters: list[str]
    latency_ms: int


def _http_error(exc: AuthError) -> HTTPException:
    return HTTPException(status_code=_STATUS.get(exc.kind, 403), detail=exc.to_dict())


@router.post("/authorize", response_model=AuthorizeResponse)
def authorize_endpoint(
    req: QueryRequest,
    store: PolicyStore = Depends(get_policy_store),
    cache: PolicyCache = Depends(get_policy_cache),
    catalog: Catalog = Depends(get_catalog),
):
    """Dry-run: return the SQL that would be executed for the principal."""
    try:
        authorized = authorize_and_rewrite(
            req.sql, resolve_principal(req.principal), req.connection_id, catalog,
            store=store, cache=cache, limit=req.limit,
        )
    except AuthError as exc:
        raise _http_error(exc)

    return AuthorizeResponse(
        sql=authorized.sql,
        original_sql=authorized.original_sql,
        tables=authorized.tables,
        applied_filters=authorized.applied_filters,
    )


@router.post("/query", response_model=QueryResponse)
def query_endpoint(
    req: QueryRequest,
    store: PolicyStore = Depends(get_policy_store),
    cache: PolicyCache = Depends(get_policy_cache),
    catalog: Catalog = Depends(get_catalog),
):
    """Full pipeline: authorize -> rewrite -> execute read-only -> mask."""
    outcome = run_query(
        req.sql, resolve_principal(req.principal), req.connection_id, catalog,
        store=store, cache=cache, limit=req.limit,
    )
    if outcome.error is not None:
        raise _http_error(outcome.error)
    if outcome.execution_error is not None:
        raise HTTPException(status_code=500, detail=outcome.execution_error)

    result = outcome.result
    return QueryResponse(
        sql=outcome.sql or "",
        columns=result.columns if result else [],
        rows=result.rows if result else [],
        row_count=result.row_count if result else 0,
        applied_filters=outcome.applied_filters,
        latency_ms=outcome.latency_ms,
    )
