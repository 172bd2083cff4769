"""
POST /catalog, GET /policy/cache/stats, POST /policy/cache/clear -- metadata endpoints.
"""
from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel

from src.api.deps import get_catalog, get_policy_cache, get_policy_store, resolve_principal
from src.governance.cache import PolicyCache
from src.governance.catalog import Catalog
from src.governance.errors import AuthError
from src.governance.models import Principal, Role
from src.governance.policy import compile_policy, filter_catalog
from src.governance.policy_store import PolicyStore

router = APIRouter()


class CatalogRequest(BaseModel):
    principal: Principal
    connection_id: str


class TableItem(BaseModel):
    name: str
    columns: list[str]


class CatalogResponse(BaseModel):
    tables: list[TableItem]


class CacheStatsResponse(BaseModel):
    size: int
    max_size: int
    ttl_seconds: float
    hits: int
    misses: int
    hit_rate: float


class CacheClearRequest(BaseModel):
    organization_id: str | None = None
    connection_id: str | None = None
    role: Role | None = None


@router.post("/catalog", response_model=CatalogResponse)
def principal_catalog(
    req: CatalogRequest,
    store: PolicyStore = Depends(get_policy_store),
    cache: PolicyCache = Depends(get_policy_cache),
    catalog: Catalog = Depends(get_catalog),
) -> CatalogResponse:
    """Return the tables and columns the principal is allowed to see."""
    try:
        policy = compile_policy(resolve_principal(req.principal), req.connection_id, store, cache)
    except AuthError as exc:
        raise HTTPException(status_code=403, detail=exc.to_dict())
    visible = filter_catalog(catalog, policy)
    return CatalogResponse(
        tables=[TableItem(name=t.name, columns=t.column_names()) for t in visible.tables]
    )


@router.get("/policy/cache/stats", response_model=CacheStatsResponse)
def cache_stats(cache: PolicyCache = Depends(get_policy_cache)) -> CacheStatsResponse:
    return CacheStatsResponse(**cache.stats())


@router.post("/policy/cache/clear")
def cache_clear(
    body: CacheClearRequest | None = None,
    cache: PolicyCache = Depends(get_policy_cache),
) -> dict:
    """Drop cached policy records matching *body*; no body flushes all and re-reads the policy file."""
    if body is None:
        get_policy_store.cache_clear()
        body = CacheClearRequest()
    return {"cleared": cache.invalidate(body.organization_id, body.connection_id, body.role)}
