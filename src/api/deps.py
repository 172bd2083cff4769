"""
Shared collaborators for the HTTP layer.

The API process owns exactly one policy cache and one snapshot of the
policy store and catalog; each is built lazily and handed explicitly to
the pipeline on every request.

``resolve_principal`` is where the caller's identity enters the pipeline.
This service does not authenticate: the principal in a request body is
what an upstream identity layer vouches for, so the one claim that would
bypass every policy (``role: admin``) is refused unless
``settings.trust_client_admin`` says that layer is in place.  Privileged
tool mode (``allow_all_ops``) is not reachable over HTTP at all.
"""
from __future__ import annotations

from functools import lru_cache

from fastapi import HTTPException

from src.core.config import get_settings
from src.core.logging import get_logger
from src.governance.cache import PolicyCache
from src.governance.catalog import Catalog, load_catalog
from src.governance.models import Principal
from src.governance.policy_store import PolicyStore, load_policy_store

logger = get_logger(__name__)


@lru_cache
def get_policy_cache() -> PolicyCache:
    settings = get_settings()
    return PolicyCache(ttl=settings.policy_cache_ttl, max_size=settings.policy_cache_max_size)


@lru_cache
def get_policy_store() -> PolicyStore:
    return load_policy_store(get_settings().policy_file)


@lru_cache
def get_catalog() -> Catalog:
    return load_catalog(get_settings().catalog_file)


def resolve_principal(principal: Principal) -> Principal:
    """Accept the request's principal, or raise 403 for an untrusted admin claim."""
    if principal.is_admin and not get_settings().trust_client_admin:
        logger.warning("Admin claim refused  principal=%s", principal.id)
        raise HTTPException(
            status_code=403,
            detail={
                "error": "principal_not_trusted",
                "message": "The admin role cannot be asserted by the client.",
                "details": {"principal_id": principal.id, "role": principal.role.value},
            },
        )
    return principal
