"""
FastAPI application entry-point.
"""
from __future__ import annotations

import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from src.api.deps import get_catalog, get_policy_store
from src.api.routers import catalog, query
from src.core.config import get_settings

app = FastAPI(
    title="SQL Authorization Gateway",
    version="0.1.0",
    description="Authorizes, rewrites and masks SQL against per-role data access policies",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[o.strip() for o in get_settings().cors_origins.split(",") if o.strip()],
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(query.router, tags=["Authorization"])
app.include_router(catalog.router, tags=["Catalog"])


@app.get("/health")
def health():
    """Liveness plus the size of the loaded policy and catalog snapshots."""
    return {
        "status": "ok",
        "policies": len(get_policy_store().records),
        "tables": len(get_catalog().tables),
    }


def run() -> None:
    """Serve the API with uvicorn on ``settings.api_port``."""
    uvicorn.run("src.api.main:app", host="0.0.0.0", port=get_settings().api_port)


if __name__ == "__main__":
    run()
