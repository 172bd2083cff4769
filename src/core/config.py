"""
Centralised application settings loaded from environment / .env file.
"""
from __future__ import annotations

from pathlib import Path
from functools import lru_cache

from pydantic_settings import BaseSettings
from dotenv import load_dotenv

_ROOT = Path(__file__).resolve().parents[2]

# Load .env from project root (two levels up from this file)
_ENV_PATH = _ROOT / ".env"
load_dotenv(_ENV_PATH)


class Settings(BaseSettings):
    # ── Postgres ─────────────────────────────────────────
    postgres_user: str = "authz"
    postgres_password: str = "authz_pw"
    postgres_db: str = "analytics"
    postgres_host: str = "localhost"
    postgres_port: int = 5432
    database_url_override: str = ""
    query_timeout_ms: int = 10_000

    # ── Policy layer ─────────────────────────────────────
    policy_file: str = str(_ROOT / "policy_layer" / "policies.yml")
    catalog_file: str = str(_ROOT / "policy_layer" / "catalog.yml")
    policy_cache_ttl: float = 300.0
    policy_cache_max_size: int = 256
    schema_validation: str = "enforce"  # enforce | warn | off
    enforce_table_allowlist: bool = True
    masking_salt: str = "default-masking-salt"
    block_sensitive_fields: bool = True  # credentials / secrets, for every role

    # ── App ──────────────────────────────────────────────
    api_port: int = 8000
    cors_origins: str = "*"  # comma-separated
    trust_client_admin: bool = False  # accept role=admin from request bodies
    log_level: str = "INFO"
    default_row_limit: int = 0  # 0 = do not append LIMIT

    @property
    def database_url(self) -> str:
        if self.database_url_override:
            return self.database_url_override
        return (
            f"postgresql://{self.postgres_user}:{self.postgres_password}"
            f"@{self.postgres_host}:{self.postgres_port}/{self.postgres_db}"
        )

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"


@lru_cache
def get_settings() -> Settings:
    return Settings()
