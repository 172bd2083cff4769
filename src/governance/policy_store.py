"""
Policy store adapters.

The pipeline only needs ``find(organization_id, connection_id, role)``,
returning the most recently updated matching record or ``None``.  Two
implementations are provided: an in-memory store (tests, embedding) and a
YAML-file store laid out like ``policy_layer/policies.yml``::

    policies:
      - id: analyst-main
        organization_id: acme
        database_connection_id: warehouse
        role: analyst
        updated_at: 2026-03-01T00:00:00Z
        table_permissions:
          - table_name: users
            column_permissions:
              - {column_name: ssn, accessible: false}
"""
from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Any, Iterable, Protocol

import yaml

from src.core.config import get_settings
from src.core.logging import get_logger
from src.governance.models import PolicyRecord, Role

logger = get_logger(__name__)


class PolicyStore(Protocol):
    def find(self, organization_id: str, connection_id: str, role: Role | str) -> PolicyRecord | None: ...


class InMemoryPolicyStore:
    """Holds policy records in a list; the latest ``updated_at`` wins."""

    def __init__(self, records: Iterable[PolicyRecord] = ()):
        self._records: list[PolicyRecord] = list(records)

    def add(self, record: PolicyRecord) -> None:
        self._records.append(record)

    @property
    def records(self) -> list[PolicyRecord]:
        return list(self._records)

    def find(self, organization_id: str, connection_id: str, role: Role | str) -> PolicyRecord | None:
        role = Role(role)
        matches = [
            r for r in self._records
            if r.organization_id == organization_id
            and r.database_connection_id == connection_id
            and r.role == role
        ]
        if not matches:
            return None
        if len(matches) > 1:
            logger.debug(
                "Multiple policies for org=%s conn=%s role=%s, using latest",
                organization_id, connection_id, role.value,
            )
        return max(matches, key=lambda r: r.updated_at)


def parse_policies(raw: dict[str, Any] | None) -> list[PolicyRecord]:
    if not raw:
        return []
    return [PolicyRecord(**p) for p in raw.get("policies") or []]


class YamlPolicyStore(InMemoryPolicyStore):
    """Policy records loaded from a YAML file."""

    def __init__(self, path: str | Path):
        self.path = Path(path)
        with open(self.path, encoding="utf-8") as f:
            raw = yaml.safe_load(f)
        records = parse_policies(raw)
        super().__init__(records)
        logger.info("Policies loaded  path=%s  records=%d", self.path.name, len(records))


@lru_cache(maxsize=4)
def load_policy_store(path: str | None = None) -> YamlPolicyStore:
    """Load (and memoise) the YAML policy store, defaulting to ``settings.policy_file``."""
    return YamlPolicyStore(path or get_settings().policy_file)
