"""
Policy record cache.

Policy lookups are keyed by (organization, connection, role); every
principal with the same role on the same connection shares one record, so
the cache sits in front of the ``PolicyStore`` and is passed explicitly to
``compile_policy``.  There is no module-level instance.

Entries expire ``ttl`` seconds after they were stored.  A policy editor
calls ``invalidate`` with the parts it changed: one role, a whole
connection, a whole organization, or everything.
"""
from __future__ import annotations

import threading
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any

from src.core.logging import get_logger
from src.governance.models import PolicyRecord

logger = get_logger(__name__)

DEFAULT_TTL_SECONDS = 300
DEFAULT_MAX_SIZE = 256

PolicyKey = tuple[str, str, str]


def policy_key(organization_id: str, connection_id: str, role: Any) -> PolicyKey:
    """Normalised cache key; roles compare case-insensitively."""
    role = getattr(role, "value", role)
    return (organization_id, connection_id, str(role).lower())


@dataclass
class _Slot:
    record: PolicyRecord
    expires_at: float


class PolicyCache:
    """Thread-safe, TTL-bounded LRU cache of policy records.

    Parameters
    ----------
    ttl : float
        Seconds a record stays valid after ``put``.
    max_size : int
        Capacity; the least recently used record is dropped when full.
    """

    def __init__(self, ttl: float = DEFAULT_TTL_SECONDS, max_size: int = DEFAULT_MAX_SIZE):
        self._slots: OrderedDict[PolicyKey, _Slot] = OrderedDict()
        self._lock = threading.Lock()
        self._ttl = ttl
        self._max_size = max_size
        self._hits = 0
        self._misses = 0

    def get(self, organization_id: str, connection_id: str, role: Any) -> PolicyRecord | None:
        key = policy_key(organization_id, connection_id, role)
        with self._lock:
            slot = self._slots.get(key)
            if slot is not None and slot.expires_at <= time.monotonic():
                del self._slots[key]
                slot = None
            if slot is None:
                self._misses += 1
                return None
            self._slots.move_to_end(key)
            self._hits += 1
        logger.debug("Policy cache hit  key=%s", key)
        return slot.record

    def put(self, organization_id: str, connection_id: str, role: Any, record: PolicyRecord) -> None:
        key = policy_key(organization_id, connection_id, role)
        with self._lock:
            self._slots[key] = _Slot(record, time.monotonic() + self._ttl)
            self._slots.move_to_end(key)
            while len(self._slots) > self._max_size:
                evicted, _ = self._slots.popitem(last=False)
                logger.debug("Policy cache evicted  key=%s", evicted)

    def invalidate(
        self,
        organization_id: str | None = None,
        connection_id: str | None = None,
        role: Any = None,
    ) -> int:
        """Drop every record matching the given key parts; no arguments clears all.

        Returns the number of records removed.
        """
        wanted = (
            organization_id,
            connection_id,
            None if role is None else policy_key("", "", role)[2],
        )
        with self._lock:
            doomed = [
                key for key in self._slots
                if all(w is None or w == part for w, part in zip(wanted, key))
            ]
            for key in doomed:
                del self._slots[key]
        if doomed:
            logger.info("Policy cache invalidated  removed=%d", len(doomed))
        return len(doomed)

    def cleanup_expired(self) -> int:
        """Drop expired records; returns how many were removed."""
        now = time.monotonic()
        with self._lock:
            expired = [key for key, slot in self._slots.items() if slot.expires_at <= now]
            for key in expired:
                del self._slots[key]
        return len(expired)

    def stats(self) -> dict[str, Any]:
        with self._lock:
            lookups = self._hits + self._misses
            return {
                "size": len(self._slots),
                "max_size": self._max_size,
                "ttl_seconds": self._ttl,
                "hits": self._hits,
                "misses": self._misses,
                "hit_rate": round(self._hits / lookups, 3) if lookups else 0.0,
            }
