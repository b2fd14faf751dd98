"""
In-process TTL cache for query results.

Process-local, unbounded by size: entries leave only through expiry or
explicit invalidation. Population is bounded by the number of distinct
(operation, user, parameters) keys, see ``cache_key``.
"""

import asyncio
from dataclasses import dataclass
from typing import Any, Callable, Hashable, Optional

import structlog

logger = structlog.get_logger(__name__)

CacheKey = Hashable


def cache_key(operation: str, user_id: str, *params: Any) -> tuple:
    """
    Compose a deterministic cache key.

    Tuples compare element-wise, so two logical queries only share a key when
    operation, user and every parameter are equal.
    """
    return (operation, user_id, *(str(p) for p in params))


@dataclass(frozen=True)
class CacheEntry:
    """One cached value with its storage time and lifetime in milliseconds."""

    key: CacheKey
    value: Any
    stored_at_ms: int
    ttl_ms: int

    def is_live(self, now_ms: int) -> bool:
        return now_ms - self.stored_at_ms < self.ttl_ms


class ResultCache:
    """
    Keyed TTL store of recent query results.

    An entry is visible only while ``now - stored_at < ttl``. Expired entries
    are dropped by the read that finds them or by ``clear_expired``.
    """

    def __init__(self, clock_ms: Callable[[], int]):
        """
        Args:
            clock_ms: Zero-argument callable returning epoch milliseconds
        """
        self._clock_ms = clock_ms
        self._entries: dict[CacheKey, CacheEntry] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def set(self, key: CacheKey, value: Any, ttl_ms: int) -> None:
        self._entries[key] = CacheEntry(
            key=key, value=value, stored_at_ms=self._clock_ms(), ttl_ms=ttl_ms
        )

    def lookup(self, key: CacheKey) -> Optional[CacheEntry]:
        """Return the live entry for ``key`` or None; purges it if expired."""
        entry = self._entries.get(key)
        if entry is None:
            return None
        if not entry.is_live(self._clock_ms()):
            del self._entries[key]
            return None
        return entry

    def get(self, key: CacheKey, default: Any = None) -> Any:
        entry = self.lookup(key)
        return default if entry is None else entry.value

    def invalidate(self, key: CacheKey) -> bool:
        return self._entries.pop(key, None) is not None

    def invalidate_prefix(self, prefix: tuple) -> int:
        """Drop every tuple key starting with ``prefix``. Returns the count removed."""
        size = len(prefix)
        doomed = [
            key for key in self._entries
            if isinstance(key, tuple) and key[:size] == prefix
        ]
        for key in doomed:
            del self._entries[key]
        return len(doomed)

    def clear_expired(self) -> int:
        """Remove all expired entries. Idempotent; returns the count removed."""
        now_ms = self._clock_ms()
        expired = [key for key, entry in self._entries.items() if not entry.is_live(now_ms)]
        for key in expired:
            del self._entries[key]
        if expired:
            logger.debug("cache_expired_entries_cleared", removed=len(expired))
        return len(expired)

    def clear(self) -> None:
        self._entries.clear()

    async def sweep_forever(self, interval_seconds: float) -> None:
        """Run ``clear_expired`` on a fixed cadence until cancelled."""
        while True:
            await asyncio.sleep(interval_seconds)
            self.clear_expired()
