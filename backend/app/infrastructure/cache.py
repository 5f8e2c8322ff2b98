"""
Challenge Deployer - Cache Infrastructure
In-memory TTL cache for challenge definitions
"""

import time
from dataclasses import dataclass
from typing import Callable, Dict, Generic, Hashable, Optional, TypeVar

import structlog

from app.core.metrics import CONFIG_CACHE_LOOKUPS

logger = structlog.get_logger(__name__)

V = TypeVar("V")


@dataclass(frozen=True)
class CacheEntry(Generic[V]):
    """Cached value with the clock reading at insertion."""
    value: V
    inserted_at: float


class TTLCache(Generic[V]):
    """
    Time-bounded in-memory cache.

    Expiry is passive: an entry is checked on read and evicted once its age
    reaches the TTL, so a stale value is never returned. sweep() purges
    expired entries in bulk.
    """

    def __init__(
        self,
        ttl: float,
        clock: Callable[[], float] = time.monotonic,
        name: str = "cache",
    ):
        """
        Initialize cache.

        Args:
            ttl: Entry lifetime in seconds (clock units)
            clock: Monotonic time source
            name: Name used in log events
        """
        if ttl <= 0:
            raise ValueError("ttl must be positive")
        self._ttl = ttl
        self._clock = clock
        self._name = name
        self._entries: Dict[Hashable, CacheEntry[V]] = {}

    @property
    def ttl(self) -> float:
        return self._ttl

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: Hashable) -> bool:
        return self.get(key) is not None

    def _is_fresh(self, entry: CacheEntry[V], now: float) -> bool:
        return now - entry.inserted_at < self._ttl

    def get(self, key: Hashable) -> Optional[V]:
        """
        Get a fresh value.

        Args:
            key: Cache key

        Returns:
            Cached value, or None when absent or expired
        """
        entry = self._entries.get(key)
        if entry is None:
            CONFIG_CACHE_LOOKUPS.labels(result="miss").inc()
            return None
        if not self._is_fresh(entry, self._clock()):
            self._entries.pop(key, None)
            CONFIG_CACHE_LOOKUPS.labels(result="expired").inc()
            logger.debug("Cache entry expired", cache=self._name, key=str(key))
            return None
        CONFIG_CACHE_LOOKUPS.labels(result="hit").inc()
        return entry.value

    def peek(self, key: Hashable) -> Optional[V]:
        """Like get(), but leaves the lookup counters untouched."""
        entry = self._entries.get(key)
        if entry is None or not self._is_fresh(entry, self._clock()):
            return None
        return entry.value

    def set(self, key: Hashable, value: V) -> None:
        """Insert or replace a value, stamped with the current clock."""
        self._entries[key] = CacheEntry(value=value, inserted_at=self._clock())

    def delete(self, key: Hashable) -> bool:
        """Remove a key; returns True if it was present."""
        return self._entries.pop(key, None) is not None

    def clear(self) -> None:
        self._entries.clear()

    def sweep(self) -> int:
        """
        Evict every expired entry.

        Returns:
            Number of evicted entries
        """
        now = self._clock()
        expired = [k for k, e in self._entries.items() if not self._is_fresh(e, now)]
        for key in expired:
            del self._entries[key]
        if expired:
            logger.debug("Cache swept", cache=self._name, evicted=len(expired))
        return len(expired)
