"""
CONFLUX™ — Request Cache Layer
Per-adapter TTL cache keyed by operation + parameters. Each entry carries its
own lifetime so live chains and slow-moving expirations share one store.
"""
import json
import math
import time
from typing import Any, Callable, Dict, Generic, Optional, TypeVar

from cachetools import TLRUCache

from conflux.data.models import CacheEntry
from conflux.utils.logger import get_logger

logger = get_logger("ttl_cache")

T = TypeVar("T")


def monotonic_ms() -> float:
    return time.monotonic() * 1000.0


def make_key(operation: str, *parts: Any, **params: Any) -> str:
    """Composite cache key: 'chain:SPY:{"limit":50}'."""
    segments = [operation] + [str(p) for p in parts]
    if params:
        clean = {k: v for k, v in params.items() if v is not None}
        segments.append(json.dumps(clean, sort_keys=True, default=str))
    return ":".join(segments)


def _entry_deadline(_key: str, entry: CacheEntry, _now: float) -> float:
    # cachetools treats an item as expired once now >= deadline; entries stay
    # valid while now - timestamp <= ttl_ms, so move the deadline one ulp out.
    return math.nextafter(entry.timestamp + entry.ttl_ms, math.inf)


class TTLCache(Generic[T]):
    """Lazily-expiring cache of CacheEntry values with hit/miss statistics."""

    def __init__(self, name: str = "cache", maxsize: int = 1024, clock: Callable[[], float] = monotonic_ms):
        self.name = name
        self._clock = clock
        self._store: TLRUCache = TLRUCache(maxsize=maxsize, ttu=_entry_deadline, timer=clock)
        self._hits = 0
        self._misses = 0
        self._evictions = 0

    def get(self, key: str) -> Optional[T]:
        """Return cached data, or None when absent or expired. Expired entries are purged here."""
        expired = self._store.expire()
        if expired:
            self._evictions += len(expired)
        entry: Optional[CacheEntry] = self._store.get(key)
        if entry is None or entry.is_expired(self._clock()):
            self._misses += 1
            return None
        self._hits += 1
        return entry.data

    def set(self, key: str, data: T, ttl_ms: float) -> None:
        if ttl_ms <= 0:
            return
        self._store[key] = CacheEntry(data=data, timestamp=self._clock(), ttl_ms=ttl_ms)

    def delete(self, key: str) -> None:
        self._store.pop(key, None)

    def clear(self) -> None:
        """Clear all entries."""
        self._store.clear()
        logger.info("cache_cleared", cache=self.name)

    def __len__(self) -> int:
        return len(self._store)

    @property
    def stats(self) -> Dict[str, Any]:
        """Return cache statistics."""
        lookups = self._hits + self._misses
        return {
            "name": self.name,
            "entries": len(self._store),
            "maxsize": self._store.maxsize,
            "hits": self._hits,
            "misses": self._misses,
            "evictions": self._evictions,
            "hit_rate": round(self._hits / lookups, 4) if lookups else 0.0,
        }
