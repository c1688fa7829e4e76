"""
Memory Cache Backend Module

In-process cache backend: an OrderedDict guarded by a re-entrant lock,
giving TTL expiry and least-recently-used eviction at a fixed capacity.
"""

import threading
import time
from collections import OrderedDict
from typing import Any, Callable, Dict, List, Optional, TypeVar

from hybrid_srs.common.logger import app_logger
from .base import CacheBackend, CacheResult
from .entry import CacheEntry

logger = app_logger.getChild("cache.memory")

K = TypeVar('K')
V = TypeVar('V')


class MemoryCacheBackend(CacheBackend[K, V]):
    """
    In-memory cache backend.

    - Thread-safe operations
    - LRU eviction when reaching ``max_size``
    - Expired entries are dropped on access and swept on every write
    - Hit, miss, eviction and expiration counters

    Concurrent writers to the same key race; the last write wins.
    """

    def __init__(
        self,
        max_size: int = 10000,
        default_ttl: Optional[float] = None,
        name: str = "memory",
        clock: Callable[[], float] = time.time
    ):
        """
        Args:
            max_size: Maximum number of entries to store
            default_ttl: TTL applied when ``set`` is called without one
            name: Name for this cache backend
            clock: Time source, injectable for tests
        """
        if max_size < 1:
            raise ValueError("max_size must be at least 1")
        self._cache: "OrderedDict[K, CacheEntry[V]]" = OrderedDict()
        self._lock = threading.RLock()
        self._max_size = max_size
        self._default_ttl = default_ttl
        self._name = name
        self._clock = clock

        self._hits = 0
        self._misses = 0
        self._evictions = 0
        self._expirations = 0

    @property
    def name(self) -> str:
        return self._name

    async def get(self, key: K) -> CacheResult[V]:
        with self._lock:
            entry = self._cache.get(key)

            if entry is None:
                self._misses += 1
                return CacheResult(success=False, hit=False, source=self.name, error="Key not found")

            if entry.is_expired():
                del self._cache[key]
                self._expirations += 1
                self._misses += 1
                return CacheResult(success=False, hit=False, source=self.name, error="Entry expired")

            entry.access()
            self._cache.move_to_end(key)
            self._hits += 1

            return CacheResult(
                success=True,
                value=entry.value,
                hit=True,
                ttl=entry.get_ttl(),
                source=self.name
            )

    async def set(self, key: K, value: V, ttl: Optional[float] = None) -> CacheResult[V]:
        effective_ttl = self._default_ttl if ttl is None else ttl
        with self._lock:
            entry = CacheEntry(value, ttl=effective_ttl, clock=self._clock)

            if key in self._cache:
                self._cache[key] = entry
                self._cache.move_to_end(key)
            else:
                self._cleanup_expired()
                if len(self._cache) >= self._max_size:
                    self._evict_entries()
                self._cache[key] = entry

            return CacheResult(
                success=True,
                value=value,
                hit=False,
                ttl=entry.get_ttl(),
                source=self.name
            )

    async def delete(self, key: K) -> bool:
        with self._lock:
            if key in self._cache:
                del self._cache[key]
                return True
            return False

    async def has(self, key: K) -> bool:
        with self._lock:
            entry = self._cache.get(key)
            if entry is None:
                return False
            if entry.is_expired():
                del self._cache[key]
                self._expirations += 1
                return False
            return True

    async def clear(self) -> bool:
        with self._lock:
            self._cache.clear()
            return True

    async def get_many(self, keys: List[K]) -> Dict[K, CacheResult[V]]:
        results = {}
        for key in keys:
            results[key] = await self.get(key)
        return results

    async def get_stats(self) -> Dict[str, Any]:
        with self._lock:
            total = self._hits + self._misses
            return {
                'backend': self.name,
                'size': len(self._cache),
                'max_size': self._max_size,
                'hits': self._hits,
                'misses': self._misses,
                'hit_rate': self._hits / total if total > 0 else 0.0,
                'evictions': self._evictions,
                'expirations': self._expirations
            }

    def _evict_entries(self) -> None:
        """Evict least recently used entries until there is room for one more."""
        while len(self._cache) >= self._max_size:
            evicted_key, _ = self._cache.popitem(last=False)
            self._evictions += 1
            logger.debug(f"Evicted cache entry {evicted_key}")

    def _cleanup_expired(self) -> None:
        now = self._clock()
        expired_keys = [key for key, entry in self._cache.items() if entry.is_expired(now)]
        for key in expired_keys:
            del self._cache[key]
            self._expirations += 1

    def __len__(self) -> int:
        with self._lock:
            return len(self._cache)
