"""
Caching

In-process TTL + LRU cache used for embedding lookups, behind an async
backend interface.
"""

from hybrid_srs.common.cache.base import CacheBackend, CacheResult
from hybrid_srs.common.cache.entry import CacheEntry
from hybrid_srs.common.cache.memory import MemoryCacheBackend
from hybrid_srs.common.cache.key_builder import KeyBuilder

__all__ = [
    'CacheBackend',
    'CacheResult',
    'CacheEntry',
    'MemoryCacheBackend',
    'KeyBuilder',
]
