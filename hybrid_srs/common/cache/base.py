"""
Base Cache Module

Defines the cache backend interface and the result type returned by every
cache operation.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, Generic, List, Optional, TypeVar

K = TypeVar('K')
V = TypeVar('V')


@dataclass
class CacheResult(Generic[V]):
    """
    Result of a cache operation.

    Attributes:
        success: Whether the operation was successful
        value: The value retrieved or stored
        hit: Whether the value was found in cache (for get operations)
        ttl: Remaining time-to-live in seconds, None when the entry never expires
        source: Name of the backend that served the operation
        error: Optional reason when the operation did not succeed
    """
    success: bool
    value: Optional[V] = None
    hit: bool = False
    ttl: Optional[float] = None
    source: Optional[str] = None
    error: Optional[str] = None


class CacheBackend(Generic[K, V], ABC):
    """
    Abstract interface for cache backends.

    Operations are coroutines so that a remote backend can be dropped in
    behind the same interface as the in-process one.
    """

    @property
    @abstractmethod
    def name(self) -> str:
        """Get the name of this cache backend."""
        pass

    @abstractmethod
    async def get(self, key: K) -> CacheResult[V]:
        """
        Retrieve a value from the cache.

        Args:
            key: The cache key

        Returns:
            CacheResult with the value and metadata
        """
        pass

    @abstractmethod
    async def set(self, key: K, value: V, ttl: Optional[float] = None) -> CacheResult[V]:
        """
        Store a value in the cache.

        Args:
            key: The cache key
            value: The value to cache
            ttl: Time-to-live in seconds; None uses the backend default

        Returns:
            CacheResult indicating success/failure
        """
        pass

    @abstractmethod
    async def delete(self, key: K) -> bool:
        pass

    @abstractmethod
    async def has(self, key: K) -> bool:
        pass

    @abstractmethod
    async def clear(self) -> bool:
        pass

    @abstractmethod
    async def get_many(self, keys: List[K]) -> Dict[K, CacheResult[V]]:
        pass

    @abstractmethod
    async def get_stats(self) -> Dict[str, Any]:
        """
        Get statistics about the cache.

        Returns:
            Dictionary containing cache statistics
        """
        pass
