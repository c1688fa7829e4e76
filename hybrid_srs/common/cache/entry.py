"""
Cache Entry Module

Wraps a cached value with the timestamps needed for TTL expiry and LRU
bookkeeping.
"""

import time
from typing import Callable, Generic, Optional, TypeVar

V = TypeVar('V')


class CacheEntry(Generic[V]):
    """
    A cached value with expiry and access metadata.

    Attributes:
        value: The cached value
        created_at: When the entry was created (epoch seconds)
        expires_at: When the entry expires, or None for no expiration
        access_count: Number of reads served from this entry
        last_accessed: When the entry was last read
    """

    def __init__(
        self,
        value: V,
        ttl: Optional[float] = None,
        clock: Callable[[], float] = time.time
    ):
        """
        Args:
            value: The value to cache
            ttl: Time-to-live in seconds; None or 0 means no expiration
            clock: Time source, injectable for tests
        """
        self._clock = clock
        self.value = value
        self.created_at = clock()
        self.expires_at = self.created_at + ttl if ttl else None
        self.access_count = 0
        self.last_accessed = self.created_at

    def is_expired(self, now: Optional[float] = None) -> bool:
        if self.expires_at is None:
            return False
        now = self._clock() if now is None else now
        return now >= self.expires_at

    def access(self) -> None:
        self.access_count += 1
        self.last_accessed = self._clock()

    def get_age(self) -> float:
        return self._clock() - self.created_at

    def get_ttl(self) -> Optional[float]:
        """Remaining TTL in seconds, or None if the entry never expires."""
        if self.expires_at is None:
            return None
        return max(0.0, self.expires_at - self._clock())
