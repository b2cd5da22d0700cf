"""Base cache interface and in-memory implementation."""

import asyncio
import time
from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, Generic, TypeVar

K = TypeVar("K")  # Key type
V = TypeVar("V")  # Value type


@dataclass
class CacheEntry(Generic[V]):
    """Cache entry with value and expiry deadline."""

    value: V
    expires_at: float

    def is_expired(self, now: float) -> bool:
        """Check if cache entry is expired."""
        return now >= self.expires_at


class BaseCache(ABC, Generic[K, V]):
    """Base cache interface for all cache implementations."""

    @abstractmethod
    async def get(self, key: K) -> V | None:
        """Get value from cache.

        Args:
            key: Cache key

        Returns:
            Cached value if found and not expired, None otherwise
        """
        pass

    @abstractmethod
    async def set(self, key: K, value: V, ttl_seconds: int = 3600) -> None:
        """Set value in cache."""
        pass

    @abstractmethod
    async def delete(self, key: K) -> bool:
        """Delete value from cache.

        Returns:
            True if deleted, False if not found
        """
        pass

    @abstractmethod
    async def clear(self) -> None:
        """Clear all entries from cache."""
        pass


class InMemoryCache(BaseCache[K, V]):
    """In-memory cache implementation using a dictionary.

    Process-local only. A restart drops everything, which is fine because nothing in
    here is ever the system of record.
    """

    # Listen up future me, the timer is injectable so tests can fast-forward TTLs without
    # sleeping. It defaults to time.monotonic - wall clock jumps (NTP) don't expire entries.
    # Always "async with self._lock" before touching self._cache!
    def __init__(self, timer: Callable[[], float] = time.monotonic) -> None:
        """Initialize in-memory cache."""
        self._cache: dict[K, CacheEntry[V]] = {}
        self._lock = asyncio.Lock()
        self._timer = timer

    # Yo, get() evicts expired entries on read, so it has side effects even though it reads
    # like a pure getter. "not found" and "expired" both come back as None.
    async def get(self, key: K) -> V | None:
        """Get value from cache."""
        async with self._lock:
            entry = self._cache.get(key)
            if entry is None:
                return None

            if entry.is_expired(self._timer()):
                del self._cache[key]
                return None

            return entry.value

    async def set(self, key: K, value: V, ttl_seconds: int = 3600) -> None:
        """Set value in cache, overwriting any existing entry."""
        async with self._lock:
            self._cache[key] = CacheEntry(
                value=value,
                expires_at=self._timer() + ttl_seconds,
            )

    async def delete(self, key: K) -> bool:
        """Delete value from cache."""
        async with self._lock:
            return self._cache.pop(key, None) is not None

    async def clear(self) -> None:
        """Clear all entries from cache."""
        async with self._lock:
            self._cache.clear()

    async def cleanup_expired(self) -> int:
        """Remove expired entries from cache.

        Returns:
            Number of entries removed
        """
        async with self._lock:
            now = self._timer()
            expired_keys = [
                key for key, entry in self._cache.items() if entry.is_expired(now)
            ]
            for key in expired_keys:
                del self._cache[key]
            return len(expired_keys)

    # Not locked on purpose - stats are for monitoring, a slightly stale count is fine.
    def get_stats(self) -> dict[str, Any]:
        """Get cache statistics."""
        now = self._timer()
        total_entries = len(self._cache)
        expired_entries = sum(1 for entry in self._cache.values() if entry.is_expired(now))

        return {
            "total_entries": total_entries,
            "active_entries": total_entries - expired_entries,
            "expired_entries": expired_entries,
        }
