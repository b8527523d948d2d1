"""
Time-based cache with an injectable clock.

Used for token decimals and recent market prices. Tests pass a fake clock
instead of sleeping.
"""
from __future__ import annotations

import asyncio
import time
from typing import Awaitable, Callable, Generic, Hashable, Optional, TypeVar

V = TypeVar("V")


def is_expired(stored_at: float, now: float, ttl: float) -> bool:
    """True once ``ttl`` seconds have passed since ``stored_at``."""
    return now - stored_at >= ttl


class TTLCache(Generic[V]):
    """
    Map of key -> (value, stored_at) with a fixed time-to-live.

    Usage:
        cache = TTLCache(ttl_seconds=300)
        decimals = await cache.get_or_load(token, lambda: fetch_decimals(token))
    """

    def __init__(
        self,
        ttl_seconds: float,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be positive")
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: dict[Hashable, tuple[V, float]] = {}
        self._locks: dict[Hashable, asyncio.Lock] = {}
        self._last_prune = clock()

    def __len__(self) -> int:
        return len(self._entries)

    def get(self, key: Hashable) -> Optional[V]:
        """Cached value, or None when absent or expired."""
        entry = self._entries.get(key)
        if entry is None:
            return None
        value, stored_at = entry
        if is_expired(stored_at, self._clock(), self.ttl_seconds):
            del self._entries[key]
            return None
        return value

    def set(self, key: Hashable, value: V) -> None:
        now = self._clock()
        self._entries[key] = (value, now)
        # Sweep entries nobody reads again, at most once per TTL
        if is_expired(self._last_prune, now, self.ttl_seconds):
            self._prune(now)

    def _prune(self, now: float) -> None:
        expired = [
            k for k, (_, stored_at) in self._entries.items()
            if is_expired(stored_at, now, self.ttl_seconds)
        ]
        for k in expired:
            del self._entries[k]
        self._last_prune = now

    async def get_or_load(self, key: Hashable, loader: Callable[[], Awaitable[V]]) -> V:
        """
        Cached value, loading it on a miss.

        Concurrent misses for the same key share one load. A loader error
        propagates and nothing is cached.
        """
        value = self.get(key)
        if value is not None:
            return value

        lock = self._locks.setdefault(key, asyncio.Lock())
        async with lock:
            try:
                value = self.get(key)
                if value is not None:
                    return value
                value = await loader()
                self.set(key, value)
                return value
            finally:
                # Waiters keep their reference; later misses get a fresh lock
                if self._locks.get(key) is lock:
                    del self._locks[key]

    def invalidate(self, key: Hashable) -> None:
        self._entries.pop(key, None)

    def clear(self) -> None:
        self._entries.clear()
