"""Process-local window cache with passive expiry."""

import asyncio
import time
from collections import defaultdict
from typing import Callable, Optional


class InMemoryWindowCache:
    """
    Dictionary of key -> (expires_at, timestamps).

    Expired keys are dropped when read and on every write, so memory
    stays bounded by the keys active within one window. Only usable from
    a single event loop.
    """

    def __init__(self, monotonic: Callable[[], float] = time.monotonic) -> None:
        self._data: dict[str, tuple[float, list[float]]] = {}
        self._monotonic = monotonic
        self._key_locks: dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    async def get(self, key: str) -> Optional[list[float]]:
        item = self._data.get(key)
        if item is None:
            return None
        expires_at, timestamps = item
        if expires_at <= self._monotonic():
            del self._data[key]
            return None
        return list(timestamps)

    async def set(self, key: str, timestamps: list[float], ttl_seconds: int) -> None:
        now = self._monotonic()
        self._data[key] = (now + ttl_seconds, list(timestamps))
        self._evict_expired(now)

    async def delete(self, key: str) -> None:
        self._data.pop(key, None)

    def lock(self, key: str) -> asyncio.Lock:
        return self._key_locks[key]

    async def aclose(self) -> None:
        self._data.clear()

    def _evict_expired(self, now: float) -> None:
        expired = [k for k, (expires_at, _) in self._data.items() if expires_at <= now]
        for key in expired:
            del self._data[key]
            key_lock = self._key_locks.get(key)
            if key_lock is not None and not key_lock.locked():
                del self._key_locks[key]

    def __len__(self) -> int:
        return len(self._data)
