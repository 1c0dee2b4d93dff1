"""
Redis-backed window cache.

Windows are stored as JSON lists under a key prefix with EX set to the
window length, so Redis expires idle windows. lock() takes a Redis lock
so concurrent workers serialize the read-modify-write of a window.

Redis failures and lock timeouts surface as TRANSIENT_NETWORK
ServiceErrors (HTTP 503) rather than raw redis exceptions.
"""

import json
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

import redis.asyncio as redis
from redis.exceptions import LockError, RedisError

from ...core.errors import ErrorKind, ServiceError
from .memory import InMemoryWindowCache

logger = logging.getLogger(__name__)

KEY_PREFIX = "video_submission:ratelimit:"


def _unavailable(key: str, error: Exception) -> ServiceError:
    logger.error("Rate-limit cache unavailable", extra={"key": key, "error": str(error)})
    return ServiceError(
        ErrorKind.TRANSIENT_NETWORK,
        f"Rate-limit cache unavailable: {error}",
        code="rate_limit_unavailable",
        context={"key": key},
    )


class RedisWindowCache:

    def __init__(self, client: "redis.Redis", lock_timeout: float = 5.0) -> None:
        self._redis = client
        self._lock_timeout = lock_timeout

    @classmethod
    def from_url(cls, url: str) -> "RedisWindowCache":
        # Connects lazily on the first command
        return cls(redis.from_url(url, decode_responses=True))

    async def get(self, key: str) -> Optional[list[float]]:
        try:
            raw = await self._redis.get(KEY_PREFIX + key)
        except RedisError as e:
            raise _unavailable(key, e) from e
        if not raw:
            return None
        try:
            return [float(ts) for ts in json.loads(raw)]
        except (ValueError, TypeError) as e:
            logger.warning("Discarding unreadable rate-limit window", extra={"key": key, "error": str(e)})
            return None

    async def set(self, key: str, timestamps: list[float], ttl_seconds: int) -> None:
        try:
            await self._redis.set(KEY_PREFIX + key, json.dumps(timestamps), ex=max(1, int(ttl_seconds)))
        except RedisError as e:
            raise _unavailable(key, e) from e

    async def delete(self, key: str) -> None:
        try:
            await self._redis.delete(KEY_PREFIX + key)
        except RedisError as e:
            raise _unavailable(key, e) from e

    @asynccontextmanager
    async def lock(self, key: str) -> AsyncIterator[None]:
        lock = self._redis.lock(
            f"{KEY_PREFIX}lock:{key}",
            timeout=self._lock_timeout,
            blocking_timeout=self._lock_timeout,
        )
        try:
            acquired = await lock.acquire()
        except RedisError as e:
            raise _unavailable(key, e) from e
        if not acquired:
            logger.warning("Timed out waiting for rate-limit lock", extra={"key": key})
            raise ServiceError(
                ErrorKind.TRANSIENT_NETWORK,
                f"Timed out waiting for the rate-limit window of {key}",
                code="rate_limit_lock_timeout",
                context={"key": key},
            )
        try:
            yield
        finally:
            try:
                await lock.release()
            except LockError as e:
                # The lock outlived its timeout and another worker may hold it now
                logger.warning("Rate-limit lock expired before release", extra={"key": key, "error": str(e)})

    async def aclose(self) -> None:
        await self._redis.aclose()


def create_window_cache(redis_url: Optional[str]):
    """Redis if a URL is configured, otherwise a process-local cache."""
    if redis_url:
        logger.info("Using Redis for rate-limit windows")
        return RedisWindowCache.from_url(redis_url)
    logger.info("Using in-process cache for rate-limit windows")
    return InMemoryWindowCache()
