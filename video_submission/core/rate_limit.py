"""
Sliding-window rate limiting for upload and playback requests.

Each (scope, user, resource) key owns an ordered list of request
timestamps. A check prunes timestamps older than the window, rejects the
request if the remaining count has reached the limit, and otherwise
appends "now". The cache entry's TTL equals the window so idle keys
expire on their own.
"""

import logging
import math
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from .errors import ErrorKind, ServiceError
from .models import Clock, Principal, utc_now
from .ports import WindowCache

logger = logging.getLogger(__name__)

DEFAULT_UPLOAD_LIMIT = 10
DEFAULT_PLAYBACK_LIMIT = 100
DEFAULT_WINDOW_SECONDS = 3600


class RateLimitScope(Enum):
    UPLOAD = "upload"
    PLAYBACK = "playback"


@dataclass(frozen=True)
class RateLimitStatus:
    limit: int
    used: int
    remaining: int
    reset_at: Optional[float]
    window_seconds: int


def rate_limit_exceeded(scope: str, retry_after: int) -> ServiceError:
    return ServiceError(
        ErrorKind.RATE_LIMITED,
        f"Rate limit exceeded for {scope}. Retry after {retry_after} seconds",
        code=f"{scope}_rate_limit_exceeded",
        retry_after=retry_after,
        context={"scope": scope},
    )


class SlidingWindowRateLimiter:
    """
    Per-user request throttle.

    Upload windows are keyed by (user, assignment); playback windows by
    user alone unless per_resource_playback is set, in which case the
    video key is part of the window key too.
    """

    def __init__(
        self,
        cache: WindowCache,
        upload_limit: int = DEFAULT_UPLOAD_LIMIT,
        playback_limit: int = DEFAULT_PLAYBACK_LIMIT,
        window_seconds: int = DEFAULT_WINDOW_SECONDS,
        clock: Clock = utc_now,
        bypass_user_ids: frozenset[int] = frozenset(),
        per_resource_playback: bool = False,
    ) -> None:
        self._cache = cache
        self._limits = {
            RateLimitScope.UPLOAD: upload_limit,
            RateLimitScope.PLAYBACK: playback_limit,
        }
        self._window = window_seconds
        self._clock = clock
        self._bypass_user_ids = bypass_user_ids
        self._per_resource_playback = per_resource_playback

    async def check(self, user_id: int, scope_key: str, limit: int, window_seconds: int) -> None:
        """
        Record one request against `scope_key` or raise RATE_LIMITED.

        Raises:
            ServiceError(kind=RATE_LIMITED) with retry_after >= 1
        """
        now = self._clock().timestamp()
        window_start = now - window_seconds

        async with self._cache.lock(scope_key):
            requests = [ts for ts in (await self._cache.get(scope_key) or []) if ts > window_start]

            if len(requests) >= limit:
                oldest = min(requests)
                retry_after = max(1, math.ceil(oldest + window_seconds - now))
                logger.warning(
                    "Rate limit exceeded",
                    extra={
                        "user_id": user_id,
                        "key": scope_key,
                        "count": len(requests),
                        "limit": limit,
                        "retry_after": retry_after,
                    },
                )
                # Persist the pruned window so stale entries do not linger
                await self._cache.set(scope_key, requests, window_seconds)
                raise rate_limit_exceeded(scope_key.split(":", 1)[0], retry_after)

            requests.append(now)
            await self._cache.set(scope_key, requests, window_seconds)

    def is_exempt(self, principal: Principal) -> bool:
        """Site admins and holders of the bypass capability skip rate limits."""
        return (
            principal.is_site_admin
            or principal.can_bypass_rate_limit
            or principal.user_id in self._bypass_user_ids
        )

    async def apply(self, scope: RateLimitScope, principal: Principal, context: str = "") -> None:
        """Check the configured limit for `scope` unless the principal is exempt."""
        if self.is_exempt(principal):
            logger.debug(
                "Rate limit bypassed",
                extra={"user_id": principal.user_id, "scope": scope.value},
            )
            return
        await self.check(
            principal.user_id,
            self.key_for(scope, principal.user_id, context),
            self._limits[scope],
            self._window,
        )

    async def status(self, scope: RateLimitScope, user_id: int, context: str = "") -> RateLimitStatus:
        key = self.key_for(scope, user_id, context)
        limit = self._limits[scope]
        now = self._clock().timestamp()
        requests = [ts for ts in (await self._cache.get(key) or []) if ts > now - self._window]
        return RateLimitStatus(
            limit=limit,
            used=len(requests),
            remaining=max(0, limit - len(requests)),
            reset_at=(min(requests) + self._window) if requests else None,
            window_seconds=self._window,
        )

    async def reset(self, scope: RateLimitScope, user_id: int, context: str = "") -> None:
        key = self.key_for(scope, user_id, context)
        await self._cache.delete(key)
        logger.info("Rate limit reset", extra={"key": key})

    def key_for(self, scope: RateLimitScope, user_id: int, context: str = "") -> str:
        if scope == RateLimitScope.UPLOAD:
            return f"upload:{user_id}:{context}"
        if self._per_resource_playback and context:
            return f"playback:{user_id}:{context}"
        return f"playback:{user_id}"
