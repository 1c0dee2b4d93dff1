"""
Playback endpoints.

A viewer asks for a short-lived credential for one submitted video:
a signed Stream token on Cloudflare, a signed CloudFront URL on S3.
"""

import logging
from datetime import datetime, timezone
from typing import Optional

from fastapi import APIRouter, Query
from pydantic import BaseModel

from ...core.rate_limit import RateLimitScope
from ..dependencies import PlaybackServiceDep, PrincipalDep, RateLimiterDep

logger = logging.getLogger(__name__)

router = APIRouter()


class PlaybackCredentialResponse(BaseModel):
    success: bool = True
    credential: str
    expires_in_seconds: int
    kind: str


class RateLimitStatusResponse(BaseModel):
    success: bool = True
    scope: str
    limit: int
    used: int
    remaining: int
    reset_at: Optional[datetime] = None
    window_seconds: int


@router.get(
    "/playback-credential",
    response_model=PlaybackCredentialResponse,
    summary="Get a time-limited playback credential",
    responses={
        403: {"description": "Caller may not view this video"},
        429: {"description": "Playback rate limit exceeded (see Retry-After)"},
    },
)
async def get_playback_credential(
    principal: PrincipalDep,
    playback: PlaybackServiceDep,
    submission_id: int = Query(description="Submission the video belongs to"),
    remote_key: str = Query(description="Backend key of the video"),
) -> PlaybackCredentialResponse:
    """
    The owner, graders and site admins may view a video. Anyone else
    gets 403 permission_error.
    """
    credential = await playback.issue_credential(principal, submission_id, remote_key)
    return PlaybackCredentialResponse(
        credential=credential.credential,
        expires_in_seconds=credential.expires_in_seconds,
        kind=credential.kind,
    )


@router.get(
    "/rate-limit",
    response_model=RateLimitStatusResponse,
    summary="Current rate-limit usage for the caller",
)
async def get_rate_limit_status(
    principal: PrincipalDep,
    rate_limiter: RateLimiterDep,
    scope: RateLimitScope = Query(default=RateLimitScope.UPLOAD),
    context: str = Query(default="", description="Assignment id for uploads, video key for per-video playback"),
) -> RateLimitStatusResponse:
    current = await rate_limiter.status(scope, principal.user_id, context)
    return RateLimitStatusResponse(
        scope=scope.value,
        limit=current.limit,
        used=current.used,
        remaining=current.remaining,
        reset_at=(
            datetime.fromtimestamp(current.reset_at, tz=timezone.utc)
            if current.reset_at is not None else None
        ),
        window_seconds=current.window_seconds,
    )
