"""
Playback credential issuance.

Order of checks: identifiers, access gate, rate limit, then the backend
call. A request for someone else's video never consumes the caller's
playback budget.
"""

import logging

from .access import verify_video_access
from .audit import AuditLogger
from .errors import ServiceError
from .models import PlaybackCredential, Principal
from .ports import RemoteStorageClient, SubmissionDirectory, UploadRecordRepository
from .rate_limit import RateLimitScope, SlidingWindowRateLimiter
from .retry import RetryEngine
from .validation import validate_credential_ttl, validate_positive_id

logger = logging.getLogger(__name__)

DEFAULT_PLAYBACK_EXPIRY_SECONDS = 24 * 60 * 60


class PlaybackService:

    def __init__(
        self,
        storage: RemoteStorageClient,
        records: UploadRecordRepository,
        submissions: SubmissionDirectory,
        rate_limiter: SlidingWindowRateLimiter,
        retry: RetryEngine,
        audit: AuditLogger,
        expiry_seconds: int = DEFAULT_PLAYBACK_EXPIRY_SECONDS,
    ) -> None:
        self._storage = storage
        self._records = records
        self._submissions = submissions
        self._rate_limiter = rate_limiter
        self._retry = retry
        self._audit = audit
        self._expiry_seconds = validate_credential_ttl(expiry_seconds)

    async def issue_credential(self, principal: Principal, submission_id: int, remote_key: str) -> PlaybackCredential:
        """
        Issue a time-limited credential for one submitted video.

        Raises:
            ServiceError: VALIDATION, INVALID_IDENTIFIER, PERMISSION,
                RATE_LIMITED, or a backend error left after retries
        """
        submission_id = validate_positive_id(submission_id, "submission_id")
        remote_key = self._storage.validate_remote_key(remote_key)

        try:
            record = verify_video_access(
                principal,
                self._submissions.get(submission_id),
                self._records.get_by_submission(submission_id),
                remote_key,
            )
            await self._rate_limiter.apply(RateLimitScope.PLAYBACK, principal, remote_key)

            credential = await self._retry.execute_with_retry(
                lambda: self._storage.generate_playback_credential(remote_key, self._expiry_seconds),
                operation_name="generate_playback_credential",
                context={"user_id": principal.user_id, "submission_id": submission_id, "remote_key": remote_key},
            )
        except ServiceError as e:
            self._audit.log_playback_failure(principal, submission_id, remote_key, e)
            raise

        self._audit.log_playback_access(principal, record)
        logger.info(
            "Playback credential issued",
            extra={
                "user_id": principal.user_id,
                "submission_id": submission_id,
                "role": principal.role.value,
                "expires_in": credential.expires_in_seconds,
            },
        )
        return credential
