"""
Upload session lifecycle.

A student asks for an upload slot, sends the bytes straight to the video
backend, then asks us to confirm. This module owns the bookkeeping around
those three steps:

1. request_upload_session: rate limit, create the remote session, delete
   any video the submission already had (best-effort), persist a pending
   record.
2. confirm_upload: fetch remote metadata and move the record to
   uploading, ready or error.
3. cleanup_failed_upload / retry_upload: recover from a failed upload.

Remote calls go through the retry engine. No repository lock is held
while a remote call or a backoff sleep is in progress; the only critical
section is the repository's replace_for_submission(), which is atomic
per submission.
"""

import asyncio
import logging
from dataclasses import dataclass, field, replace
from typing import Optional

from .access import can_view
from .audit import AuditLogger
from .errors import ErrorKind, ServiceError
from .models import (
    Clock,
    Principal,
    RemoteState,
    SubmissionInfo,
    UploadRecord,
    UploadSession,
    UploadStatus,
    utc_now,
)
from .ports import RemoteStorageClient, SubmissionDirectory, UploadRecordRepository
from .rate_limit import RateLimitScope, SlidingWindowRateLimiter
from .retry import RetryEngine, is_benign_not_found
from .validation import (
    DEFAULT_MAX_FILE_SIZE,
    MAX_DURATION_SECONDS,
    validate_duration,
    validate_file_extension,
    validate_file_size,
    validate_mime_type,
    validate_positive_id,
    validate_record,
)

logger = logging.getLogger(__name__)

REMOTE_PROCESSING_FAILED = "Video processing failed on the remote store"
NO_RECORD_MESSAGE = "No upload record for this video on this submission"


def map_remote_state(state: RemoteState, treat_unknown_as_ready: bool = True) -> UploadStatus:
    """
    Local status for a remote processing state.

    An unknown state comes with a successful metadata fetch, so by
    default it counts as ready. With treat_unknown_as_ready=False it is
    kept as uploading and the next confirmation decides.
    """
    if state == RemoteState.READY:
        return UploadStatus.READY
    if state in (RemoteState.QUEUED, RemoteState.IN_PROGRESS):
        return UploadStatus.UPLOADING
    if state == RemoteState.ERROR:
        return UploadStatus.ERROR
    return UploadStatus.READY if treat_unknown_as_ready else UploadStatus.UPLOADING


@dataclass(frozen=True)
class IssuedUploadSession:
    upload_target: str
    remote_key: str
    submission_id: int
    form_fields: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class FailedUploadCleanup:
    """Outcome of a best-effort cleanup. Never raised, only reported."""
    deleted_remote: bool
    deleted_local: bool
    errors: tuple[str, ...] = ()


class UploadSessionTracker:
    """Persists upload lifecycle state, one record per submission."""

    def __init__(
        self,
        storage: RemoteStorageClient,
        records: UploadRecordRepository,
        submissions: SubmissionDirectory,
        rate_limiter: SlidingWindowRateLimiter,
        retry: RetryEngine,
        audit: AuditLogger,
        clock: Clock = utc_now,
        max_file_size: int = DEFAULT_MAX_FILE_SIZE,
        max_duration_seconds: int = MAX_DURATION_SECONDS,
        default_upload_duration_seconds: int = 1800,
        treat_unknown_as_ready: bool = True,
    ) -> None:
        self._storage = storage
        self._records = records
        self._submissions = submissions
        self._rate_limiter = rate_limiter
        self._retry = retry
        self._audit = audit
        self._clock = clock
        self._max_file_size = max_file_size
        self._max_duration = max_duration_seconds
        self._default_duration = default_upload_duration_seconds
        self._treat_unknown_as_ready = treat_unknown_as_ready

    # -------------------------------------------------------------------------
    # Upload session
    # -------------------------------------------------------------------------

    async def request_upload_session(
        self,
        principal: Principal,
        assignment_id: int,
        submission_id: Optional[int] = None,
        mime_type: Optional[str] = None,
        max_duration_seconds: Optional[int] = None,
    ) -> IssuedUploadSession:
        """
        Issue an upload slot and record it as pending.

        If the submission already has a video, that video is deleted from
        the backend before the new record is written. Failing to delete it
        is logged and does not block the new upload.

        Raises:
            ServiceError: RATE_LIMITED, VALIDATION, PERMISSION, or any
                backend error left after retries
        """
        assignment_id = validate_positive_id(assignment_id, "assignment_id")
        if submission_id is not None:
            submission_id = validate_positive_id(submission_id, "submission_id")

        # Shielded: once the remote session exists its record must be written
        # even if the caller stops waiting.
        return await asyncio.shield(
            self._request_upload_session(principal, assignment_id, submission_id, mime_type, max_duration_seconds)
        )

    async def request_resumable_session(
        self,
        principal: Principal,
        assignment_id: int,
        file_size: int,
        filename: str,
        submission_id: Optional[int] = None,
        max_duration_seconds: Optional[int] = None,
    ) -> IssuedUploadSession:
        """
        Like request_upload_session, but opens a resumable (TUS) upload
        for large files. Only backends with create_resumable_upload()
        support it.
        """
        if not hasattr(self._storage, "create_resumable_upload"):
            raise ServiceError(
                ErrorKind.VALIDATION,
                f"The {self._storage.backend_name} backend does not support resumable uploads",
                code="resumable_not_supported",
            )
        assignment_id = validate_positive_id(assignment_id, "assignment_id")
        if submission_id is not None:
            submission_id = validate_positive_id(submission_id, "submission_id")
        file_size = validate_file_size(file_size, self._max_file_size)
        validate_file_extension(filename)

        return await asyncio.shield(
            self._request_upload_session(
                principal,
                assignment_id,
                submission_id,
                None,
                max_duration_seconds,
                resumable=(file_size, filename),
            )
        )

    async def _request_upload_session(
        self,
        principal: Principal,
        assignment_id: int,
        submission_id: Optional[int],
        mime_type: Optional[str],
        max_duration_seconds: Optional[int],
        resumable: Optional[tuple[int, str]] = None,
    ) -> IssuedUploadSession:
        submission: Optional[SubmissionInfo] = None
        try:
            await self._rate_limiter.apply(RateLimitScope.UPLOAD, principal, str(assignment_id))

            submission = self._resolve_submission(principal, assignment_id, submission_id)
            duration = validate_duration(
                max_duration_seconds if max_duration_seconds is not None else self._default_duration,
                self._max_duration,
            )
            if mime_type:
                mime_type = validate_mime_type(mime_type)

            key_hint = f"{assignment_id}/{submission.submission_id}"

            async def create() -> UploadSession:
                if resumable is None:
                    return await self._storage.create_upload_session(
                        max_duration_seconds=duration,
                        max_file_size=self._max_file_size,
                        mime_type=mime_type,
                        key_hint=key_hint,
                    )
                file_size, filename = resumable
                return await self._storage.create_resumable_upload(
                    file_size=file_size,
                    filename=filename,
                    max_duration_seconds=duration,
                )

            operation_name = "create_upload_session" if resumable is None else "create_resumable_upload"
            session = await self._retry.execute_with_retry(
                create,
                operation_name=operation_name,
                context={"user_id": principal.user_id, "submission_id": submission.submission_id},
            )
        except ServiceError as e:
            self._audit.log_upload_failure(
                principal.user_id,
                assignment_id,
                submission.submission_id if submission else submission_id,
                None,
                e,
            )
            raise

        existing = self._records.get_by_submission(submission.submission_id)
        already_deleted: Optional[str] = None
        if existing and existing.remote_key and existing.remote_key != session.remote_key:
            logger.info(
                "Replacing existing video",
                extra={
                    "submission_id": submission.submission_id,
                    "old_remote_key": existing.remote_key,
                    "new_remote_key": session.remote_key,
                },
            )
            if existing.is_active:
                await self._delete_quietly(existing, "replacement")
            already_deleted = existing.remote_key

        record = validate_record(
            UploadRecord(
                submission_id=submission.submission_id,
                assignment_id=assignment_id,
                user_id=submission.owner_id,
                remote_key=session.remote_key,
                status=UploadStatus.PENDING,
                uploaded_at=self._clock(),
                id=existing.id if existing else None,
            ),
            self._max_file_size,
            self._max_duration,
        )
        displaced = self._records.replace_for_submission(record)

        # A concurrent request may have written its own record between our
        # read and the replace; that video is orphaned now.
        if (
            displaced
            and displaced.is_active
            and displaced.remote_key
            and displaced.remote_key not in (already_deleted, session.remote_key)
        ):
            await self._delete_quietly(displaced, "replacement")

        logger.info(
            "Upload session issued",
            extra={
                "user_id": principal.user_id,
                "assignment_id": assignment_id,
                "submission_id": submission.submission_id,
                "remote_key": session.remote_key,
            },
        )
        return IssuedUploadSession(
            upload_target=session.upload_target,
            remote_key=session.remote_key,
            submission_id=submission.submission_id,
            form_fields=dict(session.form_fields),
        )

    def _resolve_submission(
        self,
        principal: Principal,
        assignment_id: int,
        submission_id: Optional[int],
    ) -> SubmissionInfo:
        if submission_id is None:
            submission = self._submissions.get_or_create_for_user(assignment_id, principal.user_id)
        else:
            submission = self._submissions.get(submission_id)
            if submission is None:
                raise ServiceError(
                    ErrorKind.NOT_FOUND,
                    f"Submission {submission_id} does not exist",
                    code="submission_not_found",
                )
            if submission.assignment_id != assignment_id:
                raise ServiceError(
                    ErrorKind.VALIDATION,
                    "Submission does not belong to this assignment",
                    code="submission_assignment_mismatch",
                )
            if submission.owner_id != principal.user_id and not principal.is_site_admin:
                raise ServiceError(
                    ErrorKind.PERMISSION,
                    "You can only upload to your own submission",
                    code="permission_error",
                )

        if not submission.submissions_open:
            raise ServiceError(
                ErrorKind.PERMISSION,
                "Submissions are closed for this assignment",
                code="submissions_closed",
            )
        return submission

    # -------------------------------------------------------------------------
    # Confirmation
    # -------------------------------------------------------------------------

    async def confirm_upload(self, principal: Principal, remote_key: str, submission_id: int) -> UploadRecord:
        """
        Fetch metadata for an uploaded video and update its record.

        Remote state maps to local status: ready -> ready, queued or
        inprogress -> uploading, error -> error, anything else -> ready
        (unless configured otherwise). A backend failure marks the record
        as error and is re-raised.
        """
        submission_id = validate_positive_id(submission_id, "submission_id")
        remote_key = self._storage.validate_remote_key(remote_key)
        return await asyncio.shield(self._confirm_upload(principal, remote_key, submission_id))

    async def _confirm_upload(self, principal: Principal, remote_key: str, submission_id: int) -> UploadRecord:
        submission = self._submissions.get(submission_id)
        record = self._records.get_by_remote_key(remote_key)
        if submission is None or record is None or record.submission_id != submission_id:
            raise ServiceError(
                ErrorKind.INVALID_IDENTIFIER,
                f"No upload record for video {remote_key} on submission {submission_id}",
                code="invalid_identifier",
                context={"remote_key": remote_key, "submission_id": submission_id},
            )
        if not can_view(principal, submission.owner_id):
            raise ServiceError(
                ErrorKind.PERMISSION,
                "You do not have permission to confirm this upload",
                code="permission_error",
            )

        try:
            metadata = await self._retry.execute_with_retry(
                lambda: self._storage.get_object_metadata(remote_key),
                operation_name="get_object_metadata",
                context={"user_id": principal.user_id, "submission_id": submission_id, "remote_key": remote_key},
            )
        except ServiceError as e:
            self._record_failure(record, e)
            self._audit.log_upload_failure(
                principal.user_id, record.assignment_id, submission_id, remote_key, e,
            )
            raise

        status = map_remote_state(metadata.state, self._treat_unknown_as_ready)
        if metadata.state == RemoteState.UNKNOWN:
            logger.warning(
                "Remote store reported an unrecognized processing state",
                extra={"remote_key": remote_key, "mapped_status": status.value},
            )

        if status == UploadStatus.ERROR:
            updated = record.fail(REMOTE_PROCESSING_FAILED)
        else:
            updated = record.transition_to(status)

        if metadata.size is not None:
            updated = replace(updated, file_size=metadata.size)
        if metadata.duration_seconds is not None:
            updated = replace(updated, duration_seconds=metadata.duration_seconds)

        updated = validate_record(updated, self._max_file_size, self._max_duration)
        if not self._records.update(updated, expected_status=record.status):
            logger.info(
                "Upload was replaced or changed while confirming",
                extra={"submission_id": submission_id, "remote_key": remote_key},
            )
            raise ServiceError(
                ErrorKind.INVALID_TRANSITION,
                f"Upload {remote_key} was replaced or changed while it was being confirmed",
                code="upload_superseded",
                context={"remote_key": remote_key, "submission_id": submission_id},
            )

        logger.info(
            "Upload confirmed",
            extra={
                "submission_id": submission_id,
                "remote_key": remote_key,
                "remote_state": metadata.state.value,
                "status": updated.status.value,
            },
        )
        if updated.status == UploadStatus.READY:
            self._audit.log_upload_success(updated)
        elif updated.status == UploadStatus.ERROR:
            self._audit.log_upload_failure(
                principal.user_id,
                updated.assignment_id,
                submission_id,
                remote_key,
                ServiceError(ErrorKind.REMOTE, REMOTE_PROCESSING_FAILED, code="processing_error"),
            )
        return updated

    def _record_failure(self, record: UploadRecord, error: ServiceError) -> None:
        if not record.can_transition_to(UploadStatus.ERROR):
            return
        try:
            failed = validate_record(record.fail(error.message), self._max_file_size, self._max_duration)
            if not self._records.update(failed, expected_status=record.status):
                logger.info(
                    "Upload changed before its error could be recorded",
                    extra={"submission_id": record.submission_id, "remote_key": record.remote_key},
                )
        except Exception:
            logger.exception(
                "Failed to record upload error",
                extra={"submission_id": record.submission_id, "remote_key": record.remote_key},
            )

    # -------------------------------------------------------------------------
    # Recovery
    # -------------------------------------------------------------------------

    def retry_upload(self, principal: Principal, submission_id: int) -> UploadRecord:
        """Move a failed upload back to pending so the user can try again."""
        submission_id = validate_positive_id(submission_id, "submission_id")
        record = self._records.get_by_submission(submission_id)
        if record is None:
            raise ServiceError(
                ErrorKind.NOT_FOUND,
                f"No upload record for submission {submission_id}",
                code="record_not_found",
            )
        if record.user_id != principal.user_id and not principal.is_site_admin:
            raise ServiceError(
                ErrorKind.PERMISSION,
                "You can only retry your own uploads",
                code="permission_error",
            )

        previous_error = record.error_message
        updated = validate_record(record.retry(), self._max_file_size, self._max_duration)
        if not self._records.update(updated, expected_status=UploadStatus.ERROR):
            raise ServiceError(
                ErrorKind.INVALID_TRANSITION,
                f"Upload for submission {submission_id} changed before it could be retried",
                code="upload_superseded",
                context={"submission_id": submission_id},
            )
        self._audit.log_upload_retry(updated, previous_error)
        logger.info("Upload reset for retry", extra={"submission_id": submission_id})
        return updated

    async def cleanup_failed_upload(
        self,
        principal: Principal,
        remote_key: str,
        submission_id: int,
    ) -> FailedUploadCleanup:
        """
        Best-effort removal of an abandoned upload, remotely and locally.

        Input and permission errors raise. Everything after that is
        reported in the result: a remote NOT_FOUND counts as deleted, other
        failures leave deleted_remote False. A ready video is never
        touched by this path, and neither is a key with no record on
        this submission.
        """
        submission_id = validate_positive_id(submission_id, "submission_id")
        remote_key = self._storage.validate_remote_key(remote_key)

        record = self._records.get_by_remote_key(remote_key)
        if record is not None and record.user_id != principal.user_id and not principal.is_site_admin:
            raise ServiceError(
                ErrorKind.PERMISSION,
                "You can only clean up your own uploads",
                code="permission_error",
            )
        if record is None or record.submission_id != submission_id:
            # Ownership of an unrecorded key cannot be checked
            logger.warning(
                "No upload record for video on this submission",
                extra={"submission_id": submission_id, "remote_key": remote_key},
            )
            return FailedUploadCleanup(False, False, (NO_RECORD_MESSAGE,))
        if record.status == UploadStatus.READY:
            logger.warning(
                "Refusing to clean up a ready video",
                extra={"submission_id": submission_id, "remote_key": remote_key},
            )
            return FailedUploadCleanup(False, False, ("Video is ready and was not removed",))

        errors: list[str] = []
        deleted_remote = False
        try:
            await self._retry.execute_with_retry(
                lambda: self._storage.delete_object(remote_key),
                operation_name="delete_object",
                context={"user_id": principal.user_id, "submission_id": submission_id, "remote_key": remote_key},
            )
            deleted_remote = True
        except Exception as e:
            if is_benign_not_found(e):
                deleted_remote = True
            else:
                errors.append(f"remote: {e}")
                logger.warning(
                    "Failed to delete abandoned upload from remote store",
                    extra={"remote_key": remote_key, "error": str(e)},
                )

        deleted_local = False
        try:
            deleted_local = self._records.delete(submission_id, remote_key=remote_key)
        except Exception as e:
            errors.append(f"local: {e}")
            logger.exception("Failed to delete abandoned upload record", extra={"remote_key": remote_key})

        if deleted_remote:
            self._audit.log_video_deletion(record, "failed_upload", actor_id=principal.user_id)

        logger.info(
            "Cleaned up failed upload",
            extra={
                "submission_id": submission_id,
                "remote_key": remote_key,
                "deleted_remote": deleted_remote,
                "deleted_local": deleted_local,
            },
        )
        return FailedUploadCleanup(deleted_remote, deleted_local, tuple(errors))

    async def _delete_quietly(self, record: UploadRecord, deletion_type: str) -> bool:
        """Delete a replaced video. Any failure is logged and ignored."""
        try:
            await self._retry.execute_with_retry(
                lambda: self._storage.delete_object(record.remote_key),
                operation_name="delete_object",
                context={"submission_id": record.submission_id, "remote_key": record.remote_key},
            )
        except Exception as e:
            if is_benign_not_found(e):
                logger.info("Old video already gone", extra={"remote_key": record.remote_key})
                return True
            logger.warning(
                "Failed to delete old video",
                extra={"remote_key": record.remote_key, "error": str(e)},
            )
            return False
        self._audit.log_video_deletion(record, deletion_type)
        return True
