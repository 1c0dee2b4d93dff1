"""
Audit trail and privacy operations.

AuditLogger turns domain events into AuditLogEntry rows. Writing an
audit row must never break the operation being audited, so log_event()
reports failure through its return value and the module logger instead
of raising.

PrivacyService answers data-export requests and erases a user's data
on request: audit rows are deleted in bulk, remote videos are deleted
best-effort and their records marked deleted.
"""

import logging
from dataclasses import asdict
from typing import Any, Optional

from .errors import ServiceError
from .models import (
    AuditEvent,
    AuditLogEntry,
    CleanupReport,
    Clock,
    Principal,
    UploadRecord,
    UploadStatus,
    utc_now,
)
from .ports import AuditLogRepository, RemoteStorageClient, UploadRecordRepository
from .retry import describe_error, is_benign_not_found
from .validation import sanitize_error_message

logger = logging.getLogger(__name__)


def _error_code(error: BaseException) -> str:
    if isinstance(error, ServiceError):
        return error.code
    return type(error).__name__


class AuditLogger:
    """
    Writes audit entries for uploads, playback, deletions and retries.

    Usage:
        audit = AuditLogger(repository)
        audit.log_upload_success(record)
    """

    def __init__(self, repository: AuditLogRepository, clock: Clock = utc_now) -> None:
        self._repository = repository
        self._clock = clock

    def log_event(
        self,
        event_type: AuditEvent,
        *,
        user_id: Optional[int] = None,
        assignment_id: Optional[int] = None,
        submission_id: Optional[int] = None,
        remote_key: Optional[str] = None,
        error_code: Optional[str] = None,
        error_message: Optional[str] = None,
        context: Optional[dict[str, Any]] = None,
    ) -> bool:
        """Insert one entry. Returns False if the audit store rejected it."""
        entry = AuditLogEntry(
            event_type=event_type,
            timestamp=self._clock(),
            user_id=user_id,
            assignment_id=assignment_id,
            submission_id=submission_id,
            remote_key=remote_key,
            error_code=error_code,
            error_message=sanitize_error_message(error_message),
            context=context or {},
        )
        try:
            self._repository.insert(entry)
        except Exception:
            logger.exception(
                "Failed to write audit entry",
                extra={"event_type": event_type.value, "user_id": user_id},
            )
            return False
        return True

    # -------------------------------------------------------------------------
    # Uploads
    # -------------------------------------------------------------------------

    def log_upload_success(self, record: UploadRecord) -> bool:
        return self.log_event(
            AuditEvent.UPLOAD_SUCCESS,
            user_id=record.user_id,
            assignment_id=record.assignment_id,
            submission_id=record.submission_id,
            remote_key=record.remote_key,
            context={
                "file_size": record.file_size,
                "duration_seconds": record.duration_seconds,
            },
        )

    def log_upload_failure(
        self,
        user_id: int,
        assignment_id: int,
        submission_id: Optional[int],
        remote_key: Optional[str],
        error: BaseException,
        context: Optional[dict[str, Any]] = None,
    ) -> bool:
        return self.log_event(
            AuditEvent.UPLOAD_FAILURE,
            user_id=user_id,
            assignment_id=assignment_id,
            submission_id=submission_id,
            remote_key=remote_key,
            error_code=_error_code(error),
            error_message=str(error),
            context=context,
        )

    def log_upload_retry(self, record: UploadRecord, previous_error: Optional[str]) -> bool:
        return self.log_event(
            AuditEvent.UPLOAD_RETRY,
            user_id=record.user_id,
            assignment_id=record.assignment_id,
            submission_id=record.submission_id,
            remote_key=record.remote_key,
            error_message=previous_error,
        )

    # -------------------------------------------------------------------------
    # Playback and deletion
    # -------------------------------------------------------------------------

    def log_playback_access(self, principal: Principal, record: UploadRecord) -> bool:
        return self.log_event(
            AuditEvent.PLAYBACK_ACCESS,
            user_id=principal.user_id,
            assignment_id=record.assignment_id,
            submission_id=record.submission_id,
            remote_key=record.remote_key,
            context={"user_role": principal.role.value},
        )

    def log_playback_failure(
        self,
        principal: Principal,
        submission_id: Optional[int],
        remote_key: Optional[str],
        error: BaseException,
    ) -> bool:
        return self.log_event(
            AuditEvent.PLAYBACK_FAILURE,
            user_id=principal.user_id,
            submission_id=submission_id,
            remote_key=remote_key,
            error_code=_error_code(error),
            error_message=str(error),
            context={"user_role": principal.role.value},
        )

    def log_video_deletion(
        self,
        record: UploadRecord,
        deletion_type: str,
        actor_id: Optional[int] = None,
    ) -> bool:
        """deletion_type is one of: retention, replacement, stuck, failed_upload, privacy, remote_missing."""
        return self.log_event(
            AuditEvent.VIDEO_DELETION,
            user_id=actor_id if actor_id is not None else record.user_id,
            assignment_id=record.assignment_id,
            submission_id=record.submission_id,
            remote_key=record.remote_key,
            context={"deletion_type": deletion_type, "owner_id": record.user_id},
        )

    def log_api_error(
        self,
        endpoint: str,
        method: str,
        http_code: int,
        error: BaseException,
        user_id: Optional[int] = None,
    ) -> bool:
        return self.log_event(
            AuditEvent.API_ERROR,
            user_id=user_id,
            error_code=_error_code(error),
            error_message=str(error),
            context={"endpoint": endpoint, "method": method, "http_code": http_code},
        )

    # -------------------------------------------------------------------------
    # Retry engine hooks
    # -------------------------------------------------------------------------

    def log_retry_attempt(
        self,
        operation: str,
        attempt: int,
        error: BaseException,
        delay_seconds: float,
        context: dict[str, Any],
    ) -> bool:
        return self.log_event(
            AuditEvent.RETRY_ATTEMPT,
            user_id=context.get("user_id"),
            submission_id=context.get("submission_id"),
            remote_key=context.get("remote_key"),
            error_code=_error_code(error),
            error_message=str(error),
            context={
                "operation": operation,
                "attempt": attempt,
                "classification": describe_error(error),
                "delay_seconds": round(delay_seconds, 3),
            },
        )

    def log_retry_success(self, operation: str, attempts: int, context: dict[str, Any]) -> bool:
        return self.log_event(
            AuditEvent.RETRY_SUCCESS,
            user_id=context.get("user_id"),
            submission_id=context.get("submission_id"),
            remote_key=context.get("remote_key"),
            context={"operation": operation, "attempts": attempts},
        )

    def log_retry_failure(
        self,
        operation: str,
        attempts: int,
        error: BaseException,
        context: dict[str, Any],
    ) -> bool:
        return self.log_event(
            AuditEvent.RETRY_FAILED,
            user_id=context.get("user_id"),
            submission_id=context.get("submission_id"),
            remote_key=context.get("remote_key"),
            error_code=_error_code(error),
            error_message=str(error),
            context={"operation": operation, "attempts": attempts},
        )

    # -------------------------------------------------------------------------
    # Cleanup
    # -------------------------------------------------------------------------

    def log_cleanup_summary(self, report: CleanupReport, context: Optional[dict[str, Any]] = None) -> bool:
        summary = {
            "deleted": report.deleted,
            "not_found": report.not_found,
            "failed": report.failed,
            "removed_local": report.removed_local,
        }
        summary.update(context or {})
        return self.log_event(AuditEvent.CLEANUP_SUMMARY, context=summary)

    def log_cleanup_failure(self, record: UploadRecord, error: BaseException, sweep: str) -> bool:
        return self.log_event(
            AuditEvent.CLEANUP_FAILURE,
            user_id=record.user_id,
            assignment_id=record.assignment_id,
            submission_id=record.submission_id,
            remote_key=record.remote_key,
            error_code=_error_code(error),
            error_message=str(error),
            context={"sweep": sweep},
        )


# =============================================================================
# Privacy
# =============================================================================

def _record_to_dict(record: UploadRecord) -> dict[str, Any]:
    data = asdict(record)
    data["status"] = record.status.value
    for key in ("uploaded_at", "deleted_at"):
        if data[key] is not None:
            data[key] = data[key].isoformat()
    return data


def _entry_to_dict(entry: AuditLogEntry) -> dict[str, Any]:
    data = asdict(entry)
    data["event_type"] = entry.event_type.value
    data["timestamp"] = entry.timestamp.isoformat()
    return data


class PrivacyService:
    """Export and erasure of everything stored about one user."""

    def __init__(
        self,
        records: UploadRecordRepository,
        audit_repository: AuditLogRepository,
        storage: RemoteStorageClient,
        clock: Clock = utc_now,
    ) -> None:
        self._records = records
        self._audit_repository = audit_repository
        self._storage = storage
        self._clock = clock

    def export_user_data(self, user_id: int) -> dict[str, Any]:
        records = self._records.find_by_user(user_id)
        entries = self._audit_repository.find_by_user(user_id)
        logger.info(
            "Exported user data",
            extra={"user_id": user_id, "records": len(records), "audit_entries": len(entries)},
        )
        return {
            "user_id": user_id,
            "videos": [_record_to_dict(r) for r in records],
            "audit_log": [_entry_to_dict(e) for e in entries],
        }

    async def erase_user_data(self, user_id: int) -> dict[str, Any]:
        """
        Delete the user's audit entries and videos.

        Remote deletion is best-effort: NOT_FOUND counts as deleted, other
        failures are reported in the result and the record is still marked
        deleted locally so the user's data no longer surfaces.
        """
        report = CleanupReport()
        now = self._clock()

        for record in self._records.find_by_user(user_id):
            if record.status == UploadStatus.DELETED:
                continue

            if record.remote_key:
                try:
                    await self._storage.delete_object(record.remote_key)
                    report.deleted += 1
                except Exception as e:
                    if is_benign_not_found(e):
                        report.not_found += 1
                    else:
                        report.failed += 1
                        report.errors.append(f"{record.remote_key}: {e}")
                        logger.warning(
                            "Remote delete failed during erasure",
                            extra={"user_id": user_id, "remote_key": record.remote_key, "error": str(e)},
                        )

            if record.status in (UploadStatus.READY, UploadStatus.ERROR):
                written = self._records.update(
                    record.mark_deleted(now, "Deleted on privacy request"),
                    expected_status=record.status,
                )
            else:
                written = self._records.delete(record.submission_id, remote_key=record.remote_key)
            if written:
                report.removed_local += 1
            else:
                logger.info(
                    "Record changed during erasure, left as is",
                    extra={"user_id": user_id, "submission_id": record.submission_id},
                )

        audit_deleted = self._audit_repository.delete_by_user(user_id)

        logger.info(
            "Erased user data",
            extra={
                "user_id": user_id,
                "videos_deleted": report.deleted + report.not_found,
                "videos_failed": report.failed,
                "audit_entries_deleted": audit_deleted,
            },
        )
        return {
            "user_id": user_id,
            "videos_deleted": report.deleted + report.not_found,
            "videos_failed": report.failed,
            "records_removed": report.removed_local,
            "audit_entries_deleted": audit_deleted,
            "errors": report.errors,
        }
