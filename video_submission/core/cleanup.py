"""
Scheduled cleanup of submitted videos.

Three sweeps run in order:

1. cleanup_stuck_uploads: pending/uploading records older than the stuck
   threshold. The remote object is deleted (NOT_FOUND is fine) and the
   local record removed, whatever the remote outcome.
2. sync_with_remote: ready records whose object has disappeared from the
   backend are marked deleted.
3. sweep_expired: ready/error records past retention. The object is
   deleted and the record marked deleted; on any other failure the
   record is left alone and retried on the next run.

No single failure aborts a sweep. Each sweep ends with a summary audit
entry, plus one cleanup_failure entry per failed record.
"""

import logging
from datetime import timedelta

from .audit import AuditLogger
from .models import CleanupReport, Clock, UploadRecord, UploadStatus, utc_now
from .ports import RemoteStorageClient, UploadRecordRepository
from .retry import RetryEngine, is_benign_not_found

logger = logging.getLogger(__name__)

REMOTE_MISSING_MESSAGE = "Video deleted from remote store"
ALREADY_DELETED_MESSAGE = "Video not found in remote store (already deleted)"


class CleanupScheduler:
    """
    Runs the daily sweeps.

    Usage:
        scheduler = CleanupScheduler(storage, records, audit, retry, retention_days=90)
        reports = await scheduler.run()
    """

    def __init__(
        self,
        storage: RemoteStorageClient,
        records: UploadRecordRepository,
        audit: AuditLogger,
        retry: RetryEngine,
        clock: Clock = utc_now,
        retention_days: int = 90,
        stuck_upload_seconds: int = 1800,
    ) -> None:
        if retention_days <= 0:
            raise ValueError("retention_days must be positive")
        self._storage = storage
        self._records = records
        self._audit = audit
        self._retry = retry
        self._clock = clock
        self._retention = timedelta(days=retention_days)
        self._stuck_after = timedelta(seconds=stuck_upload_seconds)

    async def run(self) -> dict[str, CleanupReport]:
        reports = {
            "stuck": await self.cleanup_stuck_uploads(),
            "sync": await self.sync_with_remote(),
            "expired": await self.sweep_expired(),
        }
        logger.info(
            "Cleanup run finished",
            extra={name: report.processed for name, report in reports.items()},
        )
        return reports

    async def cleanup_stuck_uploads(self) -> CleanupReport:
        cutoff = self._clock() - self._stuck_after
        report = CleanupReport()
        stuck = self._records.find(
            [UploadStatus.PENDING, UploadStatus.UPLOADING],
            uploaded_before=cutoff,
        )

        for record in stuck:
            remote_failed = False
            try:
                if record.remote_key:
                    try:
                        if await self._delete_remote(record.remote_key):
                            report.deleted += 1
                        else:
                            report.not_found += 1
                    except Exception as e:
                        # The record is removed whatever the remote outcome
                        remote_failed = True
                        self._fail(report, record, e, "stuck")
                if self._records.delete(record.submission_id, remote_key=record.remote_key):
                    report.removed_local += 1
                else:
                    self._log_superseded(record, "stuck")
            except Exception as e:
                self._fail(report, record, e, "stuck", count=not remote_failed)

        self._finish("stuck", report)
        return report

    async def sync_with_remote(self) -> CleanupReport:
        report = CleanupReport()

        for record in self._records.find([UploadStatus.READY]):
            try:
                await self._retry.execute_with_retry(
                    lambda: self._storage.get_object_metadata(record.remote_key),
                    operation_name="get_object_metadata",
                    context={"submission_id": record.submission_id, "remote_key": record.remote_key},
                )
            except Exception as e:
                if not is_benign_not_found(e):
                    logger.warning(
                        "Could not check video",
                        extra={"remote_key": record.remote_key, "error": str(e)},
                    )
                    report.failed += 1
                    continue
            else:
                continue

            try:
                deleted = record.mark_deleted(self._clock(), REMOTE_MISSING_MESSAGE)
                if self._records.update(deleted, expected_status=record.status):
                    self._audit.log_video_deletion(record, "remote_missing")
                else:
                    self._log_superseded(record, "sync")
            except Exception as e:
                self._fail(report, record, e, "sync")
            else:
                report.not_found += 1

        self._finish("sync", report)
        return report

    async def sweep_expired(self) -> CleanupReport:
        now = self._clock()
        report = CleanupReport()
        expired = self._records.find(
            [UploadStatus.READY, UploadStatus.ERROR],
            uploaded_before=now - self._retention,
            only_undeleted=True,
        )

        for record in expired:
            try:
                removed = await self._delete_remote(record.remote_key)
            except Exception as e:
                # Left unchanged for the next run
                self._fail(report, record, e, "expired")
                continue

            message = None if removed else ALREADY_DELETED_MESSAGE
            try:
                if self._records.update(record.mark_deleted(self._clock(), message), expected_status=record.status):
                    self._audit.log_video_deletion(record, "retention")
                else:
                    self._log_superseded(record, "expired")
            except Exception as e:
                self._fail(report, record, e, "expired")
                continue
            if removed:
                report.deleted += 1
            else:
                report.not_found += 1

        self._finish("expired", report)
        return report

    async def _delete_remote(self, remote_key: str) -> bool:
        """True if the object was deleted, False if it was already gone."""
        try:
            await self._retry.execute_with_retry(
                lambda: self._storage.delete_object(remote_key),
                operation_name="delete_object",
                context={"remote_key": remote_key},
            )
        except Exception as e:
            if is_benign_not_found(e):
                return False
            raise
        return True

    def _fail(
        self,
        report: CleanupReport,
        record: UploadRecord,
        error: Exception,
        sweep: str,
        count: bool = True,
    ) -> None:
        if count:
            report.failed += 1
        report.errors.append(f"Failed to clean up {record.remote_key or record.submission_id}: {error}")
        logger.warning(
            "Cleanup failed for record",
            extra={
                "sweep": sweep,
                "submission_id": record.submission_id,
                "remote_key": record.remote_key,
                "error": str(error),
            },
        )
        self._audit.log_cleanup_failure(record, error, sweep)

    @staticmethod
    def _log_superseded(record: UploadRecord, sweep: str) -> None:
        logger.info(
            "Record changed during cleanup, left as is",
            extra={"sweep": sweep, "submission_id": record.submission_id, "remote_key": record.remote_key},
        )

    def _finish(self, sweep: str, report: CleanupReport) -> None:
        log = logger.warning if report.failed else logger.info
        log(
            "Cleanup sweep completed",
            extra={
                "sweep": sweep,
                "processed": report.processed,
                "deleted": report.deleted,
                "not_found": report.not_found,
                "failed": report.failed,
                "removed_local": report.removed_local,
            },
        )
        self._audit.log_cleanup_summary(report, {"sweep": sweep})
