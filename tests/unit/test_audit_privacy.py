"""Tests for the audit logger and the privacy export/erase service."""

import logging

import pytest

from video_submission.core.audit import AuditLogger, PrivacyService
from video_submission.core.errors import ErrorKind, MaxRetriesExceededError, ServiceError
from video_submission.core.models import AuditEvent, CleanupReport, Principal, UploadRecord, UploadStatus


class BrokenAuditRepository:
    def insert(self, entry):
        raise ConnectionError("audit store unavailable")


def ready_record(submission_id=42, remote_key="R1", user_id=100, status=UploadStatus.READY) -> UploadRecord:
    return UploadRecord(
        submission_id=submission_id,
        assignment_id=7,
        user_id=user_id,
        remote_key=remote_key,
        status=status,
        file_size=2048,
        duration_seconds=30,
    )


class TestAuditLogger:

    def test_upload_success(self, audit, audit_repository, clock):
        assert audit.log_upload_success(ready_record())

        entry = audit_repository.entries[0]
        assert entry.event_type == AuditEvent.UPLOAD_SUCCESS
        assert entry.timestamp == clock.now
        assert entry.submission_id == 42
        assert entry.context == {"file_size": 2048, "duration_seconds": 30}

    def test_failure_keeps_error_code(self, audit, audit_repository):
        error = ServiceError(ErrorKind.AUTH, "Cloudflare API authentication failed", code="auth_error")
        audit.log_upload_failure(100, 7, 42, None, error)
        assert audit_repository.entries[0].error_code == "auth_error"

    def test_plain_exceptions_use_class_name(self, audit, audit_repository):
        audit.log_upload_failure(100, 7, 42, None, RuntimeError("boom"))
        assert audit_repository.entries[0].error_code == "RuntimeError"

    def test_error_messages_are_sanitized(self, audit, audit_repository):
        audit.log_upload_failure(100, 7, 42, "R1", ServiceError(ErrorKind.REMOTE, "<html>502 Bad Gateway</html>"))
        assert audit_repository.entries[0].error_message == "502 Bad Gateway"

    def test_deletion_by_another_actor(self, audit, audit_repository):
        audit.log_video_deletion(ready_record(), "failed_upload", actor_id=1)
        entry = audit_repository.entries[0]
        assert entry.user_id == 1
        assert entry.context == {"deletion_type": "failed_upload", "owner_id": 100}

    def test_playback_entries_carry_role(self, audit, audit_repository, admin):
        audit.log_playback_access(admin, ready_record())
        assert audit_repository.entries[0].context == {"user_role": "admin"}

    def test_api_error(self, audit, audit_repository):
        error = MaxRetriesExceededError("delete_object", 4, TimeoutError("slow"))
        audit.log_api_error("/api/v1/videos/confirm-upload", "POST", 503, error, user_id=100)

        entry = audit_repository.entries[0]
        assert entry.event_type == AuditEvent.API_ERROR
        assert entry.error_code == "max_retries_exceeded"
        assert entry.context == {"endpoint": "/api/v1/videos/confirm-upload", "method": "POST", "http_code": 503}

    def test_cleanup_summary(self, audit, audit_repository):
        audit.log_cleanup_summary(CleanupReport(deleted=2, failed=1), {"sweep": "expired"})
        assert audit_repository.entries[0].context == {
            "deleted": 2,
            "not_found": 0,
            "failed": 1,
            "removed_local": 0,
            "sweep": "expired",
        }

    def test_write_failure_does_not_raise(self, clock, caplog):
        audit = AuditLogger(BrokenAuditRepository(), clock=clock)
        with caplog.at_level(logging.ERROR):
            assert audit.log_upload_success(ready_record()) is False
        assert "Failed to write audit entry" in caplog.text


@pytest.fixture
def privacy(records, audit_repository, storage, clock):
    return PrivacyService(records, audit_repository, storage, clock=clock)


class TestPrivacyExport:

    def test_exports_records_and_audit_entries(self, privacy, records, audit, clock):
        records.replace_for_submission(ready_record())
        records.replace_for_submission(ready_record(submission_id=43, remote_key="R2", user_id=200))
        audit.log_upload_success(ready_record())

        export = privacy.export_user_data(100)

        assert export["user_id"] == 100
        assert [v["remote_key"] for v in export["videos"]] == ["R1"]
        assert export["videos"][0]["status"] == "ready"
        assert export["audit_log"][0]["event_type"] == "upload_success"
        assert export["audit_log"][0]["timestamp"] == clock.now.isoformat()

    def test_unknown_user(self, privacy):
        assert privacy.export_user_data(555) == {"user_id": 555, "videos": [], "audit_log": []}


class TestPrivacyErase:

    async def test_erases_videos_and_audit_entries(self, privacy, records, storage, audit, audit_repository, clock):
        storage.set_object("R1")
        storage.set_object("R2")
        records.replace_for_submission(ready_record())
        records.replace_for_submission(ready_record(submission_id=43, remote_key="R2", status=UploadStatus.PENDING))
        audit.log_upload_success(ready_record())
        audit.log_playback_access(Principal(user_id=200), ready_record())

        result = await privacy.erase_user_data(100)

        assert result == {
            "user_id": 100,
            "videos_deleted": 2,
            "videos_failed": 0,
            "records_removed": 2,
            "audit_entries_deleted": 1,
            "errors": [],
        }
        erased = records.get_by_submission(42)
        assert erased.status == UploadStatus.DELETED
        assert erased.deleted_at == clock.now
        assert records.get_by_submission(43) is None
        assert not storage.has_object("R1")
        assert [e.user_id for e in audit_repository.entries] == [200]

    async def test_missing_remote_video_counts_as_deleted(self, privacy, records):
        records.replace_for_submission(ready_record())
        result = await privacy.erase_user_data(100)
        assert result["videos_deleted"] == 1

    async def test_remote_failure_is_reported(self, privacy, records, storage):
        storage.set_object("R1")
        storage.fail_next("delete_object", ServiceError(ErrorKind.AUTH, "bad token"))
        records.replace_for_submission(ready_record())

        result = await privacy.erase_user_data(100)

        assert result["videos_failed"] == 1
        assert result["errors"] == ["R1: bad token"]
        assert records.get_by_submission(42).status == UploadStatus.DELETED

    async def test_already_deleted_records_are_skipped(self, privacy, records, storage, clock):
        records.replace_for_submission(ready_record().mark_deleted(clock.now))
        result = await privacy.erase_user_data(100)
        assert result["records_removed"] == 0
        assert storage.calls == []
