"""
Tests for the upload session tracker.

The mock backend hands out keys R1, R2, ... so the flows read the same
way they would against a real backend.
"""

import asyncio

import pytest

from video_submission.core.errors import ErrorKind, MaxRetriesExceededError, ServiceError
from video_submission.core.models import (
    AuditEvent,
    RemoteState,
    SubmissionInfo,
    UploadRecord,
    UploadStatus,
)
from video_submission.core.rate_limit import SlidingWindowRateLimiter
from video_submission.core.uploads import NO_RECORD_MESSAGE, UploadSessionTracker, map_remote_state
from video_submission.infrastructure.records import InMemoryUploadRecordRepository


def auth_error() -> ServiceError:
    return ServiceError(ErrorKind.AUTH, "Cloudflare API authentication failed", code="auth_error")


def network_error() -> ServiceError:
    return ServiceError(ErrorKind.TRANSIENT_NETWORK, "Request timed out")


def audit_events(audit_repository) -> list[AuditEvent]:
    return [entry.event_type for entry in audit_repository.entries]


class TestMapRemoteState:

    @pytest.mark.parametrize("state,expected", [
        (RemoteState.READY, UploadStatus.READY),
        (RemoteState.QUEUED, UploadStatus.UPLOADING),
        (RemoteState.IN_PROGRESS, UploadStatus.UPLOADING),
        (RemoteState.ERROR, UploadStatus.ERROR),
        (RemoteState.UNKNOWN, UploadStatus.READY),
    ])
    def test_default_mapping(self, state, expected):
        assert map_remote_state(state) == expected

    def test_unknown_can_stay_uploading(self):
        assert map_remote_state(RemoteState.UNKNOWN, treat_unknown_as_ready=False) == UploadStatus.UPLOADING


# ---------------------------------------------------------------------------
# End-to-end
# ---------------------------------------------------------------------------

class TestSubmissionLifecycle:

    async def test_upload_confirm_play_and_expire(
        self, tracker, playback, cleanup, storage, records, audit_repository, student, clock,
    ):
        """Submission 42 on assignment 7: upload R1, confirm, watch, expire after 91 days."""
        session = await tracker.request_upload_session(student, 7, submission_id=42)
        assert session.remote_key == "R1"
        assert session.submission_id == 42
        assert session.upload_target == "https://upload.example.com/R1"
        assert storage.key_hints == ["7/42"]

        pending = records.get_by_submission(42)
        assert pending.status == UploadStatus.PENDING
        assert pending.remote_key == "R1"
        assert pending.user_id == 100

        storage.set_object("R1", RemoteState.READY, size=1024000, duration_seconds=120)
        confirmed = await tracker.confirm_upload(student, "R1", 42)
        assert confirmed.status == UploadStatus.READY
        assert confirmed.file_size == 1024000
        assert confirmed.duration_seconds == 120

        credential = await playback.issue_credential(student, 42, "R1")
        assert credential.credential == "mock-token-R1-86400"
        assert credential.expires_in_seconds == 86400

        clock.advance(days=91)
        report = await cleanup.sweep_expired()
        assert report.deleted == 1

        expired = records.get_by_submission(42)
        assert expired.status == UploadStatus.DELETED
        assert expired.deleted_at == clock.now
        assert not storage.has_object("R1")

        events = audit_events(audit_repository)
        assert AuditEvent.UPLOAD_SUCCESS in events
        assert AuditEvent.PLAYBACK_ACCESS in events
        assert AuditEvent.VIDEO_DELETION in events

        with pytest.raises(ServiceError) as exc_info:
            await playback.issue_credential(student, 42, "R1")
        assert exc_info.value.kind == ErrorKind.INVALID_IDENTIFIER


# ---------------------------------------------------------------------------
# Upload Session
# ---------------------------------------------------------------------------

class TestRequestUploadSession:

    async def test_creates_submission_when_omitted(self, tracker, submissions, records, other_student):
        session = await tracker.request_upload_session(other_student, 7)
        submission = submissions.get(session.submission_id)
        assert submission.owner_id == 200
        assert submission.assignment_id == 7
        assert records.get_by_submission(session.submission_id).user_id == 200

    async def test_unknown_submission(self, tracker, student):
        with pytest.raises(ServiceError) as exc_info:
            await tracker.request_upload_session(student, 7, submission_id=999)
        assert exc_info.value.code == "submission_not_found"

    async def test_submission_from_other_assignment(self, tracker, student):
        with pytest.raises(ServiceError) as exc_info:
            await tracker.request_upload_session(student, 8, submission_id=42)
        assert exc_info.value.code == "submission_assignment_mismatch"

    async def test_cannot_upload_to_someone_elses_submission(self, tracker, other_student, records):
        with pytest.raises(ServiceError) as exc_info:
            await tracker.request_upload_session(other_student, 7, submission_id=42)
        assert exc_info.value.kind == ErrorKind.PERMISSION
        assert records.get_by_submission(42) is None

    async def test_closed_submissions_are_refused(self, tracker, submissions, student):
        submissions.add(SubmissionInfo(submission_id=50, assignment_id=7, owner_id=100, submissions_open=False))
        with pytest.raises(ServiceError) as exc_info:
            await tracker.request_upload_session(student, 7, submission_id=50)
        assert exc_info.value.code == "submissions_closed"

    @pytest.mark.parametrize("assignment_id", [0, -3, "abc"])
    async def test_invalid_assignment_id(self, tracker, student, assignment_id):
        with pytest.raises(ServiceError) as exc_info:
            await tracker.request_upload_session(student, assignment_id)
        assert exc_info.value.kind == ErrorKind.VALIDATION

    async def test_unsupported_mime_type(self, tracker, student):
        with pytest.raises(ServiceError) as exc_info:
            await tracker.request_upload_session(student, 7, submission_id=42, mime_type="image/png")
        assert exc_info.value.code == "invalid_mime_type"

    async def test_duration_over_limit(self, tracker, student):
        with pytest.raises(ServiceError) as exc_info:
            await tracker.request_upload_session(student, 7, submission_id=42, max_duration_seconds=99999)
        assert exc_info.value.code == "duration_too_long"

    async def test_rate_limit(
        self, storage, records, submissions, window_cache, retry, audit, audit_repository, clock, student,
    ):
        limiter = SlidingWindowRateLimiter(window_cache, upload_limit=2, clock=clock)
        tracker = UploadSessionTracker(storage, records, submissions, limiter, retry, audit, clock=clock)

        await tracker.request_upload_session(student, 7, submission_id=42)
        await tracker.request_upload_session(student, 7, submission_id=42)
        with pytest.raises(ServiceError) as exc_info:
            await tracker.request_upload_session(student, 7, submission_id=42)

        assert exc_info.value.kind == ErrorKind.RATE_LIMITED
        assert exc_info.value.retry_after == 3600
        assert audit_events(audit_repository)[-1] == AuditEvent.UPLOAD_FAILURE

    async def test_transient_backend_failures_are_retried(self, tracker, storage, sleep, student):
        storage.fail_next("create_upload_session", network_error(), network_error())
        session = await tracker.request_upload_session(student, 7, submission_id=42)
        assert session.remote_key == "R1"
        assert len(sleep.delays) == 2

    async def test_backend_outage(self, tracker, storage, records, audit_repository, student):
        storage.fail_next("create_upload_session", *[network_error() for _ in range(4)])
        with pytest.raises(MaxRetriesExceededError):
            await tracker.request_upload_session(student, 7, submission_id=42)
        assert records.get_by_submission(42) is None
        failure = audit_repository.entries[-1]
        assert failure.event_type == AuditEvent.UPLOAD_FAILURE
        assert failure.submission_id == 42
        assert failure.error_code == "max_retries_exceeded"

    async def test_auth_failure_is_not_retried(self, tracker, storage, sleep, student):
        storage.fail_next("create_upload_session", auth_error())
        with pytest.raises(ServiceError) as exc_info:
            await tracker.request_upload_session(student, 7, submission_id=42)
        assert exc_info.value.kind == ErrorKind.AUTH
        assert sleep.delays == []


class TestReplacement:

    async def test_new_upload_replaces_old_video(self, tracker, storage, records, student):
        await tracker.request_upload_session(student, 7, submission_id=42)
        storage.set_object("R1", RemoteState.READY)
        await tracker.confirm_upload(student, "R1", 42)
        first_id = records.get_by_submission(42).id

        session = await tracker.request_upload_session(student, 7, submission_id=42)

        record = records.get_by_submission(42)
        assert session.remote_key == "R2"
        assert record.remote_key == "R2"
        assert record.status == UploadStatus.PENDING
        assert record.id == first_id
        assert not storage.has_object("R1")
        assert len(records.all()) == 1

    async def test_failed_delete_does_not_block_replacement(self, tracker, storage, records, student):
        await tracker.request_upload_session(student, 7, submission_id=42)
        storage.fail_next("delete_object", auth_error())

        await tracker.request_upload_session(student, 7, submission_id=42)

        assert [r.remote_key for r in records.all()] == ["R2"]
        assert storage.has_object("R1")

    async def test_concurrent_writer_is_cleaned_up(
        self, storage, submissions, rate_limiter, retry, audit, clock, student,
    ):
        """A record written between our read and our replace gets its video deleted."""

        class RacingRecords(InMemoryUploadRecordRepository):
            raced = False

            def replace_for_submission(self, record):
                if not self.raced:
                    self.raced = True
                    storage.set_object("RACE")
                    super().replace_for_submission(
                        UploadRecord(submission_id=42, assignment_id=7, user_id=100, remote_key="RACE")
                    )
                return super().replace_for_submission(record)

        racing = RacingRecords()
        tracker = UploadSessionTracker(storage, racing, submissions, rate_limiter, retry, audit, clock=clock)

        session = await tracker.request_upload_session(student, 7, submission_id=42)

        assert [r.remote_key for r in racing.all()] == [session.remote_key]
        assert not storage.has_object("RACE")

    async def test_caller_cancellation_still_commits(self, tracker, storage, records, student):
        gate = asyncio.Event()
        create = storage.create_upload_session

        async def slow_create(*args, **kwargs):
            await gate.wait()
            return await create(*args, **kwargs)

        storage.create_upload_session = slow_create

        task = asyncio.create_task(tracker.request_upload_session(student, 7, submission_id=42))
        await asyncio.sleep(0)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        gate.set()
        for _ in range(10):
            await asyncio.sleep(0)

        assert records.get_by_submission(42).remote_key == "R1"


class TestResumableSession:

    async def test_resumable_upload_records_pending(self, tracker, records, student):
        session = await tracker.request_resumable_session(student, 7, 2_000_000_000, "lecture.mp4", submission_id=42)
        assert session.upload_target.startswith("mock://tus/")
        assert records.get_by_submission(42).remote_key == session.remote_key

    async def test_rejects_unknown_extension(self, tracker, student):
        with pytest.raises(ServiceError) as exc_info:
            await tracker.request_resumable_session(student, 7, 1000, "notes.txt", submission_id=42)
        assert exc_info.value.code == "invalid_file_extension"

    async def test_rejects_oversized_file(self, tracker, student):
        with pytest.raises(ServiceError) as exc_info:
            await tracker.request_resumable_session(student, 7, 6 * 1024 ** 3, "big.mp4", submission_id=42)
        assert exc_info.value.code == "file_too_large"


# ---------------------------------------------------------------------------
# Confirmation
# ---------------------------------------------------------------------------

class TestConfirmUpload:

    async def test_processing_video_is_uploading(self, tracker, student):
        await tracker.request_upload_session(student, 7, submission_id=42)
        record = await tracker.confirm_upload(student, "R1", 42)
        assert record.status == UploadStatus.UPLOADING

    async def test_remote_error_marks_record_failed(self, tracker, storage, audit_repository, student):
        await tracker.request_upload_session(student, 7, submission_id=42)
        storage.set_object("R1", RemoteState.ERROR)

        record = await tracker.confirm_upload(student, "R1", 42)

        assert record.status == UploadStatus.ERROR
        assert record.error_message
        assert audit_repository.entries[-1].error_code == "processing_error"

    async def test_unknown_state_counts_as_ready(self, tracker, storage, student):
        await tracker.request_upload_session(student, 7, submission_id=42)
        storage.set_object("R1", RemoteState.UNKNOWN)
        record = await tracker.confirm_upload(student, "R1", 42)
        assert record.status == UploadStatus.READY

    async def test_unknown_state_can_be_kept_uploading(
        self, storage, records, submissions, rate_limiter, retry, audit, clock, student,
    ):
        tracker = UploadSessionTracker(
            storage, records, submissions, rate_limiter, retry, audit,
            clock=clock, treat_unknown_as_ready=False,
        )
        await tracker.request_upload_session(student, 7, submission_id=42)
        storage.set_object("R1", RemoteState.UNKNOWN)
        record = await tracker.confirm_upload(student, "R1", 42)
        assert record.status == UploadStatus.UPLOADING

    async def test_metadata_failure_marks_record_failed(self, tracker, storage, records, student):
        await tracker.request_upload_session(student, 7, submission_id=42)
        storage.fail_next("get_object_metadata", auth_error())

        with pytest.raises(ServiceError) as exc_info:
            await tracker.confirm_upload(student, "R1", 42)

        assert exc_info.value.kind == ErrorKind.AUTH
        record = records.get_by_submission(42)
        assert record.status == UploadStatus.ERROR
        assert "authentication" in record.error_message

    async def test_key_from_another_submission(self, tracker, submissions, student):
        submissions.add(SubmissionInfo(submission_id=43, assignment_id=7, owner_id=100))
        await tracker.request_upload_session(student, 7, submission_id=42)
        with pytest.raises(ServiceError) as exc_info:
            await tracker.confirm_upload(student, "R1", 43)
        assert exc_info.value.kind == ErrorKind.INVALID_IDENTIFIER

    async def test_malformed_key(self, tracker, student):
        with pytest.raises(ServiceError) as exc_info:
            await tracker.confirm_upload(student, "../etc/passwd", 42)
        assert exc_info.value.code == "invalid_video_uid_format"

    async def test_stranger_cannot_confirm(self, tracker, student, other_student):
        await tracker.request_upload_session(student, 7, submission_id=42)
        with pytest.raises(ServiceError) as exc_info:
            await tracker.confirm_upload(other_student, "R1", 42)
        assert exc_info.value.kind == ErrorKind.PERMISSION

    async def test_deleted_record_cannot_be_confirmed(self, tracker, storage, records, student, clock):
        await tracker.request_upload_session(student, 7, submission_id=42)
        storage.set_object("R1", RemoteState.READY)
        ready = await tracker.confirm_upload(student, "R1", 42)
        records.update(ready.mark_deleted(clock.now))

        with pytest.raises(ServiceError) as exc_info:
            await tracker.confirm_upload(student, "R1", 42)
        assert exc_info.value.kind == ErrorKind.INVALID_TRANSITION

    async def test_new_upload_during_confirm_is_kept(self, tracker, storage, records, student, monkeypatch):
        await tracker.request_upload_session(student, 7, submission_id=42)
        storage.set_object("R1", RemoteState.READY)
        fetch = storage.get_object_metadata

        async def fetch_then_replace(remote_key):
            metadata = await fetch(remote_key)
            await tracker.request_upload_session(student, 7, submission_id=42)
            return metadata

        monkeypatch.setattr(storage, "get_object_metadata", fetch_then_replace)

        with pytest.raises(ServiceError) as exc_info:
            await tracker.confirm_upload(student, "R1", 42)

        assert exc_info.value.code == "upload_superseded"
        assert exc_info.value.kind == ErrorKind.INVALID_TRANSITION
        record = records.get_by_submission(42)
        assert (record.remote_key, record.status) == ("R2", UploadStatus.PENDING)
        assert storage.has_object("R2")


# ---------------------------------------------------------------------------
# Recovery
# ---------------------------------------------------------------------------

class TestRetryUpload:

    async def test_failed_upload_goes_back_to_pending(self, tracker, storage, audit_repository, student):
        await tracker.request_upload_session(student, 7, submission_id=42)
        storage.set_object("R1", RemoteState.ERROR)
        await tracker.confirm_upload(student, "R1", 42)

        record = tracker.retry_upload(student, 42)

        assert record.status == UploadStatus.PENDING
        assert record.error_message is None
        retry_entry = audit_repository.entries[-1]
        assert retry_entry.event_type == AuditEvent.UPLOAD_RETRY
        assert retry_entry.error_message

    async def test_only_failed_uploads(self, tracker, student):
        await tracker.request_upload_session(student, 7, submission_id=42)
        with pytest.raises(ServiceError) as exc_info:
            tracker.retry_upload(student, 42)
        assert exc_info.value.kind == ErrorKind.INVALID_TRANSITION

    def test_missing_record(self, tracker, student):
        with pytest.raises(ServiceError) as exc_info:
            tracker.retry_upload(student, 42)
        assert exc_info.value.code == "record_not_found"

    async def test_upload_replaced_before_retry(self, tracker, storage, records, student, monkeypatch):
        await tracker.request_upload_session(student, 7, submission_id=42)
        storage.set_object("R1", RemoteState.ERROR)
        await tracker.confirm_upload(student, "R1", 42)
        failed = records.get_by_submission(42)
        await tracker.request_upload_session(student, 7, submission_id=42)
        monkeypatch.setattr(records, "get_by_submission", lambda submission_id: failed)

        with pytest.raises(ServiceError) as exc_info:
            tracker.retry_upload(student, 42)

        assert exc_info.value.code == "upload_superseded"
        assert records.get_by_remote_key("R2").status == UploadStatus.PENDING

    async def test_stranger_cannot_retry(self, tracker, storage, student, other_student):
        await tracker.request_upload_session(student, 7, submission_id=42)
        storage.set_object("R1", RemoteState.ERROR)
        await tracker.confirm_upload(student, "R1", 42)
        with pytest.raises(ServiceError) as exc_info:
            tracker.retry_upload(other_student, 42)
        assert exc_info.value.kind == ErrorKind.PERMISSION


class TestCleanupFailedUpload:

    async def test_removes_remote_and_local(self, tracker, storage, records, audit_repository, student):
        await tracker.request_upload_session(student, 7, submission_id=42)

        result = await tracker.cleanup_failed_upload(student, "R1", 42)

        assert result.deleted_remote
        assert result.deleted_local
        assert result.errors == ()
        assert not storage.has_object("R1")
        assert records.get_by_submission(42) is None
        deletion = audit_repository.entries[-1]
        assert deletion.event_type == AuditEvent.VIDEO_DELETION
        assert deletion.context["deletion_type"] == "failed_upload"

    async def test_delete_is_idempotent(self, tracker, storage, student):
        await tracker.request_upload_session(student, 7, submission_id=42)
        storage.remove_object("R1")

        result = await tracker.cleanup_failed_upload(student, "R1", 42)

        assert result.deleted_remote
        assert result.deleted_local

    async def test_remote_failure_is_reported_not_raised(self, tracker, storage, records, student):
        await tracker.request_upload_session(student, 7, submission_id=42)
        storage.fail_next("delete_object", auth_error())

        result = await tracker.cleanup_failed_upload(student, "R1", 42)

        assert not result.deleted_remote
        assert result.deleted_local
        assert result.errors[0].startswith("remote:")
        assert records.get_by_submission(42) is None

    async def test_ready_video_is_left_alone(self, tracker, storage, records, student):
        await tracker.request_upload_session(student, 7, submission_id=42)
        storage.set_object("R1", RemoteState.READY)
        await tracker.confirm_upload(student, "R1", 42)

        result = await tracker.cleanup_failed_upload(student, "R1", 42)

        assert not result.deleted_remote
        assert not result.deleted_local
        assert storage.has_object("R1")
        assert records.get_by_submission(42).status == UploadStatus.READY

    async def test_record_of_other_submission_is_kept(self, tracker, storage, records, student):
        await tracker.request_upload_session(student, 7, submission_id=42)
        result = await tracker.cleanup_failed_upload(student, "R1", 43)
        assert not result.deleted_remote
        assert not result.deleted_local
        assert result.errors == (NO_RECORD_MESSAGE,)
        assert storage.has_object("R1")
        assert records.get_by_submission(42) is not None

    async def test_unrecorded_key_is_not_deleted(self, tracker, storage, audit_repository, student):
        storage.set_object("R9")

        result = await tracker.cleanup_failed_upload(student, "R9", 42)

        assert not result.deleted_remote
        assert not result.deleted_local
        assert storage.has_object("R9")
        assert all(e.event_type != AuditEvent.VIDEO_DELETION for e in audit_repository.entries)

    async def test_stranger_cannot_clean_up(self, tracker, student, other_student):
        await tracker.request_upload_session(student, 7, submission_id=42)
        with pytest.raises(ServiceError) as exc_info:
            await tracker.cleanup_failed_upload(other_student, "R1", 42)
        assert exc_info.value.kind == ErrorKind.PERMISSION
