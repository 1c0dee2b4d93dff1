"""Tests for the playback access gate."""

from datetime import datetime, timezone

import pytest

from video_submission.core.access import can_view, verify_video_access
from video_submission.core.errors import ErrorKind, ServiceError
from video_submission.core.models import Principal, SubmissionInfo, UploadRecord, UploadStatus

SUBMISSION = SubmissionInfo(submission_id=42, assignment_id=7, owner_id=100)


def ready_record(**overrides) -> UploadRecord:
    fields = dict(submission_id=42, assignment_id=7, user_id=100, remote_key="R1", status=UploadStatus.READY)
    fields.update(overrides)
    return UploadRecord(**fields)


class TestCanView:

    def test_owner_can_view(self, student):
        assert can_view(student, 100)

    def test_grader_can_view(self, grader):
        assert can_view(grader, 100)

    def test_admin_can_view(self, admin):
        assert can_view(admin, 100)

    def test_other_student_cannot_view(self, other_student):
        assert not can_view(other_student, 100)


class TestVerifyVideoAccess:

    def test_returns_matching_record(self, student):
        record = ready_record()
        assert verify_video_access(student, SUBMISSION, record, "R1") is record

    @pytest.mark.parametrize("submission,record,key", [
        (None, ready_record(), "R1"),
        (SUBMISSION, None, "R1"),
        (SUBMISSION, ready_record(), ""),
        (SUBMISSION, ready_record(), "OTHER"),
        (SUBMISSION, ready_record(submission_id=43), "R1"),
    ])
    def test_mismatch_is_invalid_identifier(self, student, submission, record, key):
        with pytest.raises(ServiceError) as exc_info:
            verify_video_access(student, submission, record, key)
        assert exc_info.value.kind == ErrorKind.INVALID_IDENTIFIER
        assert exc_info.value.code == "invalid_identifier"

    def test_deleted_video_is_invalid_identifier(self, admin):
        deleted = ready_record().mark_deleted(datetime(2024, 1, 1, tzinfo=timezone.utc))
        with pytest.raises(ServiceError) as exc_info:
            verify_video_access(admin, SUBMISSION, deleted, "R1")
        assert exc_info.value.kind == ErrorKind.INVALID_IDENTIFIER

    def test_identifier_checked_before_permission(self, other_student):
        """A stranger probing keys learns nothing about who owns them."""
        with pytest.raises(ServiceError) as exc_info:
            verify_video_access(other_student, SUBMISSION, ready_record(), "OTHER")
        assert exc_info.value.kind == ErrorKind.INVALID_IDENTIFIER

    def test_other_student_is_denied(self, other_student):
        with pytest.raises(ServiceError) as exc_info:
            verify_video_access(other_student, SUBMISSION, ready_record(), "R1")
        assert exc_info.value.kind == ErrorKind.PERMISSION
        assert exc_info.value.code == "permission_error"

    def test_grader_is_allowed(self, grader):
        assert verify_video_access(grader, SUBMISSION, ready_record(), "R1").remote_key == "R1"

    def test_bypass_capability_does_not_grant_viewing(self):
        principal = Principal(user_id=200, capabilities=frozenset({"bypass_rate_limit"}))
        with pytest.raises(ServiceError):
            verify_video_access(principal, SUBMISSION, ready_record(), "R1")
