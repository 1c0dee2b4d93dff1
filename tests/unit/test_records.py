"""Tests for the in-memory upload record store."""

from video_submission.core.models import UploadRecord, UploadStatus
from video_submission.infrastructure.records import InMemoryUploadRecordRepository


def pending(remote_key: str, submission_id: int = 42) -> UploadRecord:
    return UploadRecord(submission_id=submission_id, assignment_id=7, user_id=100, remote_key=remote_key)


class TestReplaceForSubmission:

    def test_assigns_id_without_touching_the_callers_record(self):
        repo = InMemoryUploadRecordRepository()
        record = pending("R1")

        repo.replace_for_submission(record)

        assert record.id is None
        assert repo.get_by_submission(42).id == 1

    def test_replacement_keeps_the_id_and_returns_the_old_record(self):
        repo = InMemoryUploadRecordRepository()
        repo.replace_for_submission(pending("R1"))

        displaced = repo.replace_for_submission(pending("R2"))

        assert displaced.remote_key == "R1"
        assert repo.get_by_submission(42).id == displaced.id


class TestConditionalWrites:

    def test_update_of_current_upload(self):
        repo = InMemoryUploadRecordRepository()
        repo.replace_for_submission(pending("R1"))
        current = repo.get_by_submission(42)

        assert repo.update(current.transition_to(UploadStatus.READY), expected_status=UploadStatus.PENDING)
        assert repo.get_by_submission(42).status == UploadStatus.READY

    def test_update_of_replaced_upload_is_skipped(self):
        repo = InMemoryUploadRecordRepository()
        repo.replace_for_submission(pending("R1"))
        stale = repo.get_by_submission(42)
        repo.replace_for_submission(pending("R2"))

        assert not repo.update(stale.transition_to(UploadStatus.READY))
        current = repo.get_by_submission(42)
        assert (current.remote_key, current.status) == ("R2", UploadStatus.PENDING)

    def test_update_with_changed_status_is_skipped(self):
        repo = InMemoryUploadRecordRepository()
        repo.replace_for_submission(pending("R1"))
        stale = repo.get_by_submission(42)
        repo.update(stale.fail("boom"))

        assert not repo.update(stale.transition_to(UploadStatus.READY), expected_status=UploadStatus.PENDING)
        assert repo.get_by_submission(42).status == UploadStatus.ERROR

    def test_update_of_missing_record(self):
        assert not InMemoryUploadRecordRepository().update(pending("R1"))

    def test_delete_only_matching_upload(self):
        repo = InMemoryUploadRecordRepository()
        repo.replace_for_submission(pending("R2"))

        assert not repo.delete(42, remote_key="R1")
        assert repo.get_by_submission(42) is not None
        assert repo.delete(42, remote_key="R2")
        assert repo.get_by_submission(42) is None
        assert not repo.delete(42)
