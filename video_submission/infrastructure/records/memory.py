"""
Dictionary-backed repositories.

A single lock guards each store, so replace_for_submission() is atomic
per submission the same way the Snowflake MERGE transaction is, and
update()/delete() compare the stored remote_key before writing.
"""

import itertools
import logging
import threading
from dataclasses import replace
from datetime import datetime
from typing import Iterable, Optional

from ...core.models import AuditLogEntry, SubmissionInfo, UploadRecord, UploadStatus

logger = logging.getLogger(__name__)


class InMemoryUploadRecordRepository:

    def __init__(self) -> None:
        self._records: dict[int, UploadRecord] = {}
        self._ids = itertools.count(1)
        self._lock = threading.Lock()
        logger.info("Initialized in-memory upload record store")

    def get_by_submission(self, submission_id: int) -> Optional[UploadRecord]:
        with self._lock:
            return self._records.get(submission_id)

    def get_by_remote_key(self, remote_key: str) -> Optional[UploadRecord]:
        with self._lock:
            for record in self._records.values():
                if record.remote_key == remote_key:
                    return record
        return None

    def replace_for_submission(self, record: UploadRecord) -> Optional[UploadRecord]:
        with self._lock:
            displaced = self._records.get(record.submission_id)
            if record.id is None:
                record = replace(record, id=displaced.id if displaced and displaced.id else next(self._ids))
            self._records[record.submission_id] = record
            return displaced

    def update(self, record: UploadRecord, expected_status: Optional[UploadStatus] = None) -> bool:
        with self._lock:
            current = self._records.get(record.submission_id)
            if current is None or current.remote_key != record.remote_key:
                return False
            if expected_status is not None and current.status != expected_status:
                return False
            self._records[record.submission_id] = record
            return True

    def delete(self, submission_id: int, remote_key: Optional[str] = None) -> bool:
        with self._lock:
            current = self._records.get(submission_id)
            if current is None or (remote_key is not None and current.remote_key != remote_key):
                return False
            del self._records[submission_id]
            return True

    def delete_by_remote_key(self, remote_key: str) -> int:
        with self._lock:
            matches = [sid for sid, r in self._records.items() if r.remote_key == remote_key]
            for submission_id in matches:
                del self._records[submission_id]
            return len(matches)

    def find(
        self,
        statuses: Iterable[UploadStatus],
        uploaded_before: Optional[datetime] = None,
        only_undeleted: bool = False,
    ) -> list[UploadRecord]:
        wanted = set(statuses)
        with self._lock:
            matches = [
                r for r in self._records.values()
                if r.status in wanted
                and (uploaded_before is None or (r.uploaded_at is not None and r.uploaded_at < uploaded_before))
                and (not only_undeleted or r.deleted_at is None)
            ]
        return sorted(matches, key=lambda r: (r.uploaded_at is None, r.uploaded_at or datetime.min))

    def find_by_user(self, user_id: int) -> list[UploadRecord]:
        with self._lock:
            return [r for r in self._records.values() if r.user_id == user_id]

    def all(self) -> list[UploadRecord]:
        with self._lock:
            return list(self._records.values())


class InMemoryAuditLogRepository:

    def __init__(self) -> None:
        self._entries: list[AuditLogEntry] = []
        self._lock = threading.Lock()

    def insert(self, entry: AuditLogEntry) -> None:
        with self._lock:
            self._entries.append(entry)

    def find_by_user(self, user_id: int) -> list[AuditLogEntry]:
        with self._lock:
            return [e for e in self._entries if e.user_id == user_id]

    def delete_by_user(self, user_id: int) -> int:
        with self._lock:
            before = len(self._entries)
            self._entries = [e for e in self._entries if e.user_id != user_id]
            return before - len(self._entries)

    @property
    def entries(self) -> list[AuditLogEntry]:
        with self._lock:
            return list(self._entries)


class InMemorySubmissionDirectory:
    """
    Stand-in for the host application's submissions.

    get_or_create_for_user() hands out sequential submission IDs.
    """

    def __init__(self, submissions: Iterable[SubmissionInfo] = ()) -> None:
        self._submissions = {s.submission_id: s for s in submissions}
        self._lock = threading.Lock()

    def add(self, submission: SubmissionInfo) -> None:
        with self._lock:
            self._submissions[submission.submission_id] = submission

    def get(self, submission_id: int) -> Optional[SubmissionInfo]:
        with self._lock:
            return self._submissions.get(submission_id)

    def get_or_create_for_user(self, assignment_id: int, user_id: int) -> SubmissionInfo:
        with self._lock:
            for submission in self._submissions.values():
                if submission.assignment_id == assignment_id and submission.owner_id == user_id:
                    return submission
            submission = SubmissionInfo(
                submission_id=max(self._submissions, default=0) + 1,
                assignment_id=assignment_id,
                owner_id=user_id,
            )
            self._submissions[submission.submission_id] = submission
            return submission
