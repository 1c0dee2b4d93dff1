"""
Interfaces the core depends on.

The core never imports a database driver, an HTTP client or a cache
library. It asks for these protocols and the infrastructure layer
provides implementations (real or in-memory).
"""

from contextlib import AbstractAsyncContextManager
from datetime import datetime
from typing import Iterable, Optional, Protocol

from .models import (
    AuditLogEntry,
    PlaybackCredential,
    RemoteObjectMetadata,
    SubmissionInfo,
    UploadRecord,
    UploadSession,
    UploadStatus,
)


class UploadRecordRepository(Protocol):
    """Durable store of UploadRecords, at most one per submission."""

    def get_by_submission(self, submission_id: int) -> Optional[UploadRecord]: ...

    def get_by_remote_key(self, remote_key: str) -> Optional[UploadRecord]: ...

    def replace_for_submission(self, record: UploadRecord) -> Optional[UploadRecord]:
        """
        Insert or overwrite the record for record.submission_id atomically.

        Returns the record that was displaced, if any.
        """
        ...

    def update(self, record: UploadRecord, expected_status: Optional[UploadStatus] = None) -> bool:
        """
        Overwrite the stored record for record.submission_id, but only while
        it still holds record.remote_key (and expected_status, when given).

        Returns False and writes nothing when the stored record has moved
        on: replaced by a newer upload, removed, or changed status.
        """
        ...

    def delete(self, submission_id: int, remote_key: Optional[str] = None) -> bool:
        """Delete the submission's record; with remote_key, only while it still holds that key."""
        ...

    def delete_by_remote_key(self, remote_key: str) -> int: ...

    def find(
        self,
        statuses: Iterable[UploadStatus],
        uploaded_before: Optional[datetime] = None,
        only_undeleted: bool = False,
    ) -> list[UploadRecord]: ...

    def find_by_user(self, user_id: int) -> list[UploadRecord]: ...


class AuditLogRepository(Protocol):
    """Append-only audit log."""

    def insert(self, entry: AuditLogEntry) -> None: ...

    def find_by_user(self, user_id: int) -> list[AuditLogEntry]: ...

    def delete_by_user(self, user_id: int) -> int: ...


class SubmissionDirectory(Protocol):
    """The host application's view of submissions."""

    def get(self, submission_id: int) -> Optional[SubmissionInfo]: ...

    def get_or_create_for_user(self, assignment_id: int, user_id: int) -> SubmissionInfo: ...


class WindowCache(Protocol):
    """
    Shared cache holding rate-limit windows.

    lock(key) serializes read-modify-write of one window across
    concurrent requests.
    """

    async def get(self, key: str) -> Optional[list[float]]: ...

    async def set(self, key: str, timestamps: list[float], ttl_seconds: int) -> None: ...

    async def delete(self, key: str) -> None: ...

    def lock(self, key: str) -> AbstractAsyncContextManager: ...


class RemoteStorageClient(Protocol):
    """
    Uniform operations over the video backend.

    Every method raises ServiceError on failure: NOT_FOUND when the
    object is absent, AUTH/THROTTLED/TRANSIENT_NETWORK/REMOTE for HTTP
    failures and INVALID_RESPONSE for undecodable bodies.
    """

    backend_name: str

    async def create_upload_session(
        self,
        max_duration_seconds: int,
        max_file_size: int,
        mime_type: Optional[str] = None,
        key_hint: Optional[str] = None,
    ) -> UploadSession: ...

    async def get_object_metadata(self, remote_key: str) -> RemoteObjectMetadata: ...

    async def delete_object(self, remote_key: str) -> bool: ...

    async def generate_playback_credential(
        self,
        remote_key: str,
        ttl_seconds: int,
    ) -> PlaybackCredential: ...

    def validate_remote_key(self, remote_key: str) -> str: ...
