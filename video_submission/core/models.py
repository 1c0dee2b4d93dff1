"""
Domain models for video submissions.

These models describe the upload lifecycle and the audit trail without
knowing where they are stored or which video backend holds the bytes.
The UploadRecord owns its state machine: every status change goes
through transition_to() so an illegal move fails loudly instead of
being written to the record store.
"""

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Optional

from .errors import ErrorKind, ServiceError


Clock = Callable[[], datetime]


def utc_now() -> datetime:
    """Default clock. Injected everywhere so tests can move time."""
    return datetime.now(timezone.utc)


class UploadStatus(Enum):
    """Where a submitted video is in its lifecycle."""
    PENDING = "pending"      # Upload slot issued, bytes not confirmed
    UPLOADING = "uploading"  # Remote store has the bytes and is processing
    READY = "ready"          # Playable
    ERROR = "error"          # Remote processing or confirmation failed
    DELETED = "deleted"      # Removed remotely; terminal


_ALLOWED_TRANSITIONS: dict[UploadStatus, frozenset[UploadStatus]] = {
    UploadStatus.PENDING: frozenset({
        UploadStatus.PENDING,
        UploadStatus.UPLOADING,
        UploadStatus.READY,
        UploadStatus.ERROR,
    }),
    UploadStatus.UPLOADING: frozenset({
        UploadStatus.UPLOADING,
        UploadStatus.READY,
        UploadStatus.ERROR,
    }),
    UploadStatus.READY: frozenset({UploadStatus.READY, UploadStatus.DELETED}),
    UploadStatus.ERROR: frozenset({UploadStatus.ERROR, UploadStatus.DELETED}),
    UploadStatus.DELETED: frozenset(),
}


class RemoteState(Enum):
    """Processing state reported by the video backend."""
    QUEUED = "queued"
    IN_PROGRESS = "inprogress"
    READY = "ready"
    ERROR = "error"
    UNKNOWN = "unknown"

    @classmethod
    def parse(cls, value: Optional[str]) -> "RemoteState":
        if not value:
            return cls.UNKNOWN
        try:
            return cls(value.strip().lower())
        except ValueError:
            return cls.UNKNOWN


class Role(Enum):
    """How a principal relates to a submission's context."""
    STUDENT = "student"
    GRADER = "teacher"
    ADMIN = "admin"


class AuditEvent(Enum):
    UPLOAD_SUCCESS = "upload_success"
    UPLOAD_FAILURE = "upload_failure"
    UPLOAD_RETRY = "upload_retry"
    PLAYBACK_ACCESS = "playback_access"
    PLAYBACK_FAILURE = "playback_failure"
    VIDEO_DELETION = "video_deletion"
    API_ERROR = "api_error"
    RETRY_ATTEMPT = "retry_attempt"
    RETRY_SUCCESS = "retry_success"
    RETRY_FAILED = "retry_failed"
    CLEANUP_SUMMARY = "cleanup_summary"
    CLEANUP_FAILURE = "cleanup_failure"


# ---------------------------------------------------------------------------
# Upload Record
# ---------------------------------------------------------------------------

@dataclass
class UploadRecord:
    """
    One video attached to one submission.

    There is at most one record per submission_id. Replacing a video
    updates the record in place with the new remote_key; the old remote
    object is deleted separately.
    """
    submission_id: int
    assignment_id: int
    user_id: int
    remote_key: str = ""
    status: UploadStatus = UploadStatus.PENDING
    file_size: Optional[int] = None
    duration_seconds: Optional[int] = None
    uploaded_at: Optional[datetime] = None
    deleted_at: Optional[datetime] = None
    error_message: Optional[str] = None
    id: Optional[int] = None

    def __post_init__(self) -> None:
        if (self.deleted_at is not None) != (self.status == UploadStatus.DELETED):
            raise ServiceError(
                ErrorKind.VALIDATION,
                "deleted_at must be set exactly when status is deleted",
                code="invalid_record",
            )

    def can_transition_to(self, target: UploadStatus) -> bool:
        return target in _ALLOWED_TRANSITIONS[self.status]

    def transition_to(self, target: UploadStatus) -> "UploadRecord":
        """
        Return a copy of this record in the target status.

        Moving to DELETED goes through mark_deleted() because it needs a
        timestamp; moving back to PENDING goes through retry().
        """
        if target == UploadStatus.DELETED:
            raise ServiceError(
                ErrorKind.INVALID_TRANSITION,
                "Use mark_deleted() to delete a record",
                code="invalid_transition",
            )
        self._require_transition(target)
        updated = replace(self, status=target)
        if target == UploadStatus.READY:
            updated.error_message = None
        return updated

    def fail(self, message: str) -> "UploadRecord":
        self._require_transition(UploadStatus.ERROR)
        return replace(self, status=UploadStatus.ERROR, error_message=message)

    def mark_deleted(self, when: datetime, message: Optional[str] = None) -> "UploadRecord":
        self._require_transition(UploadStatus.DELETED)
        return replace(
            self,
            status=UploadStatus.DELETED,
            deleted_at=when,
            error_message=message if message is not None else self.error_message,
        )

    def retry(self) -> "UploadRecord":
        """Explicit user-initiated retry: error -> pending, message cleared."""
        if self.status != UploadStatus.ERROR:
            raise ServiceError(
                ErrorKind.INVALID_TRANSITION,
                f"Only failed uploads can be retried (status is {self.status.value})",
                code="invalid_transition",
            )
        return replace(self, status=UploadStatus.PENDING, error_message=None)

    def with_remote_key(self, remote_key: str) -> "UploadRecord":
        if self.remote_key and not remote_key:
            raise ServiceError(
                ErrorKind.VALIDATION,
                "remote_key cannot be cleared once set",
                code="invalid_record",
            )
        return replace(self, remote_key=remote_key)

    def _require_transition(self, target: UploadStatus) -> None:
        if not self.can_transition_to(target):
            raise ServiceError(
                ErrorKind.INVALID_TRANSITION,
                f"Cannot move upload from {self.status.value} to {target.value}",
                code="invalid_transition",
                context={
                    "submission_id": self.submission_id,
                    "from": self.status.value,
                    "to": target.value,
                },
            )

    @property
    def is_active(self) -> bool:
        return self.status != UploadStatus.DELETED


# ---------------------------------------------------------------------------
# Audit Log
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class AuditLogEntry:
    """
    An append-only record of something that happened.

    Frozen because entries are never updated once written.
    """
    event_type: AuditEvent
    timestamp: datetime
    user_id: Optional[int] = None
    assignment_id: Optional[int] = None
    submission_id: Optional[int] = None
    remote_key: Optional[str] = None
    error_code: Optional[str] = None
    error_message: Optional[str] = None
    context: dict[str, Any] = field(default_factory=dict)
    id: Optional[int] = None


# ---------------------------------------------------------------------------
# Principals and Submissions
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Principal:
    """
    The authenticated caller, as vouched for by the host application.

    capabilities holds host capability names such as "grade" or
    "bypass_rate_limit"; the host decides which context they apply to.
    """
    user_id: int
    is_site_admin: bool = False
    capabilities: frozenset[str] = frozenset()

    GRADE = "grade"
    BYPASS_RATE_LIMIT = "bypass_rate_limit"

    @property
    def can_grade(self) -> bool:
        return self.GRADE in self.capabilities

    @property
    def can_bypass_rate_limit(self) -> bool:
        return self.BYPASS_RATE_LIMIT in self.capabilities

    @property
    def role(self) -> Role:
        if self.is_site_admin:
            return Role.ADMIN
        if self.can_grade:
            return Role.GRADER
        return Role.STUDENT


@dataclass(frozen=True)
class SubmissionInfo:
    """What the host application knows about a submission."""
    submission_id: int
    assignment_id: int
    owner_id: int
    submissions_open: bool = True


# ---------------------------------------------------------------------------
# Remote Store Values
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class UploadSession:
    """Where the browser should send the bytes, and the key they will land under."""
    upload_target: str
    remote_key: str
    form_fields: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class RemoteObjectMetadata:
    """Metadata fetched from the video backend for a stored object."""
    remote_key: str
    size: Optional[int] = None
    duration_seconds: Optional[int] = None
    content_type: Optional[str] = None
    state: RemoteState = RemoteState.UNKNOWN


@dataclass(frozen=True)
class PlaybackCredential:
    """A time-limited token or signed URL."""
    credential: str
    expires_in_seconds: int
    kind: str = "token"  # "token" or "signed_url"


@dataclass
class CleanupReport:
    """Counts from one sweep. Failures keep their messages for the audit log."""
    deleted: int = 0
    not_found: int = 0
    failed: int = 0
    removed_local: int = 0
    errors: list[str] = field(default_factory=list)

    @property
    def processed(self) -> int:
        return self.deleted + self.not_found + self.failed

    def merge(self, other: "CleanupReport") -> "CleanupReport":
        return CleanupReport(
            deleted=self.deleted + other.deleted,
            not_found=self.not_found + other.not_found,
            failed=self.failed + other.failed,
            removed_local=self.removed_local + other.removed_local,
            errors=self.errors + other.errors,
        )
