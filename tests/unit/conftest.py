"""
Shared fixtures for the unit tests.

Everything runs against in-memory stores, the mock video backend, a
clock the test controls and a sleep that records delays instead of
waiting.
"""

import itertools
import random
from datetime import datetime, timedelta, timezone

import pytest

from video_submission.core.audit import AuditLogger
from video_submission.core.cleanup import CleanupScheduler
from video_submission.core.models import Principal, RemoteState, SubmissionInfo, UploadSession
from video_submission.core.playback import PlaybackService
from video_submission.core.rate_limit import SlidingWindowRateLimiter
from video_submission.core.retry import RetryEngine, RetryPolicy
from video_submission.core.uploads import UploadSessionTracker
from video_submission.infrastructure.cache import InMemoryWindowCache
from video_submission.infrastructure.records import (
    InMemoryAuditLogRepository,
    InMemorySubmissionDirectory,
    InMemoryUploadRecordRepository,
)
from video_submission.infrastructure.storage import MockStorageClient


class FakeClock:
    """A clock that only moves when told to."""

    def __init__(self, start: datetime) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)

    def monotonic(self) -> float:
        return self.now.timestamp()


class SequentialKeyStorage(MockStorageClient):
    """
    Mock backend that hands out R1, R2, ... instead of random keys.

    New videos start out queued, the way a real backend reports them
    right after the upload slot is created.
    """

    def __init__(self) -> None:
        super().__init__(initial_state=RemoteState.QUEUED)
        self._counter = itertools.count(1)
        self.key_hints: list[str] = []

    async def create_upload_session(self, max_duration_seconds, max_file_size, mime_type=None, key_hint=None):
        self._maybe_fail("create_upload_session", "")
        remote_key = f"R{next(self._counter)}"
        self.set_object(remote_key, state=RemoteState.QUEUED)
        self.key_hints.append(key_hint)
        return UploadSession(upload_target=f"https://upload.example.com/{remote_key}", remote_key=remote_key)


class RecordingSleep:
    """Async sleep replacement that remembers every delay."""

    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


@pytest.fixture
def clock():
    return FakeClock(datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc))


@pytest.fixture
def sleep():
    return RecordingSleep()


@pytest.fixture
def records():
    return InMemoryUploadRecordRepository()


@pytest.fixture
def audit_repository():
    return InMemoryAuditLogRepository()


@pytest.fixture
def submissions():
    """Submission 42 on assignment 7, owned by user 100."""
    return InMemorySubmissionDirectory([
        SubmissionInfo(submission_id=42, assignment_id=7, owner_id=100),
    ])


@pytest.fixture
def storage():
    return SequentialKeyStorage()


@pytest.fixture
def window_cache(clock):
    return InMemoryWindowCache(monotonic=clock.monotonic)


@pytest.fixture
def rate_limiter(window_cache, clock):
    return SlidingWindowRateLimiter(window_cache, clock=clock)


@pytest.fixture
def audit(audit_repository, clock):
    return AuditLogger(audit_repository, clock=clock)


@pytest.fixture
def retry(sleep, audit):
    return RetryEngine(
        RetryPolicy(max_attempts=3, base_delay=1.0, max_delay=30.0),
        sleep=sleep,
        rng=random.Random(1234),
        audit=audit,
    )


@pytest.fixture
def tracker(storage, records, submissions, rate_limiter, retry, audit, clock):
    return UploadSessionTracker(storage, records, submissions, rate_limiter, retry, audit, clock=clock)


@pytest.fixture
def playback(storage, records, submissions, rate_limiter, retry, audit):
    return PlaybackService(storage, records, submissions, rate_limiter, retry, audit)


@pytest.fixture
def cleanup(storage, records, audit, retry, clock):
    return CleanupScheduler(storage, records, audit, retry, clock=clock)


@pytest.fixture
def student():
    """Owner of submission 42."""
    return Principal(user_id=100)


@pytest.fixture
def other_student():
    return Principal(user_id=200)


@pytest.fixture
def grader():
    return Principal(user_id=300, capabilities=frozenset({Principal.GRADE}))


@pytest.fixture
def admin():
    return Principal(user_id=1, is_site_admin=True)
