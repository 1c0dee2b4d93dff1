"""
In-memory record store.

Used in mock mode and by the unit tests. Implements the same repository
protocols as the Snowflake repositories.
"""

from .memory import InMemoryAuditLogRepository, InMemorySubmissionDirectory, InMemoryUploadRecordRepository

__all__ = [
    "InMemoryAuditLogRepository",
    "InMemorySubmissionDirectory",
    "InMemoryUploadRecordRepository",
]
