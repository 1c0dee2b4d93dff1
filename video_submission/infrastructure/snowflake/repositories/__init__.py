"""
Repository pattern implementations for Snowflake.

Repositories translate between domain models and database representations.
"""

from .audit_log import SnowflakeAuditLogRepository
from .schema import SCHEMA_STATEMENTS, ensure_schema
from .submissions import SnowflakeSubmissionDirectory
from .uploads import SnowflakeUploadRecordRepository

__all__ = [
    "SCHEMA_STATEMENTS",
    "SnowflakeAuditLogRepository",
    "SnowflakeSubmissionDirectory",
    "SnowflakeUploadRecordRepository",
    "ensure_schema",
]
