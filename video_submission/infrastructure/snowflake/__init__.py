"""
Snowflake record store.

Upload records, the audit log and the submission directory live in
Snowflake in production. Mock mode uses infrastructure.records instead.
"""

from .client import SnowflakeConfig, SnowflakeConnectionError, get_snowflake_connection
from .repositories import (
    SnowflakeAuditLogRepository,
    SnowflakeSubmissionDirectory,
    SnowflakeUploadRecordRepository,
    ensure_schema,
)

__all__ = [
    "SnowflakeAuditLogRepository",
    "SnowflakeConfig",
    "SnowflakeConnectionError",
    "SnowflakeSubmissionDirectory",
    "SnowflakeUploadRecordRepository",
    "ensure_schema",
    "get_snowflake_connection",
]
