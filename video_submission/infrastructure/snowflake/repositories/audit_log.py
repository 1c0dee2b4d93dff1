"""
Snowflake repository for the audit log.

Rows are inserted and, on privacy erasure, deleted in bulk per user.
They are never updated.
"""

import json
import logging
from typing import Optional

from ....core.models import AuditEvent, AuditLogEntry

logger = logging.getLogger(__name__)

_COLUMNS = """
    id, event_type, event_timestamp, user_id, assignment_id, submission_id,
    remote_key, error_code, error_message, context
"""


class SnowflakeAuditLogRepository:

    def __init__(self, connection) -> None:
        self._conn = connection

    def insert(self, entry: AuditLogEntry) -> None:
        cursor = self._conn.cursor()
        try:
            # PARSE_JSON is not allowed in a VALUES clause
            cursor.execute("""
                INSERT INTO video_audit_log (
                    event_type, event_timestamp, user_id, assignment_id, submission_id,
                    remote_key, error_code, error_message, context
                )
                SELECT %s, %s, %s, %s, %s, %s, %s, %s, PARSE_JSON(%s)
            """, (
                entry.event_type.value,
                entry.timestamp,
                entry.user_id,
                entry.assignment_id,
                entry.submission_id,
                entry.remote_key,
                entry.error_code,
                entry.error_message,
                json.dumps(entry.context, default=str),
            ))
            self._conn.commit()
        finally:
            cursor.close()

    def find_by_user(self, user_id: int) -> list[AuditLogEntry]:
        cursor = self._conn.cursor()
        try:
            cursor.execute(
                f"SELECT {_COLUMNS} FROM video_audit_log WHERE user_id = %s ORDER BY event_timestamp ASC",
                (user_id,),
            )
            return [self._build_entry(row) for row in cursor.fetchall()]
        finally:
            cursor.close()

    def delete_by_user(self, user_id: int) -> int:
        cursor = self._conn.cursor()
        try:
            cursor.execute("DELETE FROM video_audit_log WHERE user_id = %s", (user_id,))
            self._conn.commit()
            return cursor.rowcount or 0
        finally:
            cursor.close()

    def _build_entry(self, row) -> AuditLogEntry:
        return AuditLogEntry(
            id=row[0],
            event_type=AuditEvent(row[1]),
            timestamp=row[2],
            user_id=row[3],
            assignment_id=row[4],
            submission_id=row[5],
            remote_key=row[6],
            error_code=row[7],
            error_message=row[8],
            context=self._parse_variant_json(row[9]) or {},
        )

    def _parse_variant_json(self, variant_data) -> Optional[dict]:
        """
        Parse Snowflake VARIANT data that might be a string or already parsed.

        snowflake-connector-python returns VARIANT as a JSON string; other
        drivers may hand back a dict.
        """
        if not variant_data:
            return None

        if isinstance(variant_data, str):
            try:
                return json.loads(variant_data)
            except json.JSONDecodeError as e:
                logger.error(
                    "Failed to parse VARIANT JSON string",
                    extra={"variant_data": variant_data[:100], "error": str(e)}
                )
                return None

        return variant_data
