"""
Snowflake repository for upload records.

One row per submission. replace_for_submission() runs inside a
transaction that first touches the submission's row with a no-op
UPDATE; Snowflake holds the DML lock until COMMIT, so two concurrent
replacements for the same submission are serialized and each sees the
row the other wrote.

update() and delete() are conditional on the remote_key the caller read,
so a write based on a stale snapshot matches no row instead of
overwriting a newer upload.
"""

import logging
from datetime import datetime
from typing import Iterable, Optional

from ....core.models import UploadRecord, UploadStatus

logger = logging.getLogger(__name__)

_COLUMNS = """
    id, submission_id, assignment_id, user_id, remote_key, status,
    file_size, duration_seconds, uploaded_at, deleted_at, error_message
"""


class SnowflakeUploadRecordRepository:
    """
    Repository for upload record persistence.

    The application code never writes SQL directly - it asks the
    repository for what it needs in domain terms.
    """

    def __init__(self, connection) -> None:
        self._conn = connection

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    def get_by_submission(self, submission_id: int) -> Optional[UploadRecord]:
        return self._fetch_one(
            f"SELECT {_COLUMNS} FROM video_uploads WHERE submission_id = %s",
            (submission_id,),
        )

    def get_by_remote_key(self, remote_key: str) -> Optional[UploadRecord]:
        return self._fetch_one(
            f"SELECT {_COLUMNS} FROM video_uploads WHERE remote_key = %s",
            (remote_key,),
        )

    def find(
        self,
        statuses: Iterable[UploadStatus],
        uploaded_before: Optional[datetime] = None,
        only_undeleted: bool = False,
    ) -> list[UploadRecord]:
        values = [s.value for s in statuses]
        if not values:
            return []

        clauses = [f"status IN ({', '.join(['%s'] * len(values))})"]
        params: list = list(values)
        if uploaded_before is not None:
            clauses.append("uploaded_at < %s")
            params.append(uploaded_before)
        if only_undeleted:
            clauses.append("deleted_at IS NULL")

        return self._fetch_all(
            f"SELECT {_COLUMNS} FROM video_uploads WHERE {' AND '.join(clauses)} ORDER BY uploaded_at ASC",
            tuple(params),
        )

    def find_by_user(self, user_id: int) -> list[UploadRecord]:
        return self._fetch_all(
            f"SELECT {_COLUMNS} FROM video_uploads WHERE user_id = %s ORDER BY uploaded_at ASC",
            (user_id,),
        )

    # -------------------------------------------------------------------------
    # Writes
    # -------------------------------------------------------------------------

    def replace_for_submission(self, record: UploadRecord) -> Optional[UploadRecord]:
        cursor = self._conn.cursor()

        try:
            cursor.execute("BEGIN")
            # Take the row lock before reading
            cursor.execute(
                "UPDATE video_uploads SET submission_id = submission_id WHERE submission_id = %s",
                (record.submission_id,),
            )
            cursor.execute(
                f"SELECT {_COLUMNS} FROM video_uploads WHERE submission_id = %s",
                (record.submission_id,),
            )
            row = cursor.fetchone()
            displaced = self._build_record(row) if row else None

            cursor.execute("""
                MERGE INTO video_uploads AS target
                USING (SELECT %s AS submission_id) AS source
                ON target.submission_id = source.submission_id
                WHEN MATCHED THEN UPDATE SET
                    assignment_id = %s,
                    user_id = %s,
                    remote_key = %s,
                    status = %s,
                    file_size = %s,
                    duration_seconds = %s,
                    uploaded_at = %s,
                    deleted_at = %s,
                    error_message = %s
                WHEN NOT MATCHED THEN INSERT (
                    submission_id, assignment_id, user_id, remote_key, status,
                    file_size, duration_seconds, uploaded_at, deleted_at, error_message
                ) VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
            """, (
                record.submission_id,
                *self._row_values(record),
                record.submission_id,
                *self._row_values(record),
            ))
            self._conn.commit()
            return displaced

        except Exception as e:
            self._conn.rollback()
            logger.error(
                "Failed to replace upload record",
                extra={"submission_id": record.submission_id, "error": str(e)}
            )
            raise
        finally:
            cursor.close()

    def update(self, record: UploadRecord, expected_status: Optional[UploadStatus] = None) -> bool:
        query = """
            UPDATE video_uploads SET
                assignment_id = %s,
                user_id = %s,
                remote_key = %s,
                status = %s,
                file_size = %s,
                duration_seconds = %s,
                uploaded_at = %s,
                deleted_at = %s,
                error_message = %s
            WHERE submission_id = %s AND COALESCE(remote_key, '') = %s
        """
        params = [*self._row_values(record), record.submission_id, record.remote_key or ""]
        if expected_status is not None:
            query += " AND status = %s"
            params.append(expected_status.value)

        matched = self._execute(query, tuple(params)) > 0
        if not matched:
            logger.info(
                "Upload record changed underneath update",
                extra={"submission_id": record.submission_id, "remote_key": record.remote_key},
            )
        return matched

    def delete(self, submission_id: int, remote_key: Optional[str] = None) -> bool:
        if remote_key is None:
            return self._execute(
                "DELETE FROM video_uploads WHERE submission_id = %s",
                (submission_id,),
            ) > 0
        return self._execute(
            "DELETE FROM video_uploads WHERE submission_id = %s AND COALESCE(remote_key, '') = %s",
            (submission_id, remote_key),
        ) > 0

    def delete_by_remote_key(self, remote_key: str) -> int:
        return self._execute(
            "DELETE FROM video_uploads WHERE remote_key = %s",
            (remote_key,),
        )

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    @staticmethod
    def _row_values(record: UploadRecord) -> tuple:
        return (
            record.assignment_id,
            record.user_id,
            record.remote_key,
            record.status.value,
            record.file_size,
            record.duration_seconds,
            record.uploaded_at,
            record.deleted_at,
            record.error_message,
        )

    @staticmethod
    def _build_record(row) -> UploadRecord:
        return UploadRecord(
            id=row[0],
            submission_id=row[1],
            assignment_id=row[2],
            user_id=row[3],
            remote_key=row[4] or "",
            status=UploadStatus(row[5]),
            file_size=row[6],
            duration_seconds=row[7],
            uploaded_at=row[8],
            deleted_at=row[9],
            error_message=row[10],
        )

    def _fetch_one(self, query: str, params: tuple) -> Optional[UploadRecord]:
        cursor = self._conn.cursor()
        try:
            cursor.execute(query, params)
            row = cursor.fetchone()
            return self._build_record(row) if row else None
        finally:
            cursor.close()

    def _fetch_all(self, query: str, params: tuple) -> list[UploadRecord]:
        cursor = self._conn.cursor()
        try:
            cursor.execute(query, params)
            return [self._build_record(row) for row in cursor.fetchall()]
        finally:
            cursor.close()

    def _execute(self, query: str, params: tuple) -> int:
        cursor = self._conn.cursor()
        try:
            cursor.execute(query, params)
            self._conn.commit()
            return cursor.rowcount or 0
        except Exception as e:
            logger.error("Upload record write failed", extra={"error": str(e)})
            raise
        finally:
            cursor.close()
