"""
Submissions as seen by the video service.

The host application owns submissions; this reads the copy it keeps in
Snowflake and creates a row when a student uploads before the host has
created one.
"""

import logging
from typing import Optional

from ....core.models import SubmissionInfo

logger = logging.getLogger(__name__)


class SnowflakeSubmissionDirectory:

    def __init__(self, connection) -> None:
        self._conn = connection

    def get(self, submission_id: int) -> Optional[SubmissionInfo]:
        cursor = self._conn.cursor()
        try:
            cursor.execute("""
                SELECT submission_id, assignment_id, owner_id, submissions_open
                FROM submissions
                WHERE submission_id = %s
            """, (submission_id,))
            row = cursor.fetchone()
            return self._build(row) if row else None
        finally:
            cursor.close()

    def get_or_create_for_user(self, assignment_id: int, user_id: int) -> SubmissionInfo:
        cursor = self._conn.cursor()
        try:
            cursor.execute("""
                MERGE INTO submissions AS target
                USING (SELECT %s AS assignment_id, %s AS owner_id) AS source
                ON target.assignment_id = source.assignment_id
                   AND target.owner_id = source.owner_id
                WHEN NOT MATCHED THEN INSERT (assignment_id, owner_id)
                VALUES (source.assignment_id, source.owner_id)
            """, (assignment_id, user_id))
            self._conn.commit()

            cursor.execute("""
                SELECT submission_id, assignment_id, owner_id, submissions_open
                FROM submissions
                WHERE assignment_id = %s AND owner_id = %s
            """, (assignment_id, user_id))
            row = cursor.fetchone()
        finally:
            cursor.close()

        if row is None:
            raise RuntimeError(f"Submission for assignment {assignment_id} and user {user_id} was not created")
        logger.debug("Resolved submission", extra={"assignment_id": assignment_id, "user_id": user_id, "submission_id": row[0]})
        return self._build(row)

    @staticmethod
    def _build(row) -> SubmissionInfo:
        return SubmissionInfo(
            submission_id=row[0],
            assignment_id=row[1],
            owner_id=row[2],
            submissions_open=bool(row[3]),
        )
