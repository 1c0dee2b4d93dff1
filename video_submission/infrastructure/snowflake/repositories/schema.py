"""
Table definitions for the record store.

video_uploads holds one row per submission (UNIQUE is informational in
Snowflake, so the repository enforces it with MERGE). video_audit_log is
append-only. submissions mirrors the host application's submissions for
deployments where the host syncs them into Snowflake.
"""

import logging

logger = logging.getLogger(__name__)

SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS video_uploads (
        id INTEGER AUTOINCREMENT PRIMARY KEY,
        submission_id INTEGER NOT NULL UNIQUE,
        assignment_id INTEGER NOT NULL,
        user_id INTEGER NOT NULL,
        remote_key VARCHAR(1024) NOT NULL DEFAULT '',
        status VARCHAR(16) NOT NULL,
        file_size INTEGER,
        duration_seconds INTEGER,
        uploaded_at TIMESTAMP_TZ,
        deleted_at TIMESTAMP_TZ,
        error_message VARCHAR(1000)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS video_audit_log (
        id INTEGER AUTOINCREMENT PRIMARY KEY,
        event_type VARCHAR(32) NOT NULL,
        event_timestamp TIMESTAMP_TZ NOT NULL,
        user_id INTEGER,
        assignment_id INTEGER,
        submission_id INTEGER,
        remote_key VARCHAR(1024),
        error_code VARCHAR(64),
        error_message VARCHAR(1000),
        context VARIANT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS submissions (
        submission_id INTEGER AUTOINCREMENT PRIMARY KEY,
        assignment_id INTEGER NOT NULL,
        owner_id INTEGER NOT NULL,
        submissions_open BOOLEAN NOT NULL DEFAULT TRUE
    )
    """,
)


def ensure_schema(connection) -> None:
    """Create the tables if they do not exist."""
    cursor = connection.cursor()
    try:
        for statement in SCHEMA_STATEMENTS:
            cursor.execute(statement)
        connection.commit()
        logger.info("Record store schema ensured", extra={"tables": len(SCHEMA_STATEMENTS)})
    finally:
        cursor.close()
