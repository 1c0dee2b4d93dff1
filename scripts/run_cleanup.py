#!/usr/bin/env python3
"""
Run the video cleanup sweep once.

Meant to be scheduled daily (cron, a Kubernetes CronJob, ...). Removes
abandoned uploads, marks videos that vanished from the backend as
deleted, and deletes videos past the retention period.

Usage:
    python scripts/run_cleanup.py
    python scripts/run_cleanup.py --sweep expired
    python scripts/run_cleanup.py --init-schema

Requires:
    - .env file (or environment) with backend and Snowflake settings
    - the package installed (pip install -e .)
"""

import asyncio
import logging
import sys

from dotenv import load_dotenv

# Load environment variables before settings are read
load_dotenv()

from video_submission.config.settings import get_settings  # noqa: E402
from video_submission.core.audit import AuditLogger  # noqa: E402
from video_submission.core.cleanup import CleanupScheduler  # noqa: E402
from video_submission.core.errors import ServiceError  # noqa: E402
from video_submission.core.retry import RetryEngine, RetryPolicy  # noqa: E402
from video_submission.infrastructure.snowflake import (  # noqa: E402
    SnowflakeAuditLogRepository,
    SnowflakeConfig,
    SnowflakeUploadRecordRepository,
    ensure_schema,
    get_snowflake_connection,
)
from video_submission.infrastructure.storage import create_storage_client  # noqa: E402

logger = logging.getLogger("run_cleanup")

SWEEPS = ("all", "stuck", "sync", "expired")


async def run(sweep: str, init_schema: bool) -> bool:
    settings = get_settings()
    if settings.snowflake_mock_mode:
        print("ERROR: SNOWFLAKE_MOCK_MODE is on; the cleanup job needs the real record store")
        return False

    storage = create_storage_client(settings)
    try:
        with get_snowflake_connection(SnowflakeConfig.from_settings(settings)) as conn:
            if init_schema:
                ensure_schema(conn)
                print("Schema is up to date")

            audit = AuditLogger(SnowflakeAuditLogRepository(conn))
            scheduler = CleanupScheduler(
                storage,
                SnowflakeUploadRecordRepository(conn),
                audit,
                RetryEngine(
                    RetryPolicy.from_milliseconds(
                        settings.retry_max_attempts,
                        settings.retry_base_delay_ms,
                        settings.retry_max_delay_ms,
                    ),
                    audit=audit,
                ),
                retention_days=settings.retention_days,
                stuck_upload_seconds=settings.stuck_upload_seconds,
            )

            if sweep == "all":
                reports = await scheduler.run()
            elif sweep == "stuck":
                reports = {"stuck": await scheduler.cleanup_stuck_uploads()}
            elif sweep == "sync":
                reports = {"sync": await scheduler.sync_with_remote()}
            else:
                reports = {"expired": await scheduler.sweep_expired()}
    finally:
        aclose = getattr(storage, "aclose", None)
        if aclose is not None:
            await aclose()

    failed = 0
    for name, report in reports.items():
        print(
            f"{name}: processed={report.processed} deleted={report.deleted} "
            f"not_found={report.not_found} failed={report.failed} removed_local={report.removed_local}"
        )
        for error in report.errors:
            print(f"  - {error}")
        failed += report.failed
    return failed == 0


def main():
    import argparse

    parser = argparse.ArgumentParser(description='Run the video cleanup sweep')
    parser.add_argument('--sweep', choices=SWEEPS, default='all', help='Which sweep to run')
    parser.add_argument('--init-schema', action='store_true', help='Create missing tables first')
    args = parser.parse_args()

    logging.basicConfig(
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        level=get_settings().log_level.upper(),
    )

    try:
        success = asyncio.run(run(args.sweep, args.init_schema))
    except ServiceError as e:
        logger.error("Cleanup run failed", extra={"error_code": e.code, "error": e.message})
        print(f"ERROR: {e.message}")
        sys.exit(1)

    sys.exit(0 if success else 1)


if __name__ == '__main__':
    main()
