"""
Site administrator endpoints.

- POST /cleanup runs the daily cleanup sweep on demand
- GET /privacy/{user_id} exports what we hold about a user
- DELETE /privacy/{user_id} erases it

All of them require X-User-Is-Admin.
"""

import logging
from typing import Any

from fastapi import APIRouter
from pydantic import BaseModel

from ...core.models import CleanupReport
from ..dependencies import AdminDep, CleanupSchedulerDep, PrivacyServiceDep

logger = logging.getLogger(__name__)

router = APIRouter()


class SweepResult(BaseModel):
    processed: int
    deleted: int
    not_found: int
    failed: int
    removed_local: int
    errors: list[str]

    @classmethod
    def from_report(cls, report: CleanupReport) -> "SweepResult":
        return cls(
            processed=report.processed,
            deleted=report.deleted,
            not_found=report.not_found,
            failed=report.failed,
            removed_local=report.removed_local,
            errors=report.errors,
        )


class CleanupResponse(BaseModel):
    success: bool = True
    sweeps: dict[str, SweepResult]


class PrivacyEraseResponse(BaseModel):
    success: bool = True
    user_id: int
    videos_deleted: int
    videos_failed: int
    records_removed: int
    audit_entries_deleted: int
    errors: list[str]


@router.post(
    "/cleanup",
    response_model=CleanupResponse,
    summary="Run the cleanup sweep now",
)
async def run_cleanup(admin: AdminDep, scheduler: CleanupSchedulerDep) -> CleanupResponse:
    logger.info("Manual cleanup requested", extra={"user_id": admin.user_id})
    reports = await scheduler.run()
    return CleanupResponse(
        sweeps={name: SweepResult.from_report(report) for name, report in reports.items()}
    )


@router.get(
    "/privacy/{user_id}",
    summary="Export a user's videos and audit entries",
)
async def export_user_data(user_id: int, admin: AdminDep, privacy: PrivacyServiceDep) -> dict[str, Any]:
    logger.info("Privacy export requested", extra={"user_id": user_id, "admin_id": admin.user_id})
    return {"success": True, **privacy.export_user_data(user_id)}


@router.delete(
    "/privacy/{user_id}",
    response_model=PrivacyEraseResponse,
    summary="Erase a user's videos and audit entries",
)
async def erase_user_data(user_id: int, admin: AdminDep, privacy: PrivacyServiceDep) -> PrivacyEraseResponse:
    logger.info("Privacy erasure requested", extra={"user_id": user_id, "admin_id": admin.user_id})
    result = await privacy.erase_user_data(user_id)
    return PrivacyEraseResponse(**result)
