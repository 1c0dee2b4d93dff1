"""
Upload lifecycle endpoints.

The browser never sends video bytes through this service:

1. POST /upload-session returns a direct upload target on the backend
2. The browser uploads straight to that target
3. POST /confirm-upload fetches the backend's metadata and records the result

POST /cleanup-failed-upload and POST /retry-upload recover from an upload
that went wrong. POST /resumable-session is the large-file variant of step 1
on backends that speak TUS.
"""

import logging
from typing import Optional

from fastapi import APIRouter
from pydantic import BaseModel, Field

from ..dependencies import PrincipalDep, UploadTrackerDep

logger = logging.getLogger(__name__)

router = APIRouter()


# ---------------------------------------------------------------------------
# Request/Response Models
# ---------------------------------------------------------------------------

class UploadSessionRequest(BaseModel):
    assignment_id: int = Field(description="Assignment the video is submitted to")
    submission_id: Optional[int] = Field(
        default=None,
        description="Existing submission; created for the caller when omitted",
    )
    mime_type: Optional[str] = Field(default=None, description="Content type of the file to upload")
    max_duration_seconds: Optional[int] = Field(default=None, description="Longest video the session accepts")


class ResumableSessionRequest(BaseModel):
    assignment_id: int
    submission_id: Optional[int] = None
    file_size: int = Field(description="Exact size of the file in bytes")
    filename: str = Field(description="Original filename, used for the extension check")
    max_duration_seconds: Optional[int] = None


class UploadSessionResponse(BaseModel):
    """Where to send the bytes, and the key to confirm afterwards."""
    success: bool = True
    upload_target: str = Field(description="URL the browser uploads to")
    remote_key: str = Field(description="Backend key the video will be stored under")
    submission_id: int
    form_fields: dict[str, str] = Field(
        default_factory=dict,
        description="Extra form fields for backends that use a presigned POST",
    )


class VideoReference(BaseModel):
    remote_key: str
    submission_id: int


class ConfirmUploadResponse(BaseModel):
    success: bool = True
    status: str
    duration_seconds: Optional[int] = None
    file_size: Optional[int] = None


class CleanupFailedUploadResponse(BaseModel):
    success: bool = True
    deleted_remote: bool
    deleted_local: bool
    errors: list[str] = Field(default_factory=list)


class RetryUploadRequest(BaseModel):
    submission_id: int


class RetryUploadResponse(BaseModel):
    success: bool = True
    submission_id: int
    status: str


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------

@router.post(
    "/upload-session",
    response_model=UploadSessionResponse,
    summary="Request a direct upload target",
    responses={
        429: {"description": "Upload rate limit exceeded (see Retry-After)"},
        503: {"description": "Video backend unavailable"},
    },
)
async def request_upload_session(
    body: UploadSessionRequest,
    principal: PrincipalDep,
    tracker: UploadTrackerDep,
) -> UploadSessionResponse:
    """
    Issue an upload slot for the caller's submission.

    Any video the submission already has is replaced: the old video is
    deleted from the backend and the record now points at the new key.
    """
    session = await tracker.request_upload_session(
        principal,
        body.assignment_id,
        submission_id=body.submission_id,
        mime_type=body.mime_type,
        max_duration_seconds=body.max_duration_seconds,
    )
    return UploadSessionResponse(
        upload_target=session.upload_target,
        remote_key=session.remote_key,
        submission_id=session.submission_id,
        form_fields=session.form_fields,
    )


@router.post(
    "/resumable-session",
    response_model=UploadSessionResponse,
    summary="Request a resumable (TUS) upload for a large file",
)
async def request_resumable_session(
    body: ResumableSessionRequest,
    principal: PrincipalDep,
    tracker: UploadTrackerDep,
) -> UploadSessionResponse:
    session = await tracker.request_resumable_session(
        principal,
        body.assignment_id,
        body.file_size,
        body.filename,
        submission_id=body.submission_id,
        max_duration_seconds=body.max_duration_seconds,
    )
    return UploadSessionResponse(
        upload_target=session.upload_target,
        remote_key=session.remote_key,
        submission_id=session.submission_id,
    )


@router.post(
    "/confirm-upload",
    response_model=ConfirmUploadResponse,
    summary="Confirm an upload and record the backend's metadata",
)
async def confirm_upload(
    body: VideoReference,
    principal: PrincipalDep,
    tracker: UploadTrackerDep,
) -> ConfirmUploadResponse:
    record = await tracker.confirm_upload(principal, body.remote_key, body.submission_id)
    return ConfirmUploadResponse(
        status=record.status.value,
        duration_seconds=record.duration_seconds,
        file_size=record.file_size,
    )


@router.post(
    "/cleanup-failed-upload",
    response_model=CleanupFailedUploadResponse,
    summary="Remove an abandoned upload",
)
async def cleanup_failed_upload(
    body: VideoReference,
    principal: PrincipalDep,
    tracker: UploadTrackerDep,
) -> CleanupFailedUploadResponse:
    """
    Best-effort cleanup after a failed upload.

    Backend failures do not fail the request; they show up as
    deleted_remote=false with the reason in errors.
    """
    result = await tracker.cleanup_failed_upload(principal, body.remote_key, body.submission_id)
    return CleanupFailedUploadResponse(
        deleted_remote=result.deleted_remote,
        deleted_local=result.deleted_local,
        errors=list(result.errors),
    )


@router.post(
    "/retry-upload",
    response_model=RetryUploadResponse,
    summary="Reset a failed upload so it can be tried again",
)
async def retry_upload(
    body: RetryUploadRequest,
    principal: PrincipalDep,
    tracker: UploadTrackerDep,
) -> RetryUploadResponse:
    record = tracker.retry_upload(principal, body.submission_id)
    return RetryUploadResponse(submission_id=record.submission_id, status=record.status.value)
