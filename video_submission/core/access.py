"""
Who may watch a submitted video.

The owner may always view their own submission, graders may view any
submission in a context they grade, and site administrators may view
everything. A request naming a video that does not belong to the
submission is refused as an invalid identifier rather than a permission
problem, so the client can tell the user the link is wrong instead of
telling them they lack access.
"""

import logging
from typing import Optional

from .errors import ErrorKind, ServiceError
from .models import Principal, SubmissionInfo, UploadRecord, UploadStatus

logger = logging.getLogger(__name__)


def can_view(principal: Principal, submission_owner_id: int) -> bool:
    if principal.is_site_admin:
        return True
    if principal.user_id == submission_owner_id:
        return True
    return principal.can_grade


def verify_video_access(
    principal: Principal,
    submission: Optional[SubmissionInfo],
    record: Optional[UploadRecord],
    remote_key: str,
) -> UploadRecord:
    """
    Check that `remote_key` is the live video of `submission` and that
    `principal` may view it.

    Returns:
        The matching UploadRecord

    Raises:
        ServiceError(INVALID_IDENTIFIER): unknown submission, no record,
            the key does not match, or the video was deleted
        ServiceError(PERMISSION): the principal may not view it
    """
    if not remote_key or submission is None or record is None:
        raise _invalid_identifier(remote_key, submission)

    if record.remote_key != remote_key or record.submission_id != submission.submission_id:
        raise _invalid_identifier(remote_key, submission)

    if record.status == UploadStatus.DELETED:
        raise _invalid_identifier(remote_key, submission)

    if not can_view(principal, submission.owner_id):
        logger.warning(
            "Playback access denied",
            extra={
                "user_id": principal.user_id,
                "submission_id": submission.submission_id,
            },
        )
        raise ServiceError(
            ErrorKind.PERMISSION,
            "You do not have permission to view this video",
            code="permission_error",
            context={"submission_id": submission.submission_id},
        )

    return record


def _invalid_identifier(remote_key: str, submission: Optional[SubmissionInfo]) -> ServiceError:
    return ServiceError(
        ErrorKind.INVALID_IDENTIFIER,
        "The requested video does not belong to this submission",
        code="invalid_identifier",
        context={
            "remote_key": remote_key,
            "submission_id": submission.submission_id if submission else None,
        },
    )
