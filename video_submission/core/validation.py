"""
Input validation and sanitizing.

Everything that crosses into the service (request parameters, remote API
responses, records about to be written) passes through these helpers.
Each validator either returns the cleaned value or raises a VALIDATION
ServiceError with a stable code.
"""

import html
import re
from dataclasses import replace
from pathlib import PurePosixPath
from typing import Any, Optional

from .errors import validation_error
from .models import UploadRecord, UploadStatus

VALID_VIDEO_MIME_TYPES = frozenset({
    "video/mp4",
    "video/mpeg",
    "video/quicktime",
    "video/x-msvideo",
    "video/x-ms-wmv",
    "video/webm",
    "video/ogg",
    "video/3gpp",
    "video/x-flv",
})

VALID_VIDEO_EXTENSIONS = frozenset({
    "mp4", "mpeg", "mpg", "mov", "avi", "wmv", "webm", "ogv", "3gp", "flv",
})

DEFAULT_MAX_FILE_SIZE = 5 * 1024 * 1024 * 1024  # 5 GiB
MAX_DURATION_SECONDS = 6 * 60 * 60
MAX_ERROR_MESSAGE_LENGTH = 1000
MAX_CREDENTIAL_TTL_SECONDS = 7 * 24 * 60 * 60

_VIDEO_UID_PATTERN = re.compile(r"^[A-Za-z0-9\-]{1,255}$")
_OBJECT_KEY_PATTERN = re.compile(r"^[A-Za-z0-9!\-_.*'()/]{1,1024}$")
_TAG_PATTERN = re.compile(r"<[^>]*>")
_CONTROL_CHARS = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]")


def validate_positive_id(value: Any, name: str) -> int:
    """Validate a host identifier (assignment, submission, user)."""
    try:
        number = int(value)
    except (TypeError, ValueError):
        raise validation_error(f"invalid_{name}", f"{name.replace('_', ' ').capitalize()} must be a positive integer")
    if number <= 0:
        raise validation_error(f"invalid_{name}", f"{name.replace('_', ' ').capitalize()} must be a positive integer")
    return number


def validate_video_uid(value: Optional[str]) -> str:
    """Cloudflare Stream video UIDs: alphanumerics and dashes only."""
    if not value:
        raise validation_error("missing_video_uid", "Video UID is required")
    cleaned = value.strip()
    if len(cleaned) > 255:
        raise validation_error("video_uid_too_long", "Video UID exceeds maximum length of 255 characters")
    if not _VIDEO_UID_PATTERN.match(cleaned):
        raise validation_error("invalid_video_uid_format", "Video UID contains invalid characters")
    return cleaned


def validate_object_key(value: Optional[str]) -> str:
    """S3 object keys as generated by this service."""
    if not value:
        raise validation_error("invalid_s3_key", "S3 key cannot be empty")
    cleaned = value.strip().lstrip("/")
    if ".." in cleaned.split("/") or not _OBJECT_KEY_PATTERN.match(cleaned):
        raise validation_error("invalid_s3_key", "S3 key contains invalid characters")
    return cleaned


def validate_file_size(size: Any, max_size: int = DEFAULT_MAX_FILE_SIZE) -> int:
    try:
        size = int(size)
    except (TypeError, ValueError):
        raise validation_error("invalid_file_size", "File size must be a positive number")
    if size < 0:
        raise validation_error("invalid_file_size", "File size must be a positive number")
    if size > max_size:
        raise validation_error(
            "file_too_large",
            f"File size exceeds maximum allowed size of {max_size} bytes",
        )
    return size


def validate_duration(duration: Any, max_duration: int = MAX_DURATION_SECONDS) -> int:
    try:
        seconds = float(duration)
    except (TypeError, ValueError):
        raise validation_error("invalid_duration", "Duration must be a positive number")
    if seconds < 0:
        raise validation_error("invalid_duration", "Duration must be a positive number")
    if seconds > max_duration:
        raise validation_error(
            "duration_too_long",
            f"Video duration exceeds maximum allowed duration of {max_duration} seconds",
        )
    return int(seconds)


def validate_mime_type(mime_type: Optional[str]) -> str:
    if not mime_type:
        raise validation_error("missing_mime_type", "MIME type is required")
    cleaned = mime_type.strip().lower()
    if cleaned not in VALID_VIDEO_MIME_TYPES:
        raise validation_error("invalid_mime_type", f'MIME type "{cleaned}" is not supported')
    return cleaned


def validate_file_extension(filename: Optional[str]) -> str:
    """Return the lower-cased extension of an allowed video filename."""
    if not filename:
        raise validation_error("missing_filename", "Filename is required")
    extension = PurePosixPath(filename).suffix.lstrip(".").lower()
    if extension not in VALID_VIDEO_EXTENSIONS:
        raise validation_error("invalid_file_extension", f'File extension "{extension}" is not supported')
    return extension


def validate_credential_ttl(ttl_seconds: Any) -> int:
    try:
        ttl = int(ttl_seconds)
    except (TypeError, ValueError):
        raise validation_error("invalid_expiry", "Expiry must be between 1 and 604800 seconds")
    if ttl <= 0 or ttl > MAX_CREDENTIAL_TTL_SECONDS:
        raise validation_error("invalid_expiry", "Expiry must be between 1 and 604800 seconds")
    return ttl


def validate_upload_status(value: Any) -> UploadStatus:
    if isinstance(value, UploadStatus):
        return value
    try:
        return UploadStatus(str(value).strip().lower())
    except ValueError:
        allowed = ", ".join(s.value for s in UploadStatus)
        raise validation_error("invalid_upload_status", f"Upload status must be one of: {allowed}")


def sanitize_error_message(message: Optional[str]) -> Optional[str]:
    """Strip markup and control characters and cap the length."""
    if message is None:
        return None
    cleaned = _TAG_PATTERN.sub("", str(message))
    cleaned = html.unescape(cleaned)
    cleaned = _CONTROL_CHARS.sub("", cleaned).strip()
    if len(cleaned) > MAX_ERROR_MESSAGE_LENGTH:
        cleaned = cleaned[:MAX_ERROR_MESSAGE_LENGTH - 3] + "..."
    return cleaned


def validate_record(
    record: UploadRecord,
    max_file_size: int = DEFAULT_MAX_FILE_SIZE,
    max_duration: int = MAX_DURATION_SECONDS,
) -> UploadRecord:
    """
    Validate and sanitize a record before it is written.

    Returns a cleaned copy. Raises without touching the store if any
    field is invalid, so a record is never partially written.
    """
    validate_positive_id(record.assignment_id, "assignment_id")
    validate_positive_id(record.submission_id, "submission_id")
    validate_positive_id(record.user_id, "user_id")

    remote_key = record.remote_key.strip() if record.remote_key else ""
    if remote_key and not (_VIDEO_UID_PATTERN.match(remote_key) or _OBJECT_KEY_PATTERN.match(remote_key)):
        raise validation_error("invalid_remote_key", "Remote key contains invalid characters")

    file_size = record.file_size
    if file_size:
        file_size = validate_file_size(file_size, max_file_size)

    duration = record.duration_seconds
    if duration:
        duration = validate_duration(duration, max_duration)

    return replace(
        record,
        remote_key=remote_key,
        status=validate_upload_status(record.status),
        file_size=file_size,
        duration_seconds=duration,
        error_message=sanitize_error_message(record.error_message),
    )
