"""
Error contract for the HTTP surface.

Every failure leaves the API in the same JSON shape:

    {
        "success": false,
        "error": "<stable machine code>",
        "error_type": "<error kind>",
        "message": "<what went wrong>",
        "user_message": "<what to tell the user>",
        "suggestions": ["..."],
        "can_retry": true,
        "retry_after": 42          # only when the caller should wait
    }

Rate-limit responses also carry a Retry-After header. Unexpected
exceptions are logged with their traceback and answered with a generic
server_error body so nothing internal leaks to the client.
"""

import logging
from typing import Any, Optional

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from ..core.errors import ErrorKind, MaxRetriesExceededError, ServiceError, http_status_for

logger = logging.getLogger(__name__)

RETRY_REFRESH_PAGE = "Refresh the page and try again"
RETRY_CHECK_CONNECTION = "Check your internet connection"
RETRY_WAIT = "Wait a few minutes and try again"
RETRY_CONTACT_SUPPORT = "Contact technical support if the problem continues"
RETRY_DIFFERENT_FILE = "Try uploading a different video file"

SERVICE_UNAVAILABLE = "The video service is temporarily unavailable. Please try again in a few minutes."

# Seconds a client is told to wait when the backend throttled us
THROTTLED_RETRY_AFTER = 60

_USER_MESSAGES: dict[ErrorKind, str] = {
    ErrorKind.VALIDATION: "The request was not valid. Please check the video and try again.",
    ErrorKind.INVALID_IDENTIFIER: "This video could not be found for this submission.",
    ErrorKind.INVALID_TRANSITION: "This video cannot be changed in its current state.",
    ErrorKind.PERMISSION: "You do not have permission to perform this action. Please contact your instructor.",
    ErrorKind.NOT_FOUND: "The requested video or submission was not found.",
    ErrorKind.AUTH: SERVICE_UNAVAILABLE,
    ErrorKind.THROTTLED: "Storage quota exceeded. Please contact your administrator or try again later.",
    ErrorKind.TRANSIENT_NETWORK: "Network connection error. Please check your internet connection and try again.",
    ErrorKind.INVALID_RESPONSE: SERVICE_UNAVAILABLE,
    ErrorKind.REMOTE: SERVICE_UNAVAILABLE,
    ErrorKind.MAX_RETRIES_EXCEEDED: SERVICE_UNAVAILABLE,
    ErrorKind.RATE_LIMITED: "Too many requests. Please wait a moment before trying again.",
    ErrorKind.CONFIG: SERVICE_UNAVAILABLE,
}

_SUGGESTIONS: dict[ErrorKind, list[str]] = {
    ErrorKind.VALIDATION: [RETRY_DIFFERENT_FILE, RETRY_REFRESH_PAGE],
    ErrorKind.INVALID_IDENTIFIER: [RETRY_REFRESH_PAGE],
    ErrorKind.INVALID_TRANSITION: [RETRY_REFRESH_PAGE],
    ErrorKind.PERMISSION: [RETRY_CONTACT_SUPPORT],
    ErrorKind.NOT_FOUND: [RETRY_REFRESH_PAGE],
    ErrorKind.AUTH: [RETRY_CONTACT_SUPPORT],
    ErrorKind.THROTTLED: [RETRY_WAIT, RETRY_CONTACT_SUPPORT],
    ErrorKind.TRANSIENT_NETWORK: [RETRY_CHECK_CONNECTION, RETRY_REFRESH_PAGE],
    ErrorKind.INVALID_RESPONSE: [RETRY_WAIT, RETRY_CONTACT_SUPPORT],
    ErrorKind.REMOTE: [RETRY_CHECK_CONNECTION, RETRY_WAIT],
    ErrorKind.MAX_RETRIES_EXCEEDED: [RETRY_WAIT, RETRY_CONTACT_SUPPORT],
    ErrorKind.RATE_LIMITED: [RETRY_WAIT],
    ErrorKind.CONFIG: [RETRY_WAIT, RETRY_CONTACT_SUPPORT],
}

_RETRYABLE_KINDS = frozenset({
    ErrorKind.THROTTLED,
    ErrorKind.TRANSIENT_NETWORK,
    ErrorKind.INVALID_RESPONSE,
    ErrorKind.REMOTE,
    ErrorKind.MAX_RETRIES_EXCEEDED,
    ErrorKind.RATE_LIMITED,
    ErrorKind.CONFIG,
})

_HTTP_ERROR_CODES = {
    status.HTTP_401_UNAUTHORIZED: "unauthorized",
    status.HTTP_403_FORBIDDEN: "forbidden",
    status.HTTP_404_NOT_FOUND: "not_found",
    status.HTTP_405_METHOD_NOT_ALLOWED: "method_not_allowed",
}


def _effective_kind(error: ServiceError) -> ErrorKind:
    """Retries that ran out against backend throttling are reported as throttling."""
    if isinstance(error, MaxRetriesExceededError) and error.last_kind == ErrorKind.THROTTLED:
        return ErrorKind.THROTTLED
    return error.kind


def error_status(error: ServiceError) -> int:
    return http_status_for(_effective_kind(error))


def error_payload(error: ServiceError) -> dict[str, Any]:
    """Render a ServiceError in the public error shape."""
    kind = _effective_kind(error)
    retry_after = error.retry_after
    if retry_after is None and kind == ErrorKind.THROTTLED:
        retry_after = THROTTLED_RETRY_AFTER

    # Input problems are the one case where the raw message helps the user
    if kind == ErrorKind.VALIDATION:
        user_message = f"Invalid request data: {error.message}"
    else:
        user_message = _USER_MESSAGES.get(kind, SERVICE_UNAVAILABLE)

    payload: dict[str, Any] = {
        "success": False,
        "error": error.code,
        "error_type": kind.value,
        "message": error.message,
        "user_message": user_message,
        "suggestions": list(_SUGGESTIONS.get(kind, [RETRY_REFRESH_PAGE])),
        "can_retry": kind in _RETRYABLE_KINDS,
    }
    if retry_after is not None:
        payload["retry_after"] = retry_after
    return payload


def _response(status_code: int, payload: dict[str, Any]) -> JSONResponse:
    headers: Optional[dict[str, str]] = None
    if "retry_after" in payload:
        headers = {"Retry-After": str(payload["retry_after"])}
    return JSONResponse(status_code=status_code, content=payload, headers=headers)


async def service_error_handler(request: Request, exc: ServiceError) -> JSONResponse:
    status_code = error_status(exc)
    log = logger.error if status_code >= 500 else logger.info
    log(
        "Request failed",
        extra={
            "path": request.url.path,
            "method": request.method,
            "error_code": exc.code,
            "error_kind": exc.kind.value,
            "status_code": status_code,
        },
    )
    return _response(status_code, error_payload(exc))


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    fields = [".".join(str(part) for part in err.get("loc", ())) for err in exc.errors()]
    error = ServiceError(
        ErrorKind.VALIDATION,
        f"Invalid or missing fields: {', '.join(fields)}" if fields else "Invalid request",
        code="validation_error",
    )
    return _response(status.HTTP_400_BAD_REQUEST, error_payload(error))


async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    payload = {
        "success": False,
        "error": _HTTP_ERROR_CODES.get(exc.status_code, "http_error"),
        "error_type": "http_error",
        "message": str(exc.detail),
        "user_message": str(exc.detail),
        "suggestions": [RETRY_REFRESH_PAGE],
        "can_retry": False,
    }
    return JSONResponse(status_code=exc.status_code, content=payload, headers=getattr(exc, "headers", None))


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """
    Catch-all exception handler.

    The full error is logged server-side; the client gets a generic
    message without a stack trace.
    """
    logger.error(
        "Unhandled exception",
        extra={
            "path": request.url.path,
            "method": request.method,
            "error": str(exc),
        },
        exc_info=exc,
    )
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={
            "success": False,
            "error": "server_error",
            "error_type": "server_error",
            "message": "Internal server error",
            "user_message": SERVICE_UNAVAILABLE,
            "suggestions": [RETRY_REFRESH_PAGE, RETRY_WAIT, RETRY_CONTACT_SUPPORT],
            "can_retry": True,
        },
    )


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(ServiceError, service_error_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)
