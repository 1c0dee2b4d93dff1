"""
Error taxonomy for the video submission service.

Every failure the service knows how to reason about is a ServiceError
tagged with an ErrorKind. Callers branch on the kind rather than on a
tree of exception subclasses:

- The retry engine asks whether a kind is transient.
- The upload tracker and cleanup sweep treat NOT_FOUND as "already gone".
- The API layer maps the kind to an HTTP status and a stable error code.
"""

from enum import Enum
from typing import Any, Optional


class ErrorKind(Enum):
    """What went wrong, independent of where it happened."""
    VALIDATION = "validation_error"
    AUTH = "auth_error"
    PERMISSION = "permission_error"
    INVALID_IDENTIFIER = "invalid_identifier"
    NOT_FOUND = "not_found"
    THROTTLED = "quota_error"
    TRANSIENT_NETWORK = "network_error"
    INVALID_RESPONSE = "invalid_response"
    REMOTE = "api_error"
    MAX_RETRIES_EXCEEDED = "max_retries_exceeded"
    RATE_LIMITED = "rate_limit"
    CONFIG = "config_error"
    INVALID_TRANSITION = "invalid_transition"

    @property
    def is_transient(self) -> bool:
        """Whether repeating the same call could succeed."""
        return self in _TRANSIENT_KINDS


_TRANSIENT_KINDS = frozenset({
    ErrorKind.TRANSIENT_NETWORK,
    ErrorKind.THROTTLED,
})

# HTTP status the API layer answers with for each kind
_DEFAULT_STATUS = {
    ErrorKind.VALIDATION: 400,
    ErrorKind.INVALID_IDENTIFIER: 400,
    ErrorKind.INVALID_TRANSITION: 409,
    ErrorKind.AUTH: 503,
    ErrorKind.PERMISSION: 403,
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.THROTTLED: 503,
    ErrorKind.TRANSIENT_NETWORK: 503,
    ErrorKind.INVALID_RESPONSE: 502,
    ErrorKind.REMOTE: 502,
    ErrorKind.MAX_RETRIES_EXCEEDED: 503,
    ErrorKind.RATE_LIMITED: 429,
    ErrorKind.CONFIG: 503,
}


def http_status_for(kind: ErrorKind) -> int:
    return _DEFAULT_STATUS.get(kind, 500)


class ServiceError(Exception):
    """
    A classified failure.

    Attributes:
        kind: The tagged error category
        message: Human-readable description (safe to log, not always safe to show)
        code: Stable machine code; defaults to the kind's value
        retry_after: Seconds the caller should wait (rate limits, throttling)
        http_status: Upstream HTTP status if the error came from a remote call
        context: Structured details for logs and audit entries
    """

    def __init__(
        self,
        kind: ErrorKind,
        message: str,
        *,
        code: Optional[str] = None,
        retry_after: Optional[int] = None,
        http_status: Optional[int] = None,
        context: Optional[dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.kind = kind
        self.message = message
        self.code = code or kind.value
        self.retry_after = retry_after
        self.http_status = http_status
        self.context = context or {}

    @property
    def status_code(self) -> int:
        """HTTP status the API boundary should answer with."""
        return http_status_for(self.kind)

    @property
    def is_transient(self) -> bool:
        return self.kind.is_transient or (
            self.kind == ErrorKind.REMOTE
            and self.http_status is not None
            and self.http_status >= 500
        )

    def __repr__(self) -> str:
        return f"ServiceError(kind={self.kind.name}, code={self.code!r}, message={self.message!r})"


class MaxRetriesExceededError(ServiceError):
    """
    Raised by the retry engine once every attempt has failed.

    Carries the operation name, how many attempts were made and the
    last underlying error so nothing about the failure is lost.
    """

    def __init__(self, operation: str, attempts: int, last_error: BaseException) -> None:
        super().__init__(
            ErrorKind.MAX_RETRIES_EXCEEDED,
            f"Operation '{operation}' failed after {attempts} attempts: {last_error}",
            context={
                "operation": operation,
                "attempts": attempts,
                "last_error": str(last_error),
            },
        )
        self.operation = operation
        self.attempts = attempts
        self.last_error = last_error

    @property
    def last_kind(self) -> Optional[ErrorKind]:
        if isinstance(self.last_error, ServiceError):
            return self.last_error.kind
        return None


def validation_error(code: str, message: str) -> ServiceError:
    """Shorthand for input validation failures."""
    return ServiceError(ErrorKind.VALIDATION, message, code=code)


def not_found(message: str, **context: Any) -> ServiceError:
    return ServiceError(ErrorKind.NOT_FOUND, message, http_status=404, context=context)


def config_error(message: str, missing: Optional[list[str]] = None) -> ServiceError:
    return ServiceError(
        ErrorKind.CONFIG,
        message,
        code="config_missing",
        context={"missing": missing or []},
    )
