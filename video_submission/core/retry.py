"""
Retry engine for calls to the video backend.

Remote calls fail for reasons that fix themselves (timeouts, 5xx,
throttling) and for reasons that never will (bad credentials, bad
input). The engine retries the first kind with exponential backoff and
jitter, and lets the second kind through on the first failure.

Delay before retry n (n >= 1):

    delay = min(max_delay, base_delay * multiplier ** (n - 1))
    delay = delay * uniform(0.5, 1.0)

The multiplicative half-jitter keeps every delay within [delay/2, delay]
and spreads out clients that failed at the same moment.
"""

import asyncio
import logging
import random
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional, TypeVar

from .errors import ErrorKind, MaxRetriesExceededError, ServiceError

logger = logging.getLogger(__name__)

T = TypeVar("T")

ErrorClassifier = Callable[[BaseException], bool]
Sleep = Callable[[float], Awaitable[None]]


def classify_error(error: BaseException) -> bool:
    """
    Default classifier: True if the error is worth retrying.

    ServiceErrors carry their own classification. Raw connection and
    timeout errors are transient. Everything else is terminal.
    """
    if isinstance(error, MaxRetriesExceededError):
        return False
    if isinstance(error, ServiceError):
        return error.is_transient
    if isinstance(error, (ConnectionError, TimeoutError)):
        return True
    return False


def describe_error(error: BaseException) -> str:
    if isinstance(error, ServiceError):
        return error.kind.value
    return type(error).__name__


@dataclass(frozen=True)
class RetryPolicy:
    """
    Bounds for one retried operation.

    max_attempts counts retries, so an operation runs at most
    max_attempts + 1 times.
    """
    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 30.0
    multiplier: float = 2.0

    def __post_init__(self) -> None:
        if self.max_attempts < 0:
            raise ValueError("max_attempts cannot be negative")
        if self.base_delay < 0 or self.max_delay < 0:
            raise ValueError("delays cannot be negative")

    @classmethod
    def from_milliseconds(cls, max_attempts: int, base_delay_ms: int, max_delay_ms: int) -> "RetryPolicy":
        return cls(
            max_attempts=max_attempts,
            base_delay=base_delay_ms / 1000.0,
            max_delay=max_delay_ms / 1000.0,
        )

    def backoff(self, attempt: int) -> float:
        """Un-jittered delay before retry number `attempt` (1-based)."""
        return min(self.max_delay, self.base_delay * self.multiplier ** (attempt - 1))


class RetryEngine:
    """
    Runs async operations under a RetryPolicy.

    sleep and rng are injected so tests can run without waiting and
    assert the exact delays. audit, when given, receives retry events
    for the audit log in addition to the module logger.
    """

    def __init__(
        self,
        policy: Optional[RetryPolicy] = None,
        sleep: Sleep = asyncio.sleep,
        rng: Optional[random.Random] = None,
        audit: Optional[Any] = None,
    ) -> None:
        self.policy = policy or RetryPolicy()
        self._sleep = sleep
        self._rng = rng or random.Random()
        self._audit = audit

    def compute_delay(self, attempt: int, policy: Optional[RetryPolicy] = None) -> float:
        """Jittered delay before retry number `attempt`."""
        return (policy or self.policy).backoff(attempt) * self._rng.uniform(0.5, 1.0)

    async def execute_with_retry(
        self,
        operation: Callable[[], Awaitable[T]],
        operation_name: str = "operation",
        classifier: ErrorClassifier = classify_error,
        policy: Optional[RetryPolicy] = None,
        context: Optional[dict[str, Any]] = None,
    ) -> T:
        """
        Run `operation` until it succeeds, fails terminally, or runs out of attempts.

        Raises:
            The operation's own error if the classifier says it is terminal.
            MaxRetriesExceededError once max_attempts retries have failed.
        """
        policy = policy or self.policy
        context = context or {}
        attempt = 0

        while True:
            try:
                result = await operation()
            except Exception as e:
                retryable = classifier(e)
                attempt += 1

                if not retryable:
                    logger.info(
                        "Operation failed with terminal error",
                        extra={
                            "operation": operation_name,
                            "attempt": attempt,
                            "classification": describe_error(e),
                        },
                    )
                    raise

                if attempt > policy.max_attempts:
                    logger.error(
                        "Operation failed after retries",
                        extra={
                            "operation": operation_name,
                            "attempts": attempt,
                            "classification": describe_error(e),
                            "error": str(e),
                        },
                    )
                    if self._audit is not None:
                        self._audit.log_retry_failure(operation_name, attempt, e, context)
                    raise MaxRetriesExceededError(operation_name, attempt, e) from e

                delay = self.compute_delay(attempt, policy)

                logger.warning(
                    "Retrying operation",
                    extra={
                        "operation": operation_name,
                        "attempt": attempt,
                        "max_attempts": policy.max_attempts,
                        "classification": describe_error(e),
                        "delay_seconds": round(delay, 3),
                    },
                )
                if self._audit is not None:
                    self._audit.log_retry_attempt(operation_name, attempt, e, delay, context)

                await self._sleep(delay)
                continue

            if attempt > 0:
                logger.info(
                    "Operation succeeded after retry",
                    extra={"operation": operation_name, "attempts": attempt + 1},
                )
                if self._audit is not None:
                    self._audit.log_retry_success(operation_name, attempt + 1, context)
            return result


def is_benign_not_found(error: BaseException) -> bool:
    """NOT_FOUND on delete paths means the object is already gone."""
    return isinstance(error, ServiceError) and error.kind == ErrorKind.NOT_FOUND
