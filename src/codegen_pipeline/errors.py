from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Iterable
from enum import Enum
from typing import TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class ErrorKind(str, Enum):
    RETRYABLE = "RETRYABLE"
    NON_RETRYABLE = "NON_RETRYABLE"


class BuildError(Exception):
    """Base error for the build pipeline, tagged with the kind of failure it represents."""

    kind: ErrorKind = ErrorKind.NON_RETRYABLE

    def __init__(self, message: str, *, kind: ErrorKind | None = None) -> None:
        super().__init__(message)
        self.message = message
        if kind is not None:
            self.kind = kind

    @property
    def retryable(self) -> bool:
        return self.kind is ErrorKind.RETRYABLE


class RetryableError(BuildError):
    kind = ErrorKind.RETRYABLE


class NonRetryableError(BuildError):
    kind = ErrorKind.NON_RETRYABLE


# -- Retryable --


class TemporaryServiceUnavailableError(RetryableError):
    pass


class RateLimitExceededError(RetryableError):
    pass


class ModelUnavailableError(RetryableError):
    pass


class GenerationTimeoutError(RetryableError):
    pass


class ResponseParsingError(RetryableError):
    pass


class ResponseTagError(RetryableError):
    pass


class UnresolvedDependencyError(RetryableError):
    """Raised when layering leaves nodes whose in-degree never reached zero."""

    def __init__(self, message: str, *, unresolved: Iterable[str] = ()) -> None:
        super().__init__(message)
        self.unresolved = sorted(unresolved)


# -- Non-retryable --


class MissingConfigurationError(NonRetryableError):
    pass


class InvalidParameterError(NonRetryableError):
    pass


class FileWriteError(NonRetryableError):
    pass


class ArtifactNotFoundError(NonRetryableError):
    pass


class FileModificationError(NonRetryableError):
    pass


class PathSafetyError(NonRetryableError):
    pass


class CircularDependencyError(NonRetryableError):
    def __init__(self, cycle: Iterable[str]) -> None:
        self.cycle = list(cycle)
        super().__init__(f"Circular dependency detected: {' -> '.join(self.cycle)}")


class ManifestValidationError(NonRetryableError):
    def __init__(self, missing: Iterable[str]) -> None:
        self.missing = sorted(missing)
        super().__init__(
            "The following files do not exist in the project structure: " + ", ".join(self.missing)
        )


class ArtifactAbandonedError(NonRetryableError):
    def __init__(self, path: str, retry_count: int, last_error: str | None) -> None:
        self.path = path
        self.retry_count = retry_count
        self.last_error = last_error
        super().__init__(f"Artifact {path} abandoned after {retry_count} fix attempts")


def classify(exc: BaseException) -> ErrorKind:
    """Return the error kind for any exception raised inside a handler."""
    if isinstance(exc, BuildError):
        return exc.kind
    if isinstance(exc, TimeoutError):
        return ErrorKind.RETRYABLE
    return ErrorKind.NON_RETRYABLE


def is_retryable(exc: BaseException) -> bool:
    return classify(exc) is ErrorKind.RETRYABLE


class RetryHandler:
    """Bounded retry of retryable failures with linear back-off.

    Non-retryable failures propagate on the first occurrence. When the budget is
    exhausted the last retryable error is re-raised unchanged.
    """

    def __init__(self, *, max_retries: int = 3, backoff_seconds: float = 1.0) -> None:
        if max_retries < 0:
            raise ValueError("max_retries must be >= 0")
        if backoff_seconds < 0:
            raise ValueError("backoff_seconds must be >= 0")
        self.max_retries = max_retries
        self.backoff_seconds = backoff_seconds

    async def run(
        self,
        operation: Callable[[], Awaitable[T]],
        *,
        label: str,
        on_retry: Callable[[int, BaseException], None] | None = None,
    ) -> T:
        attempt = 0
        while True:
            try:
                return await operation()
            except Exception as exc:
                if classify(exc) is not ErrorKind.RETRYABLE:
                    raise
                if attempt >= self.max_retries:
                    logger.error("Max retry attempts reached for %s: %s", label, exc)
                    raise
                delay = (attempt + 1) * self.backoff_seconds
                attempt += 1
                logger.warning(
                    "Retryable failure in %s (attempt %d/%d), retrying in %.2fs: %s",
                    label,
                    attempt,
                    self.max_retries,
                    delay,
                    exc,
                )
                if on_retry is not None:
                    on_retry(attempt, exc)
                await asyncio.sleep(delay)
