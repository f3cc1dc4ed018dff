"""Application-level exception types.

This module defines domain errors used across the limiter, cache and HTTP
layer, enabling consistent error handling, logging, and API responses.

Producer failures are deliberately absent: the error raised by a caller's
producer is passed through unmodified.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, NotRequired, TypedDict


class ErrorDetails(TypedDict, total=False):
    """Structured error context for observability and clients.

    Fields are optional to keep backward compatibility while encouraging
    consistent shapes across the codebase.
    """

    code: str
    message: str
    hint: str
    field: str
    actual_value: Any
    http_status: int
    retry_after: int
    limit: int
    remaining: int
    request_id: str
    context: NotRequired[dict[str, Any]]


@dataclass
class AppError(Exception):
    """Base error for application/domain failures.

    Attributes:
        code: Stable, machine-readable error code.
        message: Human-readable error message.
        details: Optional structured details for debugging/observability.
    """

    code: str
    message: str
    details: ErrorDetails | None = None

    def __post_init__(self) -> None:
        # Populate Exception args so str(error) is useful in logs/tracebacks.
        super().__init__(self.message)


class ValidationAppError(AppError):
    """Raised when input/config validation fails."""


class InvalidArgumentError(ValidationAppError, ValueError):
    """Raised when a limiter, cache or policy argument is out of range.

    Subclasses ``ValueError`` so plain callers can catch it without importing
    the application error hierarchy.
    """


class RateLimitExceededError(AppError):
    """Raised by the HTTP adapter when a caller exhausted its quota."""


def invalid_argument(field: str, message: str, actual_value: Any = None) -> InvalidArgumentError:
    """Build an ``InvalidArgumentError`` with a consistent details shape."""
    return InvalidArgumentError(
        code="invalid_argument",
        message=message,
        details={"field": field, "actual_value": actual_value},
    )
