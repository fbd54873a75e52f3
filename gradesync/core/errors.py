"""Application-level exception types.

Domain errors shared by services, adapters and the HTTP layer. Quota
exhaustion is deliberately absent: the limiter returns a ``Denied`` value
that callers branch on.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, NotRequired, TypedDict


class ErrorDetails(TypedDict, total=False):
    """Structured error context for observability and clients."""

    code: str
    message: str
    hint: str
    http_status: int
    retry_after: float
    collection_key: str
    endpoint: str
    table: str
    target_id: str
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


class UnknownEndpointError(ValidationAppError):
    """Raised when a quota is requested for an endpoint with no policy."""


class AuthenticationAppError(AppError):
    """Raised when authentication/authorization fails."""


class RecordNotFoundError(AppError):
    """Raised when the authoritative store has no record with that id."""


class RemoteWriteError(AppError):
    """Raised when a persisted write fails; the cache has been rolled back."""


class InvariantViolationError(AppError):
    """Raised on a cache protocol violation by the caller.

    Examples: commit/rollback with nothing pending, or a second strict
    optimistic mutation on a key that is already pending.
    """


class SubscriptionLostError(AppError):
    """Reported to ``on_lost`` handlers when a change channel closes."""
