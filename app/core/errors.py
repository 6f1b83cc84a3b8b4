"""Application-level exception types.

This module defines domain errors used across services, enabling consistent
error handling, logging, and API responses.
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
    parameter: str
    provider: str
    http_status: int
    retry_after: float
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
    """Raised when request parameters fail validation."""


class ConfigurationAppError(AppError):
    """Raised when the service is missing required configuration."""


class UpstreamAppError(AppError):
    """Raised when an upstream data provider fails or returns bad data.

    ``details["http_status"]`` carries the upstream status code when one is
    known; the HTTP layer answers with 502 otherwise.
    """


class UpstreamTimeoutAppError(UpstreamAppError):
    """Raised when an upstream data provider does not answer in time."""


class UpstreamRateLimitAppError(UpstreamAppError):
    """Raised when an upstream data provider reports its quota is exhausted."""
