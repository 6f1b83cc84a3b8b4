"""Global exception handlers for consistent error responses.

This module provides FastAPI exception handlers that intercept all errors
(domain and unexpected) and return consistent JSON responses with proper
HTTP status codes and traceability.

Design:
- AppError subclasses → appropriate HTTP status (400, 408, 429, 5xx)
- Unexpected Exception → generic 500 (safety net)
- All responses include request_id for distributed tracing
"""

import logging

from fastapi import Request
from fastapi.responses import JSONResponse

from app.core.errors import (
    AppError,
    ConfigurationAppError,
    UpstreamAppError,
    UpstreamRateLimitAppError,
    UpstreamTimeoutAppError,
    ValidationAppError,
)
from app.core.logging import get_request_id
from app.core.rate_limit import rate_limit_headers

logger = logging.getLogger(__name__)

CORS_HEADERS = {"Access-Control-Allow-Origin": "*"}


def status_code_for(exc: AppError) -> int:
    """Map a domain error onto an HTTP status code.

    - ValidationAppError → 400 Bad Request
    - UpstreamTimeoutAppError → 408 Request Timeout
    - UpstreamRateLimitAppError → 429 Too Many Requests
    - UpstreamAppError → upstream status when known, else 502 Bad Gateway
    - ConfigurationAppError and anything else → 500
    """
    if isinstance(exc, ValidationAppError):
        return 400
    if isinstance(exc, UpstreamTimeoutAppError):
        return 408
    if isinstance(exc, UpstreamRateLimitAppError):
        return 429
    if isinstance(exc, UpstreamAppError):
        upstream_status = (exc.details or {}).get("http_status")
        if isinstance(upstream_status, int) and 400 <= upstream_status <= 599:
            return upstream_status
        return 502
    if isinstance(exc, ConfigurationAppError):
        return 500
    return 500


def _response_headers(request: Request) -> dict[str, str]:
    headers = dict(CORS_HEADERS)
    result = getattr(request.state, "rate_limit", None)
    if result is not None:
        headers.update(rate_limit_headers(result))
    return headers


async def app_error_handler(request: Request, exc: AppError) -> JSONResponse:
    """Handle domain application errors with consistent JSON format.

    All responses include:
    - error.code: Machine-readable error code
    - error.message: Human-readable message
    - error.request_id: For distributed tracing
    - error.details: Optional structured context

    The caller's current rate-limit budget is echoed in the headers so error
    responses carry the same ``X-RateLimit-*`` information as successes.

    Args:
        request: FastAPI request object.
        exc: AppError instance (or subclass).

    Returns:
        JSONResponse with appropriate status code and error details.
    """
    status_code = status_code_for(exc)

    log = logger.warning if status_code < 500 else logger.error
    log(
        "app_error_handled",
        extra={
            "error_code": exc.code,
            "error_message": exc.message,
            "status_code": status_code,
            "has_details": bool(exc.details),
            "request_path": request.url.path,
        },
    )

    error_content = {
        "code": exc.code,
        "message": exc.message,
        "request_id": get_request_id(),
    }

    if exc.details:
        error_content["details"] = exc.details

    return JSONResponse(
        status_code=status_code,
        content={"error": error_content},
        headers=_response_headers(request),
    )


async def general_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Fallback handler for unexpected errors (safety net).

    Logs detailed information for debugging while returning a generic message,
    so no stack traces leak to the client.

    Args:
        request: FastAPI request object.
        exc: Exception instance (unexpected).

    Returns:
        JSONResponse with generic error (no implementation details leaked).
    """
    logger.error(
        "unhandled_exception",
        extra={
            "error_type": type(exc).__name__,
            "error_msg": str(exc),
            "request_path": request.url.path,
            "request_method": request.method,
        },
        exc_info=exc,
    )

    return JSONResponse(
        status_code=500,
        content={
            "error": {
                "code": "internal_server_error",
                "message": "An unexpected error occurred. Please try again later.",
                "request_id": get_request_id(),
            }
        },
        headers=dict(CORS_HEADERS),
    )


def setup_exception_handlers(app) -> None:
    """Register all exception handlers with FastAPI app.

    Must be called during app initialization, before route registration.

    Args:
        app: FastAPI application instance.

    Example:
        >>> from fastapi import FastAPI
        >>> from app.core.exception_handlers import setup_exception_handlers
        >>> app = FastAPI()
        >>> setup_exception_handlers(app)
    """
    app.exception_handler(AppError)(app_error_handler)
    app.exception_handler(Exception)(general_exception_handler)
