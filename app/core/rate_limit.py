"""Rate limiting dependencies for FastAPI routes.

This module wires the rate limiting adapters into the HTTP layer.

Design goals:
- Minimal coupling: API routes depend on a dependency function only.
- Swap-friendly: storage backend can be replaced (e.g., Redis) behind an
  abstract interface.
- Two budgets: a lenient ``api`` limiter for cheap upstreams and a ``strict``
  limiter for Yahoo Finance, which throttles aggressively.

Clients are identified by the first ``X-Forwarded-For`` hop, then
``X-Real-IP``; requests carrying neither share the ``"unknown"`` bucket.
"""

from __future__ import annotations

import hashlib
import logging
from datetime import datetime, timedelta, timezone
from typing import Annotated

from fastapi import Depends, HTTPException, Request, status

from app.adapters.rate_limit.base import AbstractRateLimiter, RateLimitResult
from app.core.config import settings
from app.core.container import ServiceContainer, get_container

logger = logging.getLogger(__name__)

UNKNOWN_CLIENT = "unknown"


def client_identifier(request: Request) -> str:
    """Derive the rate-limit identifier from proxy headers."""

    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        first_hop = forwarded.split(",")[0].strip()
        if first_hop:
            return first_hop

    real_ip = request.headers.get("x-real-ip")
    if real_ip and real_ip.strip():
        return real_ip.strip()

    return UNKNOWN_CLIENT


def format_reset_time(reset_time_ms: int) -> str:
    """Render epoch milliseconds as ISO-8601 UTC, e.g. ``2024-01-01T00:01:00.000Z``."""

    seconds, millis = divmod(reset_time_ms, 1000)
    moment = datetime.fromtimestamp(seconds, tz=timezone.utc) + timedelta(milliseconds=millis)
    return moment.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def rate_limit_headers(result: RateLimitResult) -> dict[str, str]:
    """Build the ``X-RateLimit-*`` headers describing ``result``."""

    return {
        "X-RateLimit-Limit": str(result.limit),
        "X-RateLimit-Remaining": str(result.remaining),
        "X-RateLimit-Reset": format_reset_time(result.reset_time),
    }


def _hash_identifier(identifier: str) -> str:
    """Hash the client identifier for logging without exposing addresses."""
    return hashlib.sha256(identifier.encode()).hexdigest()[:16]


def _enforce(request: Request, limiter: AbstractRateLimiter, limiter_name: str) -> None:
    """Consume one unit of the caller's budget or raise HTTP 429.

    The decision is stored on ``request.state.rate_limit`` so successful
    responses and error handlers can echo the current budget.

    Raises:
        HTTPException: 429 Too Many Requests when the window is exhausted.
    """

    if not settings.app.rate_limit_enabled:
        return

    identifier = client_identifier(request)
    result = limiter.is_allowed(identifier)
    request.state.rate_limit = result

    if result.allowed:
        logger.debug(
            "rate_limit.allowed",
            extra={
                "limiter": limiter_name,
                "client_hash": _hash_identifier(identifier),
                "limit": result.limit,
                "remaining": result.remaining,
            },
        )
        return

    retry_after = result.retry_after_seconds(limiter.now_ms())
    logger.warning(
        "rate_limit.exceeded",
        extra={
            "limiter": limiter_name,
            "client_hash": _hash_identifier(identifier),
            "limit": result.limit,
            "retry_after_s": retry_after,
        },
    )

    headers: dict[str, str] = {}
    if settings.app.rate_limit_include_headers:
        headers["Retry-After"] = str(retry_after)
        headers.update(rate_limit_headers(result))

    raise HTTPException(
        status_code=status.HTTP_429_TOO_MANY_REQUESTS,
        detail="Rate limit exceeded. Try again later.",
        headers=headers or None,
    )


async def enforce_api_rate_limit(
    request: Request,
    container: Annotated[ServiceContainer, Depends(get_container)],
) -> None:
    """Dependency for routes guarded by the lenient limiter."""

    _enforce(request, container.api_limiter, "api")


async def enforce_strict_rate_limit(
    request: Request,
    container: Annotated[ServiceContainer, Depends(get_container)],
) -> None:
    """Dependency for routes guarded by the strict limiter."""

    _enforce(request, container.strict_limiter, "strict")
