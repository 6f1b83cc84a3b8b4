"""Shared helpers for building route responses and parsing query strings."""

from __future__ import annotations

import base64
import re
from datetime import datetime, timezone
from typing import Any

from fastapi import Request, Response
from fastapi.responses import JSONResponse

from app.core.errors import ValidationAppError
from app.core.rate_limit import rate_limit_headers

_LIST_SEPARATORS = re.compile(r"[|,]")


def utc_today() -> str:
    return datetime.now(timezone.utc).date().isoformat()


def split_list(raw: str | None, pattern: re.Pattern[str] | str = ",") -> list[str] | None:
    """Split a delimited query value into trimmed, non-empty items.

    Returns None when the parameter is absent or holds no items.
    """

    if not raw:
        return None
    parts = re.split(pattern, raw) if isinstance(pattern, re.Pattern) else raw.split(pattern)
    items = [p.strip() for p in parts if p.strip()]
    return items or None


def split_fields(raw: str | None) -> list[str] | None:
    """Split a ``fields`` parameter on ``|`` or ``,``."""

    return split_list(raw, _LIST_SEPARATORS)


def parse_int_param(raw: str | None, *, parameter: str, code: str, message: str) -> int | None:
    """Parse an optional integer query parameter.

    Raises:
        ValidationAppError: If the value is present but not an integer.
    """
    if raw is None or raw == "":
        return None
    try:
        return int(raw.strip())
    except ValueError:
        raise ValidationAppError(
            code=code,
            message=message,
            details={"parameter": parameter},
        ) from None


def require_param(value: str | None, parameter: str) -> str:
    if value is None or not value.strip():
        raise ValidationAppError(
            code="missing_parameter",
            message=f"Missing required parameter: {parameter}",
            details={"parameter": parameter},
        )
    return value.strip()


def make_etag(cache_key: str) -> str:
    """Strong ETag derived from the cache key: the quoted base64 of the key."""

    return '"' + base64.b64encode(cache_key.encode("utf-8")).decode("ascii") + '"'


def etag_matches(request: Request, etag: str) -> bool:
    return request.headers.get("if-none-match") == etag


def response_headers(
    request: Request,
    *,
    max_age: int,
    etag: str | None = None,
    cache_status: str | None = None,
) -> dict[str, str]:
    """Headers common to every successful data response."""

    headers = {
        "Access-Control-Allow-Origin": "*",
        "Cache-Control": f"max-age={max_age}",
    }
    if etag is not None:
        headers["ETag"] = etag
    if cache_status is not None:
        headers["X-Cache"] = cache_status

    result = getattr(request.state, "rate_limit", None)
    if result is not None:
        headers.update(rate_limit_headers(result))
    return headers


def json_response(
    request: Request,
    payload: Any,
    *,
    max_age: int,
    etag: str | None = None,
    cache_status: str | None = None,
) -> JSONResponse:
    return JSONResponse(
        content=payload,
        headers=response_headers(request, max_age=max_age, etag=etag, cache_status=cache_status),
    )


def not_modified(request: Request, *, max_age: int, etag: str) -> Response:
    return Response(
        status_code=304,
        headers=response_headers(request, max_age=max_age, etag=etag),
    )
