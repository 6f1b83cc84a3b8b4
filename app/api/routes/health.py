from __future__ import annotations

from fastapi import APIRouter

router = APIRouter(tags=["Health"])


@router.get("/health")
def health_check() -> dict:
    """Liveness check; touches no upstream, cache or rate limiter."""

    return {"status": "ok"}
