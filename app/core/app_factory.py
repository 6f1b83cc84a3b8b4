"""Application factory for the FastAPI app.

Centralizes app construction (metadata, middleware, handlers, routers and the
service container) so tests can build isolated apps with fake services.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from app.api.routes import (
    exchange_rates_router,
    health_router,
    statements_router,
    yahoo_finance_router,
)
from app.core.config import settings
from app.core.container import ServiceContainer, build_container
from app.core.exception_handlers import setup_exception_handlers
from app.core.logging import configure_logging
from app.core.middleware import request_id_middleware
from app.core.openapi import apply_openapi_customizations

logger = logging.getLogger(__name__)


def create_app(container: ServiceContainer | None = None) -> FastAPI:
    """Create and configure the FastAPI application instance.

    Args:
        container: Pre-built services; the production container is built from
            settings when omitted.

    Returns:
        Configured FastAPI app with middleware, handlers, routers and docs.
    """
    # Logging first so subsequent init logs are formatted as desired
    configure_logging(settings.log)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("app.startup", extra={"app_env": settings.app_env})
        yield
        await app.state.container.aclose()
        logger.info("app.shutdown")

    app = FastAPI(
        title="Market Data Gateway",
        description=(
            "HTTP façade over Yahoo Finance, Alpha Vantage and the ECB reference "
            "rate feed, adding request validation, per-client rate limiting and "
            "a TTL response cache."
        ),
        version="0.1.0",
        license_info={
            "name": "MIT License",
            "url": "https://opensource.org/licenses/MIT",
        },
        lifespan=lifespan,
    )
    app.state.container = container or build_container(settings)

    # Middleware
    app.middleware("http")(request_id_middleware)

    # Exception handlers
    setup_exception_handlers(app)

    # Routers
    app.include_router(yahoo_finance_router, prefix="/api")
    app.include_router(statements_router, prefix="/api")
    app.include_router(exchange_rates_router, prefix="/api")
    app.include_router(health_router)

    # OpenAPI customizations (tags)
    apply_openapi_customizations(app)

    return app
