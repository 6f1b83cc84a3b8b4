from __future__ import annotations

from app.api.routes.exchange_rates import router as exchange_rates_router
from app.api.routes.health import router as health_router
from app.api.routes.statements import router as statements_router
from app.api.routes.yahoo_finance import router as yahoo_finance_router

__all__ = [
    "exchange_rates_router",
    "health_router",
    "statements_router",
    "yahoo_finance_router",
]
