"""Service container and process-wide singletons.

Routes resolve their collaborators through ``get_container`` instead of
importing module-level instances, so tests can hand ``create_app`` a container
populated with fakes.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from fastapi import Request

from app.adapters.rate_limit import AbstractRateLimiter, InMemoryFixedWindowRateLimiter
from app.core.config import Settings, settings as default_settings
from app.services.alpha_vantage_service import AlphaVantageService
from app.services.exchange_rate_service import ExchangeRateService
from app.services.yahoo_finance_service import YahooFinanceService
from app.utils.response_cache import ResponseCache

logger = logging.getLogger(__name__)


_cache: ResponseCache | None = None
_cache_config: tuple | None = None


def get_response_cache(current: Settings | None = None) -> ResponseCache:
    """Return the process-wide response cache.

    The instance is cached in-module; it is rebuilt when the cache settings
    change (for example when tests toggle ``CACHE_ENABLED``).
    """

    global _cache, _cache_config

    cache_settings = (current or default_settings).cache
    config = (
        cache_settings.enabled,
        cache_settings.ttl_seconds,
        cache_settings.persistence_enabled,
        cache_settings.dir,
        cache_settings.sweep_interval_seconds,
    )

    if _cache is None or _cache_config != config:
        if _cache is not None:
            _cache.close()
        _cache = ResponseCache.from_settings(cache_settings)
        _cache_config = config
        logger.info("cache.configured", extra={"enabled": cache_settings.enabled})

    return _cache


@dataclass
class ServiceContainer:
    """Everything a request handler needs from the outside world."""

    cache: ResponseCache
    api_limiter: AbstractRateLimiter
    strict_limiter: AbstractRateLimiter
    yahoo_finance: YahooFinanceService
    alpha_vantage: AlphaVantageService
    exchange_rate: ExchangeRateService

    async def aclose(self) -> None:
        """Stop background sweeps and release HTTP clients."""

        self.api_limiter.close()
        self.strict_limiter.close()
        self.cache.close()
        await self.alpha_vantage.aclose()
        await self.exchange_rate.aclose()


def build_container(current: Settings | None = None) -> ServiceContainer:
    """Construct the production container from settings."""

    current = current or default_settings
    window_ms = current.app.rate_limit_window_seconds * 1000
    timeout = current.app.upstream_timeout_seconds
    cache = get_response_cache(current)

    return ServiceContainer(
        cache=cache,
        api_limiter=InMemoryFixedWindowRateLimiter(
            name="api",
            max_requests=current.app.api_rate_limit_requests,
            window_ms=window_ms,
        ),
        strict_limiter=InMemoryFixedWindowRateLimiter(
            name="strict",
            max_requests=current.app.strict_rate_limit_requests,
            window_ms=window_ms,
        ),
        yahoo_finance=YahooFinanceService(timeout_seconds=timeout),
        alpha_vantage=AlphaVantageService(
            api_key=current.alpha_vantage.api_key,
            cache=cache,
            base_url=current.alpha_vantage.base_url,
            timeout_seconds=timeout,
            include_earnings=current.alpha_vantage.include_earnings,
        ),
        exchange_rate=ExchangeRateService(
            daily_rates_url=current.exchange_rate.daily_rates_url,
            timeout_seconds=timeout,
        ),
    )


def get_container(request: Request) -> ServiceContainer:
    """FastAPI dependency returning the container attached to the app."""

    return request.app.state.container
