"""ECB daily reference rates.

The XML feed is passed through unchanged; clients parse it themselves.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

import httpx

from app.core.errors import UpstreamAppError, UpstreamTimeoutAppError

logger = logging.getLogger(__name__)

DEFAULT_CONTENT_TYPE = "application/xml"


@dataclass(frozen=True)
class ExchangeRateResponse:
    data: str
    content_type: str


class ExchangeRateService:
    """Fetch the ECB daily exchange-rate XML."""

    def __init__(
        self,
        *,
        daily_rates_url: str = "https://www.ecb.europa.eu/stats/eurofxref/eurofxref-daily.xml",
        timeout_seconds: float = 10.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._url = daily_rates_url
        self._timeout = timeout_seconds
        self._client = client
        self._owns_client = client is None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=self._timeout,
                headers={
                    "User-Agent": "market-data-gateway/0.1",
                    "Accept": "application/xml,text/xml",
                },
            )
        return self._client

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    async def get_daily_rates(self) -> ExchangeRateResponse:
        """Fetch today's reference rates.

        Raises:
            UpstreamTimeoutAppError: The ECB did not answer in time.
            UpstreamAppError: The ECB answered with an error status or could
                not be reached.
        """
        logger.info("exchange_rate.fetch", extra={"url": self._url})
        try:
            response = await self._get_client().get(self._url, timeout=self._timeout)
            response.raise_for_status()
        except httpx.TimeoutException:
            raise UpstreamTimeoutAppError(
                code="upstream_timeout",
                message="ECB service is not responding",
                details={"provider": "ecb", "http_status": 408},
            ) from None
        except httpx.HTTPStatusError as exc:
            status_code = exc.response.status_code
            raise UpstreamAppError(
                code="upstream_error",
                message=exc.response.reason_phrase or "Failed to fetch exchange rates",
                details={"provider": "ecb", "http_status": status_code},
            ) from exc
        except httpx.RequestError as exc:
            raise UpstreamAppError(
                code="upstream_unreachable",
                message=f"Failed to fetch exchange rates: {type(exc).__name__}",
                details={"provider": "ecb", "http_status": 502},
            ) from exc

        logger.info(
            "exchange_rate.fetched",
            extra={"status_code": response.status_code, "bytes": len(response.content)},
        )
        return ExchangeRateResponse(
            data=response.text,
            content_type=response.headers.get("content-type") or DEFAULT_CONTENT_TYPE,
        )
