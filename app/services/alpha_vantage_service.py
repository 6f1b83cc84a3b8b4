"""Alpha Vantage financial statements service.

Fetches income statement, balance sheet and cash flow for a ticker in
parallel, merges them per fiscal period and caches the merged result once per
ticker. Earnings are fetched alongside when enabled and attached as the
``ratio`` section; an earnings failure leaves ``ratio`` empty instead of
failing the request. Period, statement-count and field filters are applied per request
on top of the cached data, so different views of the same ticker share one
upstream round-trip.
"""

from __future__ import annotations

import asyncio
import logging
import re
from typing import Any, Literal, Sequence

import httpx

from app.core.errors import (
    ConfigurationAppError,
    UpstreamAppError,
    UpstreamRateLimitAppError,
    UpstreamTimeoutAppError,
    ValidationAppError,
)
from app.utils.response_cache import ResponseCache

logger = logging.getLogger(__name__)

TICKER_PATTERN = re.compile(r"^[A-Z0-9.]{1,10}$")
VALID_PERIODS = ("yearly", "quarterly")
MAX_STATEMENTS = 100

STATEMENT_FUNCTIONS = ("INCOME_STATEMENT", "BALANCE_SHEET", "CASH_FLOW")
EARNINGS_FUNCTION = "EARNINGS"
SECTIONS = ("incomeStatement", "balanceSheet", "cashFlow", "ratio")

Period = Literal["yearly", "quarterly"]


def normalize_ticker(ticker: str | None) -> str:
    return (ticker or "").strip().upper()


def validate_ticker(ticker: str | None) -> None:
    """Validate a statements ticker.

    Raises:
        ValidationAppError: If the ticker is empty or malformed.
    """
    if not ticker or not ticker.strip():
        raise ValidationAppError(
            code="missing_ticker",
            message="Ticker symbol is required",
            details={"parameter": "ticker"},
        )
    if not TICKER_PATTERN.match(ticker.upper()):
        raise ValidationAppError(
            code="invalid_ticker",
            message="Invalid ticker symbol format. Must be 1-10 alphanumeric characters (may contain dots)",
            details={"parameter": "ticker"},
        )


def validate_statements_request(
    period: str | None = None,
    limit_statements: int | None = None,
) -> None:
    if period is not None and period not in VALID_PERIODS:
        raise ValidationAppError(
            code="invalid_period",
            message=(
                'Period must be either "yearly" or "quarterly". '
                "If not specified, both periods are returned."
            ),
            details={"parameter": "period"},
        )
    if limit_statements is not None and not 1 <= limit_statements <= MAX_STATEMENTS:
        raise ValidationAppError(
            code="invalid_limit_statements",
            message=f"limitStatements must be a positive integer between 1 and {MAX_STATEMENTS}.",
            details={"parameter": "limitStatements"},
        )


def merge_reports(
    income: Sequence[dict[str, Any]],
    balance: Sequence[dict[str, Any]],
    cash_flow: Sequence[dict[str, Any]],
    earnings: Sequence[dict[str, Any]],
) -> list[dict[str, Any]]:
    """Merge per-statement reports into one record per fiscal period.

    Periods present only in earnings are dropped: every merged record has at
    least one statement section. Records are sorted newest first.
    """

    def by_date(reports: Sequence[dict[str, Any]]) -> dict[str, dict[str, Any]]:
        return {r["fiscalDateEnding"]: r for r in reports if r.get("fiscalDateEnding")}

    income_map = by_date(income)
    balance_map = by_date(balance)
    cash_flow_map = by_date(cash_flow)
    earnings_map = by_date(earnings)

    merged = []
    for fiscal_date in set(income_map) | set(balance_map) | set(cash_flow_map):
        merged.append(
            {
                "fiscalDateEnding": fiscal_date,
                "incomeStatement": income_map.get(fiscal_date),
                "balanceSheet": balance_map.get(fiscal_date),
                "cashFlow": cash_flow_map.get(fiscal_date),
                "ratio": earnings_map.get(fiscal_date),
            }
        )

    # ISO dates sort lexicographically
    merged.sort(key=lambda r: r["fiscalDateEnding"], reverse=True)
    return merged


def parse_field_selectors(fields: Sequence[str] | None) -> dict[str, set[str]]:
    """Group ``section.field`` selectors by section; unknown sections are ignored."""

    selectors: dict[str, set[str]] = {}
    for selector in fields or ():
        section, sep, field = selector.strip().partition(".")
        if sep and field and section in SECTIONS:
            selectors.setdefault(section, set()).add(field)
    return selectors


def filter_report_fields(report: dict[str, Any], selectors: dict[str, set[str]]) -> dict[str, Any]:
    """Reduce each statement section to ``fiscalDateEnding`` plus selected fields.

    Sections without any selected field keep only ``fiscalDateEnding``; the
    earnings section is only reduced when it is explicitly selected.
    """

    filtered = dict(report)
    for section in SECTIONS:
        data = report.get(section)
        if data is None:
            continue
        if section == "ratio" and section not in selectors:
            continue
        wanted = selectors.get(section, set())
        reduced = {"fiscalDateEnding": data.get("fiscalDateEnding")}
        reduced.update({k: v for k, v in data.items() if k in wanted})
        filtered[section] = reduced
    return filtered


def apply_statement_filters(
    data: dict[str, Any],
    period: Period | None = None,
    limit_statements: int | None = None,
    fields: Sequence[str] | None = None,
) -> dict[str, Any]:
    annual = list(data.get("annualReports") or [])
    quarterly = list(data.get("quarterlyReports") or [])

    if period == "yearly":
        quarterly = []
    elif period == "quarterly":
        annual = []

    if limit_statements:
        annual = annual[:limit_statements]
        quarterly = quarterly[:limit_statements]

    selectors = parse_field_selectors(fields)
    if selectors:
        annual = [filter_report_fields(r, selectors) for r in annual]
        quarterly = [filter_report_fields(r, selectors) for r in quarterly]

    return {
        "symbol": data.get("symbol"),
        "annualReports": annual,
        "quarterlyReports": quarterly,
    }


class AlphaVantageService:
    """Fetch, merge and cache Alpha Vantage financial statements."""

    def __init__(
        self,
        *,
        api_key: str | None,
        cache: ResponseCache,
        base_url: str = "https://www.alphavantage.co/query",
        timeout_seconds: float = 10.0,
        include_earnings: bool = True,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        """Initialize the service.

        Args:
            api_key: Alpha Vantage API key; required at call time, not here.
            cache: Response cache holding merged statements per ticker.
            base_url: Query endpoint.
            timeout_seconds: Per-request timeout.
            include_earnings: Also fetch EARNINGS for the ``ratio`` section.
            client: Optional shared HTTP client (tests inject a mock transport).
        """
        self._api_key = api_key
        self._cache = cache
        self._base_url = base_url
        self._timeout = timeout_seconds
        self._include_earnings = include_earnings
        self._client = client
        self._owns_client = client is None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=self._timeout,
                headers={"Accept": "application/json"},
            )
        return self._client

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    async def get_financial_statements(
        self,
        ticker: str,
        period: Period | None = None,
        limit_statements: int | None = None,
        fields: Sequence[str] | None = None,
    ) -> dict[str, Any]:
        """Return merged statements for ``ticker`` with per-request filters.

        Returns:
            dict with ``symbol``, ``annualReports``, ``quarterlyReports`` and
            ``cache_status`` (``"HIT"`` or ``"MISS"``).

        Raises:
            ValidationAppError: Malformed ticker or filter values.
            ConfigurationAppError: API key missing.
            UpstreamAppError: Alpha Vantage failed, timed out or throttled.
        """
        normalized = normalize_ticker(ticker)
        validate_ticker(normalized)
        validate_statements_request(period, limit_statements)

        cache_key = f"statements:{normalized}"
        cached = self._cache.get(cache_key)
        if cached is not None:
            logger.info("alpha_vantage.cache_hit", extra={"ticker": normalized})
            return {**apply_statement_filters(cached, period, limit_statements, fields), "cache_status": "HIT"}

        logger.info("alpha_vantage.cache_miss", extra={"ticker": normalized})
        data = await self._fetch_all(normalized)
        self._cache.set(cache_key, data)
        return {**apply_statement_filters(data, period, limit_statements, fields), "cache_status": "MISS"}

    async def _fetch_all(self, ticker: str) -> dict[str, Any]:
        if not self._api_key:
            raise ConfigurationAppError(
                code="missing_api_key",
                message="ALPHAVANTAGE_API_KEY environment variable is not set",
                details={"provider": "alpha_vantage"},
            )

        income, balance, cash_flow, earnings = await asyncio.gather(
            *(self._fetch_function(ticker, fn) for fn in STATEMENT_FUNCTIONS),
            self._fetch_earnings(ticker),
        )

        for payload, label in (
            (income, "income statement"),
            (balance, "balance sheet"),
            (cash_flow, "cash flow"),
        ):
            if not isinstance(payload, dict) or "symbol" not in payload:
                raise UpstreamAppError(
                    code="invalid_upstream_response",
                    message=f"Invalid {label} response from Alpha Vantage",
                    details={"provider": "alpha_vantage", "http_status": 502},
                )

        earnings = earnings if isinstance(earnings, dict) else {}
        annual = merge_reports(
            income.get("annualReports") or [],
            balance.get("annualReports") or [],
            cash_flow.get("annualReports") or [],
            earnings.get("annualEarnings") or [],
        )
        quarterly = merge_reports(
            income.get("quarterlyReports") or [],
            balance.get("quarterlyReports") or [],
            cash_flow.get("quarterlyReports") or [],
            earnings.get("quarterlyEarnings") or [],
        )

        logger.info(
            "alpha_vantage.merged",
            extra={"ticker": ticker, "annual": len(annual), "quarterly": len(quarterly)},
        )
        return {"symbol": ticker, "annualReports": annual, "quarterlyReports": quarterly}

    async def _fetch_earnings(self, ticker: str) -> Any:
        """Fetch EARNINGS, returning ``None`` when disabled or when it fails."""

        if not self._include_earnings:
            return None
        try:
            return await self._fetch_function(ticker, EARNINGS_FUNCTION)
        except UpstreamAppError as exc:
            logger.warning(
                "alpha_vantage.earnings_unavailable",
                extra={"ticker": ticker, "code": exc.code},
            )
            return None

    async def _fetch_function(self, ticker: str, function: str) -> Any:
        params = {"function": function, "symbol": ticker, "apikey": self._api_key}
        logger.info("alpha_vantage.fetch", extra={"ticker": ticker, "function": function})

        try:
            response = await self._get_client().get(
                self._base_url, params=params, timeout=self._timeout
            )
            response.raise_for_status()
        except httpx.TimeoutException:
            logger.warning("alpha_vantage.timeout", extra={"ticker": ticker, "function": function})
            raise UpstreamTimeoutAppError(
                code="upstream_timeout",
                message=f"Timeout fetching {function} for {ticker}",
                details={"provider": "alpha_vantage", "http_status": 408},
            ) from None
        except httpx.HTTPStatusError as exc:
            status_code = exc.response.status_code
            logger.warning(
                "alpha_vantage.http_error",
                extra={"ticker": ticker, "function": function, "status_code": status_code},
            )
            raise UpstreamAppError(
                code="upstream_error",
                message=(
                    f"Alpha Vantage API error for {function}: "
                    f"{status_code} - {exc.response.reason_phrase}"
                ),
                details={"provider": "alpha_vantage", "http_status": status_code},
            ) from exc
        except httpx.RequestError as exc:
            raise UpstreamAppError(
                code="upstream_unreachable",
                message=f"Alpha Vantage request failed for {function}: {type(exc).__name__}",
                details={"provider": "alpha_vantage", "http_status": 502},
            ) from exc

        try:
            payload = response.json()
        except ValueError as exc:
            raise UpstreamAppError(
                code="invalid_upstream_response",
                message=f"Alpha Vantage returned a non-JSON body for {function}",
                details={"provider": "alpha_vantage", "http_status": 502},
            ) from exc

        if isinstance(payload, dict) and "Note" in payload:
            raise UpstreamRateLimitAppError(
                code="upstream_rate_limited",
                message="Alpha Vantage API rate limit reached. Please try again later.",
                details={"provider": "alpha_vantage", "http_status": 429},
            )
        if isinstance(payload, dict) and "Information" in payload:
            raise UpstreamAppError(
                code="upstream_error",
                message=f"Alpha Vantage API error: {payload['Information']}",
                details={"provider": "alpha_vantage", "http_status": 502},
            )

        return payload
