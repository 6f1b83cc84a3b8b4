"""Tests for AlphaVantageService using an httpx mock transport."""

from __future__ import annotations

from typing import Any, Callable

import httpx
import pytest

from app.core.errors import (
    ConfigurationAppError,
    UpstreamAppError,
    UpstreamRateLimitAppError,
    UpstreamTimeoutAppError,
    ValidationAppError,
)
from app.services.alpha_vantage_service import (
    AlphaVantageService,
    apply_statement_filters,
    merge_reports,
    validate_ticker,
)
from app.utils.response_cache import ResponseCache

INCOME = {
    "symbol": "IBM",
    "annualReports": [
        {"fiscalDateEnding": "2022-12-31", "totalRevenue": "900", "grossProfit": "400"},
        {"fiscalDateEnding": "2023-12-31", "totalRevenue": "1000", "grossProfit": "500"},
    ],
    "quarterlyReports": [
        {"fiscalDateEnding": "2024-03-31", "totalRevenue": "250", "grossProfit": "125"},
    ],
}
BALANCE = {
    "symbol": "IBM",
    "annualReports": [{"fiscalDateEnding": "2023-12-31", "totalAssets": "5000"}],
    "quarterlyReports": [{"fiscalDateEnding": "2024-03-31", "totalAssets": "5200"}],
}
CASH_FLOW = {
    "symbol": "IBM",
    "annualReports": [{"fiscalDateEnding": "2023-12-31", "operatingCashflow": "150"}],
    "quarterlyReports": [],
}
EARNINGS = {
    "symbol": "IBM",
    "annualEarnings": [
        {"fiscalDateEnding": "2023-12-31", "reportedEPS": "9.61"},
        {"fiscalDateEnding": "2021-12-31", "reportedEPS": "9.97"},
    ],
    "quarterlyEarnings": [{"fiscalDateEnding": "2024-03-31", "reportedEPS": "1.68"}],
}

PAYLOADS = {
    "INCOME_STATEMENT": INCOME,
    "BALANCE_SHEET": BALANCE,
    "CASH_FLOW": CASH_FLOW,
    "EARNINGS": EARNINGS,
}


class RecordingHandler:
    """Mock transport handler that answers per Alpha Vantage ``function``."""

    def __init__(self, respond: Callable[[str], httpx.Response] | None = None) -> None:
        self.requests: list[httpx.Request] = []
        self._respond = respond or (lambda fn: httpx.Response(200, json=PAYLOADS[fn]))

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return self._respond(request.url.params["function"])


def make_service(
    handler: RecordingHandler,
    *,
    api_key: str | None = "demo",
    cache: ResponseCache | None = None,
    include_earnings: bool = True,
) -> AlphaVantageService:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return AlphaVantageService(
        api_key=api_key,
        cache=cache or ResponseCache(start_sweeper=False),
        base_url="https://alpha.test/query",
        include_earnings=include_earnings,
        client=client,
    )


class TestMergeReports:
    """Merging statements by fiscal date."""

    def test_merges_sorts_and_attaches_earnings(self) -> None:
        merged = merge_reports(
            INCOME["annualReports"],
            BALANCE["annualReports"],
            CASH_FLOW["annualReports"],
            EARNINGS["annualEarnings"],
        )

        assert [r["fiscalDateEnding"] for r in merged] == ["2023-12-31", "2022-12-31"]
        latest = merged[0]
        assert latest["balanceSheet"] == {"fiscalDateEnding": "2023-12-31", "totalAssets": "5000"}
        assert latest["ratio"] == {"fiscalDateEnding": "2023-12-31", "reportedEPS": "9.61"}
        assert merged[1]["balanceSheet"] is None
        assert merged[1]["ratio"] is None

    def test_earnings_only_dates_are_dropped(self) -> None:
        merged = merge_reports([], [], [], EARNINGS["annualEarnings"])

        assert merged == []


class TestFilters:
    """Per-request period, limit and field filters."""

    data = {
        "symbol": "IBM",
        "annualReports": merge_reports(
            INCOME["annualReports"], BALANCE["annualReports"], CASH_FLOW["annualReports"], EARNINGS["annualEarnings"]
        ),
        "quarterlyReports": merge_reports(
            INCOME["quarterlyReports"], BALANCE["quarterlyReports"], [], EARNINGS["quarterlyEarnings"]
        ),
    }

    def test_period_yearly_empties_quarterly(self) -> None:
        result = apply_statement_filters(self.data, period="yearly")

        assert len(result["annualReports"]) == 2
        assert result["quarterlyReports"] == []

    def test_period_quarterly_empties_annual(self) -> None:
        result = apply_statement_filters(self.data, period="quarterly")

        assert result["annualReports"] == []
        assert len(result["quarterlyReports"]) == 1

    def test_limit_keeps_newest(self) -> None:
        result = apply_statement_filters(self.data, limit_statements=1)

        assert [r["fiscalDateEnding"] for r in result["annualReports"]] == ["2023-12-31"]

    def test_fields_reduce_sections(self) -> None:
        result = apply_statement_filters(
            self.data, fields=["incomeStatement.grossProfit", "balanceSheet.totalAssets"]
        )

        latest = result["annualReports"][0]
        assert latest["incomeStatement"] == {"fiscalDateEnding": "2023-12-31", "grossProfit": "500"}
        assert latest["balanceSheet"] == {"fiscalDateEnding": "2023-12-31", "totalAssets": "5000"}
        assert latest["cashFlow"] == {"fiscalDateEnding": "2023-12-31"}
        assert latest["ratio"] == {"fiscalDateEnding": "2023-12-31", "reportedEPS": "9.61"}
        assert result["annualReports"][1]["balanceSheet"] is None

    def test_filters_do_not_mutate_input(self) -> None:
        apply_statement_filters(self.data, fields=["incomeStatement.grossProfit"])

        assert self.data["annualReports"][0]["incomeStatement"]["totalRevenue"] == "1000"


class TestValidateTicker:
    """Ticker validation."""

    @pytest.mark.parametrize("ticker", ["IBM", "BRK.B", "ibm", "A1"])
    def test_accepts_valid(self, ticker: str) -> None:
        validate_ticker(ticker)

    @pytest.mark.parametrize("ticker", ["", "   ", "TOO-LONG!", "ABCDEFGHIJK"])
    def test_rejects_invalid(self, ticker: str) -> None:
        with pytest.raises(ValidationAppError):
            validate_ticker(ticker)


class TestGetFinancialStatements:
    """End-to-end service behaviour against the mock transport."""

    @pytest.mark.asyncio
    async def test_fetches_four_functions_then_serves_from_cache(self) -> None:
        handler = RecordingHandler()
        service = make_service(handler)

        first = await service.get_financial_statements(" ibm ")
        second = await service.get_financial_statements("IBM", period="quarterly")

        assert first["cache_status"] == "MISS"
        assert first["symbol"] == "IBM"
        assert len(first["annualReports"]) == 2
        assert second["cache_status"] == "HIT"
        assert second["annualReports"] == []
        assert sorted(r.url.params["function"] for r in handler.requests) == [
            "BALANCE_SHEET",
            "CASH_FLOW",
            "EARNINGS",
            "INCOME_STATEMENT",
        ]
        assert all(r.url.params["symbol"] == "IBM" for r in handler.requests)
        assert all(r.url.params["apikey"] == "demo" for r in handler.requests)

    @pytest.mark.asyncio
    async def test_different_fields_share_one_cache_entry(self) -> None:
        handler = RecordingHandler()
        cache = ResponseCache(start_sweeper=False)
        service = make_service(handler, cache=cache)

        await service.get_financial_statements("IBM", fields=["incomeStatement.grossProfit"])
        result = await service.get_financial_statements("IBM", fields=["balanceSheet.totalAssets"])

        assert result["cache_status"] == "HIT"
        assert len(handler.requests) == 4
        assert cache.get("statements:IBM")["annualReports"][0]["incomeStatement"]["totalRevenue"] == "1000"

    @pytest.mark.asyncio
    async def test_missing_api_key(self) -> None:
        handler = RecordingHandler()
        service = make_service(handler, api_key=None)

        with pytest.raises(ConfigurationAppError) as exc_info:
            await service.get_financial_statements("IBM")

        assert exc_info.value.message == "ALPHAVANTAGE_API_KEY environment variable is not set"
        assert handler.requests == []

    @pytest.mark.asyncio
    async def test_invalid_ticker_never_calls_upstream(self) -> None:
        handler = RecordingHandler()
        service = make_service(handler)

        with pytest.raises(ValidationAppError):
            await service.get_financial_statements("NOT A TICKER")

        assert handler.requests == []

    @pytest.mark.asyncio
    async def test_note_payload_is_upstream_rate_limit(self) -> None:
        handler = RecordingHandler(lambda fn: httpx.Response(200, json={"Note": "5 calls per minute"}))
        service = make_service(handler)

        with pytest.raises(UpstreamRateLimitAppError):
            await service.get_financial_statements("IBM")

    @pytest.mark.asyncio
    async def test_information_payload_is_upstream_error(self) -> None:
        handler = RecordingHandler(lambda fn: httpx.Response(200, json={"Information": "premium endpoint"}))
        service = make_service(handler)

        with pytest.raises(UpstreamAppError) as exc_info:
            await service.get_financial_statements("IBM")

        assert exc_info.value.message == "Alpha Vantage API error: premium endpoint"

    @pytest.mark.asyncio
    async def test_http_error_carries_upstream_status(self) -> None:
        handler = RecordingHandler(lambda fn: httpx.Response(503))
        service = make_service(handler)

        with pytest.raises(UpstreamAppError) as exc_info:
            await service.get_financial_statements("IBM")

        assert exc_info.value.details["http_status"] == 503

    @pytest.mark.asyncio
    async def test_timeout_names_function_and_ticker(self) -> None:
        def respond(fn: str) -> httpx.Response:
            if fn == "BALANCE_SHEET":
                raise httpx.ReadTimeout("timed out")
            return httpx.Response(200, json=PAYLOADS[fn])

        service = make_service(RecordingHandler(respond))

        with pytest.raises(UpstreamTimeoutAppError) as exc_info:
            await service.get_financial_statements("IBM")

        assert exc_info.value.message == "Timeout fetching BALANCE_SHEET for IBM"

    @pytest.mark.asyncio
    async def test_payload_without_symbol_is_invalid(self) -> None:
        def respond(fn: str) -> httpx.Response:
            payload: dict[str, Any] = {} if fn == "CASH_FLOW" else PAYLOADS[fn]
            return httpx.Response(200, json=payload)

        service = make_service(RecordingHandler(respond))

        with pytest.raises(UpstreamAppError) as exc_info:
            await service.get_financial_statements("IBM")

        assert exc_info.value.message == "Invalid cash flow response from Alpha Vantage"

    @pytest.mark.asyncio
    async def test_failed_fetch_is_not_cached(self) -> None:
        cache = ResponseCache(start_sweeper=False)
        service = make_service(RecordingHandler(lambda fn: httpx.Response(500)), cache=cache)

        with pytest.raises(UpstreamAppError):
            await service.get_financial_statements("IBM")

        assert cache.has("statements:IBM") is False

    @pytest.mark.asyncio
    async def test_throttled_earnings_leaves_ratio_empty(self) -> None:
        def respond(fn: str) -> httpx.Response:
            if fn == "EARNINGS":
                return httpx.Response(200, json={"Note": "5 calls per minute"})
            return httpx.Response(200, json=PAYLOADS[fn])

        service = make_service(RecordingHandler(respond))

        result = await service.get_financial_statements("IBM")

        assert result["cache_status"] == "MISS"
        assert [r["fiscalDateEnding"] for r in result["annualReports"]] == ["2023-12-31", "2022-12-31"]
        assert all(r["ratio"] is None for r in result["annualReports"])
        assert result["annualReports"][0]["incomeStatement"]["totalRevenue"] == "1000"

    @pytest.mark.asyncio
    async def test_earnings_failure_status_is_not_propagated(self) -> None:
        def respond(fn: str) -> httpx.Response:
            if fn == "EARNINGS":
                return httpx.Response(503)
            return httpx.Response(200, json=PAYLOADS[fn])

        service = make_service(RecordingHandler(respond))

        result = await service.get_financial_statements("IBM", period="quarterly")

        assert result["quarterlyReports"][0]["ratio"] is None
        assert result["quarterlyReports"][0]["balanceSheet"]["totalAssets"] == "5200"

    @pytest.mark.asyncio
    async def test_earnings_disabled_makes_three_calls(self) -> None:
        handler = RecordingHandler()
        service = make_service(handler, include_earnings=False)

        result = await service.get_financial_statements("IBM")

        assert sorted(r.url.params["function"] for r in handler.requests) == [
            "BALANCE_SHEET",
            "CASH_FLOW",
            "INCOME_STATEMENT",
        ]
        assert all(r["ratio"] is None for r in result["annualReports"])
