"""Route tests against an app wired with fake services.

Upstream services are AsyncMocks; the cache and limiters are real instances
with background sweeps disabled, so headers and caching are exercised end to
end.
"""

from __future__ import annotations

from unittest.mock import AsyncMock

import pytest
from fastapi.testclient import TestClient

from app.adapters.rate_limit import InMemoryFixedWindowRateLimiter
from app.api.responses import make_etag, utc_today
from app.core.app_factory import create_app
from app.core.config import settings
from app.core.container import ServiceContainer
from app.core.errors import (
    ConfigurationAppError,
    UpstreamAppError,
    UpstreamRateLimitAppError,
    UpstreamTimeoutAppError,
)
from app.services.alpha_vantage_service import AlphaVantageService
from app.services.exchange_rate_service import ExchangeRateResponse, ExchangeRateService
from app.services.yahoo_finance_service import YahooFinanceService
from app.utils.response_cache import ResponseCache


@pytest.fixture(autouse=True)
def rate_limit_enabled(monkeypatch):
    monkeypatch.setattr(settings.app, "rate_limit_enabled", True)
    monkeypatch.setattr(settings.app, "rate_limit_include_headers", True)


@pytest.fixture
def container() -> ServiceContainer:
    return ServiceContainer(
        cache=ResponseCache(ttl_seconds=60, start_sweeper=False),
        api_limiter=InMemoryFixedWindowRateLimiter(name="api", max_requests=100, start_sweeper=False),
        strict_limiter=InMemoryFixedWindowRateLimiter(name="strict", max_requests=20, start_sweeper=False),
        yahoo_finance=AsyncMock(spec=YahooFinanceService),
        alpha_vantage=AsyncMock(spec=AlphaVantageService),
        exchange_rate=AsyncMock(spec=ExchangeRateService),
    )


@pytest.fixture
def client(container: ServiceContainer) -> TestClient:
    return TestClient(create_app(container))


class TestHealth:
    """Liveness endpoint."""

    def test_health_ok(self, client: TestClient) -> None:
        response = client.get("/health")

        assert response.status_code == 200
        assert response.json() == {"status": "ok"}
        assert "X-RateLimit-Limit" not in response.headers


class TestQuotes:
    """/api/yahoo-finance"""

    def test_returns_quotes_with_headers(self, client: TestClient, container: ServiceContainer) -> None:
        container.yahoo_finance.get_quotes.return_value = [
            {"symbol": "MSFT", "regularMarketPrice": 410.5},
            {"symbol": "AAPL", "regularMarketPrice": 190.1},
        ]

        response = client.get(
            "/api/yahoo-finance",
            params={"symbols": "MSFT, AAPL,", "fields": "regularMarketPrice"},
        )

        assert response.status_code == 200
        assert response.json()[0]["symbol"] == "MSFT"
        container.yahoo_finance.get_quotes.assert_awaited_once_with(
            ["MSFT", "AAPL"], ["regularMarketPrice"]
        )
        assert response.headers["Access-Control-Allow-Origin"] == "*"
        assert response.headers["Cache-Control"] == "max-age=120"
        assert response.headers["X-RateLimit-Limit"] == "20"
        assert response.headers["X-RateLimit-Remaining"] == "19"
        assert response.headers["X-RateLimit-Reset"].endswith("Z")

    def test_post_is_accepted(self, client: TestClient, container: ServiceContainer) -> None:
        container.yahoo_finance.get_quotes.return_value = []

        response = client.post("/api/yahoo-finance", params={"symbols": "MSFT"})

        assert response.status_code == 200
        container.yahoo_finance.get_quotes.assert_awaited_once_with(["MSFT"], None)

    def test_missing_symbols_is_400(self, client: TestClient, container: ServiceContainer) -> None:
        response = client.get("/api/yahoo-finance")

        assert response.status_code == 400
        error = response.json()["error"]
        assert error["message"] == "Missing required parameter: symbols"
        assert error["details"]["parameter"] == "symbols"
        assert response.headers["X-RateLimit-Remaining"] == "19"
        container.yahoo_finance.get_quotes.assert_not_awaited()

    def test_too_many_symbols_is_400(self, client: TestClient, container: ServiceContainer) -> None:
        symbols = ",".join(f"S{i}" for i in range(51))

        response = client.get("/api/yahoo-finance", params={"symbols": symbols})

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "too_many_symbols"
        container.yahoo_finance.get_quotes.assert_not_awaited()


class TestHistorical:
    """/api/yahoo-finance-historical"""

    params = {"ticker": "MSFT", "from": "2024-01-01", "to": "2024-01-31"}

    def test_miss_then_hit(self, client: TestClient, container: ServiceContainer) -> None:
        container.yahoo_finance.get_historical_data.return_value = {"meta": {}, "quotes": [{"close": 1.0}]}

        first = client.get("/api/yahoo-finance-historical", params=self.params)
        second = client.get("/api/yahoo-finance-historical", params=self.params)

        assert first.status_code == 200
        assert first.headers["X-Cache"] == "MISS"
        assert second.headers["X-Cache"] == "HIT"
        assert second.json() == first.json()
        assert first.headers["ETag"] == second.headers["ETag"]
        assert first.headers["Cache-Control"] == "max-age=3600"
        container.yahoo_finance.get_historical_data.assert_awaited_once_with(
            "MSFT", "2024-01-01", "2024-01-31", None, None
        )

    def test_etag_is_quoted_base64_of_cache_key(self, client: TestClient, container: ServiceContainer) -> None:
        container.yahoo_finance.get_historical_data.return_value = {"quotes": []}

        response = client.get(
            "/api/yahoo-finance-historical",
            params={**self.params, "interval": "1wk", "fields": "volume|close"},
        )

        key = f"hist:{utc_today()}:MSFT:2024-01-01:2024-01-31:1wk:close,volume"
        assert response.headers["ETag"] == make_etag(key)

    def test_if_none_match_returns_304_without_upstream(
        self, client: TestClient, container: ServiceContainer
    ) -> None:
        etag = make_etag(f"hist:{utc_today()}:MSFT:2024-01-01:2024-01-31:1d:all")

        response = client.get(
            "/api/yahoo-finance-historical",
            params=self.params,
            headers={"If-None-Match": etag},
        )

        assert response.status_code == 304
        assert response.headers["ETag"] == etag
        container.yahoo_finance.get_historical_data.assert_not_awaited()

    def test_invalid_range_is_400(self, client: TestClient) -> None:
        response = client.get(
            "/api/yahoo-finance-historical",
            params={"ticker": "MSFT", "from": "2024-01-01", "to": "2024-02-01", "interval": "5m"},
        )

        assert response.status_code == 400
        assert "7 days" in response.json()["error"]["message"]

    def test_missing_ticker_is_400(self, client: TestClient) -> None:
        response = client.get("/api/yahoo-finance-historical", params={"from": "2024-01-01"})

        assert response.status_code == 400
        assert response.json()["error"]["message"] == "Missing required parameter: ticker"


class TestOptions:
    """/api/yahoo-finance-stock-options"""

    def test_passes_parsed_parameters(self, client: TestClient, container: ServiceContainer) -> None:
        container.yahoo_finance.get_options.return_value = {"underlyingSymbol": "AAPL", "options": []}

        response = client.get(
            "/api/yahoo-finance-stock-options",
            params={"ticker": "AAPL", "expirationDatesCount": "3", "filter": "puts,calls", "limit": "5"},
        )

        assert response.status_code == 200
        assert response.headers["X-Cache"] == "MISS"
        assert response.headers["Cache-Control"] == "max-age=300"
        container.yahoo_finance.get_options.assert_awaited_once_with(
            "AAPL", None, 3, ["puts", "calls"], 5
        )
        key = f"options:{utc_today()}:AAPL:all:3:calls,puts:5"
        assert response.headers["ETag"] == make_etag(key)

    def test_non_integer_limit_is_400(self, client: TestClient, container: ServiceContainer) -> None:
        response = client.get(
            "/api/yahoo-finance-stock-options",
            params={"ticker": "AAPL", "limit": "abc"},
        )

        assert response.status_code == 400
        assert response.json()["error"]["message"] == "Limit must be an integer between 1 and 50"
        container.yahoo_finance.get_options.assert_not_awaited()

    def test_conflicting_expiration_parameters(self, client: TestClient) -> None:
        response = client.get(
            "/api/yahoo-finance-stock-options",
            params={"ticker": "AAPL", "expirationDate": "2025-01-17", "expirationDatesCount": "2"},
        )

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "conflicting_parameters"


class TestStatements:
    """/api/statements"""

    def test_returns_reports_and_cache_status(self, client: TestClient, container: ServiceContainer) -> None:
        report = {
            "fiscalDateEnding": "2023-12-31",
            "incomeStatement": {"fiscalDateEnding": "2023-12-31", "netIncome": "1"},
            "balanceSheet": None,
            "cashFlow": None,
            "ratio": None,
        }
        container.alpha_vantage.get_financial_statements.return_value = {
            "symbol": "IBM",
            "annualReports": [report],
            "quarterlyReports": [],
            "cache_status": "HIT",
        }

        response = client.get(
            "/api/statements",
            params={
                "ticker": "ibm",
                "period": "yearly",
                "limitStatements": "2",
                "fields": "incomeStatement.netIncome|balanceSheet.totalAssets",
            },
        )

        assert response.status_code == 200
        body = response.json()
        assert body == {"symbol": "IBM", "annualReports": [report]}
        assert response.headers["X-Cache"] == "HIT"
        assert response.headers["Cache-Control"] == "max-age=86400"
        assert response.headers["X-RateLimit-Limit"] == "100"
        container.alpha_vantage.get_financial_statements.assert_awaited_once_with(
            "ibm", "yearly", 2, ["incomeStatement.netIncome", "balanceSheet.totalAssets"]
        )

    def test_invalid_limit_statements(self, client: TestClient) -> None:
        response = client.get("/api/statements", params={"ticker": "IBM", "limitStatements": "x"})

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "invalid_limit_statements"

    @pytest.mark.parametrize(
        ("error", "status_code"),
        [
            (ConfigurationAppError(code="missing_api_key", message="not set"), 500),
            (UpstreamRateLimitAppError(code="upstream_rate_limited", message="quota"), 429),
            (UpstreamTimeoutAppError(code="upstream_timeout", message="slow"), 408),
            (
                UpstreamAppError(code="upstream_error", message="bad", details={"http_status": 503}),
                503,
            ),
            (UpstreamAppError(code="upstream_error", message="bad"), 502),
        ],
    )
    def test_upstream_errors_map_to_status(
        self, client: TestClient, container: ServiceContainer, error, status_code: int
    ) -> None:
        container.alpha_vantage.get_financial_statements.side_effect = error

        response = client.get("/api/statements", params={"ticker": "IBM"})

        assert response.status_code == status_code
        assert response.json()["error"]["code"] == error.code
        assert response.headers["Access-Control-Allow-Origin"] == "*"
        assert response.headers["X-RateLimit-Limit"] == "100"


class TestExchangeRates:
    """/api/exchange-rate-ecb"""

    @pytest.mark.parametrize("method", ["get", "post"])
    def test_passes_xml_through(self, client: TestClient, container: ServiceContainer, method: str) -> None:
        xml = "<gesmes:Envelope><Cube currency='USD' rate='1.08'/></gesmes:Envelope>"
        container.exchange_rate.get_daily_rates.return_value = ExchangeRateResponse(
            data=xml, content_type="text/xml"
        )

        response = getattr(client, method)("/api/exchange-rate-ecb")

        assert response.status_code == 200
        assert response.text == xml
        assert response.headers["Content-Type"].startswith("text/xml")
        assert response.headers["Cache-Control"] == "max-age=3600"
        assert response.headers["X-RateLimit-Limit"] == "100"


class TestRateLimiting:
    """Limiter wiring and 429 responses."""

    def test_strict_limit_returns_429_with_headers(self, container: ServiceContainer) -> None:
        container.strict_limiter = InMemoryFixedWindowRateLimiter(
            name="strict", max_requests=2, start_sweeper=False
        )
        container.yahoo_finance.get_quotes.return_value = []
        client = TestClient(create_app(container))

        for _ in range(2):
            assert client.get("/api/yahoo-finance", params={"symbols": "MSFT"}).status_code == 200

        blocked = client.get("/api/yahoo-finance", params={"symbols": "MSFT"})

        assert blocked.status_code == 429
        assert blocked.json() == {"detail": "Rate limit exceeded. Try again later."}
        assert blocked.headers["X-RateLimit-Limit"] == "2"
        assert blocked.headers["X-RateLimit-Remaining"] == "0"
        assert 0 < int(blocked.headers["Retry-After"]) <= 60
        assert container.yahoo_finance.get_quotes.await_count == 2

    def test_clients_are_keyed_by_first_forwarded_hop(self, container: ServiceContainer) -> None:
        container.strict_limiter = InMemoryFixedWindowRateLimiter(
            name="strict", max_requests=1, start_sweeper=False
        )
        container.yahoo_finance.get_quotes.return_value = []
        client = TestClient(create_app(container))
        params = {"symbols": "MSFT"}

        first = client.get("/api/yahoo-finance", params=params, headers={"X-Forwarded-For": "1.1.1.1, 10.0.0.1"})
        same = client.get("/api/yahoo-finance", params=params, headers={"X-Forwarded-For": "1.1.1.1, 10.0.0.2"})
        other = client.get("/api/yahoo-finance", params=params, headers={"X-Real-IP": "2.2.2.2"})

        assert first.status_code == 200
        assert same.status_code == 429
        assert other.status_code == 200

    def test_limiters_are_independent(self, container: ServiceContainer) -> None:
        container.strict_limiter = InMemoryFixedWindowRateLimiter(
            name="strict", max_requests=1, start_sweeper=False
        )
        container.yahoo_finance.get_quotes.return_value = []
        container.exchange_rate.get_daily_rates.return_value = ExchangeRateResponse(
            data="<x/>", content_type="application/xml"
        )
        client = TestClient(create_app(container))

        client.get("/api/yahoo-finance", params={"symbols": "MSFT"})
        assert client.get("/api/yahoo-finance", params={"symbols": "MSFT"}).status_code == 429
        assert client.get("/api/exchange-rate-ecb").status_code == 200

    def test_disabled_rate_limiting(self, monkeypatch, container: ServiceContainer) -> None:
        monkeypatch.setattr(settings.app, "rate_limit_enabled", False)
        container.strict_limiter = InMemoryFixedWindowRateLimiter(
            name="strict", max_requests=1, start_sweeper=False
        )
        container.yahoo_finance.get_quotes.return_value = []
        client = TestClient(create_app(container))

        for _ in range(3):
            response = client.get("/api/yahoo-finance", params={"symbols": "MSFT"})
            assert response.status_code == 200
            assert "X-RateLimit-Limit" not in response.headers


def test_openapi_lists_tags(client: TestClient) -> None:
    schema = client.get("/openapi.json").json()

    tag_names = {t["name"] for t in schema["tags"]}
    assert {"Yahoo Finance", "Statements", "Exchange Rates", "Health"} <= tag_names
    assert "/api/statements" in schema["paths"]


def test_openapi_operation_ids_are_unique(client: TestClient) -> None:
    schema = client.get("/openapi.json").json()

    operation_ids = [
        operation["operationId"]
        for path_item in schema["paths"].values()
        for operation in path_item.values()
    ]
    assert len(operation_ids) == len(set(operation_ids))
    assert schema["paths"]["/api/yahoo-finance"]["post"]["operationId"] == "post_quotes"
    assert schema["paths"]["/api/exchange-rate-ecb"]["get"]["operationId"] == "get_exchange_rates"


def test_lifespan_closes_container(container: ServiceContainer) -> None:
    with TestClient(create_app(container)) as client:
        client.get("/health")

    container.alpha_vantage.aclose.assert_awaited_once()
    container.exchange_rate.aclose.assert_awaited_once()
