from __future__ import annotations

import logging
from typing import Annotated

from fastapi import APIRouter, Depends, Query, Request, Response

from app.api.responses import (
    etag_matches,
    json_response,
    make_etag,
    not_modified,
    parse_int_param,
    require_param,
    split_fields,
    split_list,
    utc_today,
)
from app.core.container import ServiceContainer, get_container
from app.core.rate_limit import enforce_strict_rate_limit
from app.services.yahoo_finance_service import (
    MAX_EXPIRATION_DATES,
    MAX_OPTION_LIMIT,
    validate_historical_request,
    validate_options_request,
    validate_quote_request,
)

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Yahoo Finance"], dependencies=[Depends(enforce_strict_rate_limit)])

QUOTES_MAX_AGE = 120
HISTORICAL_MAX_AGE = 3600
OPTIONS_MAX_AGE = 300


@router.get("/yahoo-finance", operation_id="get_quotes")
@router.post("/yahoo-finance", operation_id="post_quotes")
async def get_quotes(
    request: Request,
    container: Annotated[ServiceContainer, Depends(get_container)],
    symbols: Annotated[str | None, Query(description="Comma-separated symbols, e.g. MSFT,AAPL")] = None,
    fields: Annotated[str | None, Query(description="Comma-separated quote fields")] = None,
) -> Response:
    """Return current quotes for up to 50 symbols.

    Sample: ``/api/yahoo-finance?symbols=MSFT&fields=regularMarketPrice``
    """
    symbol_list = split_list(require_param(symbols, "symbols")) or []
    field_list = split_list(fields)
    validate_quote_request(symbol_list, field_list)

    quotes = await container.yahoo_finance.get_quotes(symbol_list, field_list)
    return json_response(request, quotes, max_age=QUOTES_MAX_AGE)


@router.get("/yahoo-finance-historical")
async def get_historical(
    request: Request,
    container: Annotated[ServiceContainer, Depends(get_container)],
    ticker: Annotated[str | None, Query()] = None,
    from_date: Annotated[str | None, Query(alias="from", description="yyyy-MM-dd")] = None,
    to_date: Annotated[str | None, Query(alias="to", description="yyyy-MM-dd, inclusive")] = None,
    interval: Annotated[str | None, Query(description="1m..1h, 1d, 1w/1wk, 1mo, 3mo")] = None,
    fields: Annotated[str | None, Query(description="Quote keys separated by | or ,")] = None,
) -> Response:
    """Return OHLCV bars for one ticker between two dates.

    Responses are cached per UTC day and carry an ETag; a matching
    ``If-None-Match`` short-circuits to 304.
    """
    ticker = require_param(ticker, "ticker")
    field_list = split_fields(fields)
    validate_historical_request(ticker, from_date, to_date, interval, field_list)

    sorted_fields = ",".join(sorted(field_list)) if field_list else "all"
    cache_key = f"hist:{utc_today()}:{ticker}:{from_date}:{to_date}:{interval or '1d'}:{sorted_fields}"
    etag = make_etag(cache_key)

    if etag_matches(request, etag):
        logger.debug("http.not_modified", extra={"cache_key": cache_key})
        return not_modified(request, max_age=HISTORICAL_MAX_AGE, etag=etag)

    cached = container.cache.get(cache_key)
    if cached is not None:
        return json_response(request, cached, max_age=HISTORICAL_MAX_AGE, etag=etag, cache_status="HIT")

    data = await container.yahoo_finance.get_historical_data(
        ticker, from_date, to_date, interval, field_list
    )
    container.cache.set(cache_key, data)
    return json_response(request, data, max_age=HISTORICAL_MAX_AGE, etag=etag, cache_status="MISS")


@router.get("/yahoo-finance-stock-options")
async def get_stock_options(
    request: Request,
    container: Annotated[ServiceContainer, Depends(get_container)],
    ticker: Annotated[str | None, Query()] = None,
    expiration_date: Annotated[str | None, Query(alias="expirationDate", description="yyyy-MM-dd")] = None,
    expiration_dates_count: Annotated[
        str | None, Query(alias="expirationDatesCount", description="Nearest N expirations (1-12)")
    ] = None,
    option_filter: Annotated[str | None, Query(alias="filter", description="calls, puts or both")] = None,
    limit: Annotated[str | None, Query(description="Strikes per side nearest the money (1-50)")] = None,
) -> Response:
    """Return option chains for a ticker, optionally narrowed by side and strike count."""

    ticker = require_param(ticker, "ticker")
    count = parse_int_param(
        expiration_dates_count,
        parameter="expirationDatesCount",
        code="invalid_expiration_dates_count",
        message=f"expirationDatesCount must be an integer between 1 and {MAX_EXPIRATION_DATES}",
    )
    strike_limit = parse_int_param(
        limit,
        parameter="limit",
        code="invalid_limit",
        message=f"Limit must be an integer between 1 and {MAX_OPTION_LIMIT}",
    )
    sides = split_list(option_filter)
    validate_options_request(ticker, expiration_date, count, sides, strike_limit)

    cache_key = ":".join(
        [
            "options",
            utc_today(),
            ticker,
            expiration_date or "all",
            str(count) if count is not None else "all",
            ",".join(sorted(sides)) if sides else "all",
            str(strike_limit) if strike_limit is not None else "all",
        ]
    )
    etag = make_etag(cache_key)

    if etag_matches(request, etag):
        return not_modified(request, max_age=OPTIONS_MAX_AGE, etag=etag)

    cached = container.cache.get(cache_key)
    if cached is not None:
        return json_response(request, cached, max_age=OPTIONS_MAX_AGE, etag=etag, cache_status="HIT")

    data = await container.yahoo_finance.get_options(
        ticker, expiration_date, count, sides, strike_limit
    )
    container.cache.set(cache_key, data)
    return json_response(request, data, max_age=OPTIONS_MAX_AGE, etag=etag, cache_status="MISS")
