"""Yahoo Finance quotes, historical prices and option chains.

Wraps the ``yfinance`` library, which is synchronous and prone to upstream
throttling when hit concurrently. Every call is therefore serialized through a
process-wide lock and executed in the default thread pool under an asyncio
timeout, keeping the event loop free while only one request talks to Yahoo at
a time.
"""

from __future__ import annotations

import asyncio
import logging
import math
import re
import threading
from datetime import date, timedelta
from typing import Any, Callable, Iterable, Sequence

import yfinance as yf

from app.core.errors import (
    AppError,
    UpstreamAppError,
    UpstreamTimeoutAppError,
    ValidationAppError,
)

logger = logging.getLogger(__name__)

INTRADAY_INTERVALS: tuple[str, ...] = ("1m", "2m", "5m", "15m", "30m", "60m", "90m", "1h")
VALID_INTERVALS: tuple[str, ...] = INTRADAY_INTERVALS + ("1d", "1w", "1wk", "1mo", "3mo")
OPTION_SIDES: tuple[str, ...] = ("calls", "puts")

MAX_SYMBOLS = 50
MAX_FIELDS = 20
MAX_OPTION_LIMIT = 50
MAX_EXPIRATION_DATES = 12

QUOTE_FIELDS: tuple[str, ...] = (
    "symbol",
    "currency",
    "regularMarketPrice",
    "regularMarketDayHigh",
    "regularMarketDayLow",
    "regularMarketPreviousClose",
)

_ISO_DATE = re.compile(r"^\d{4}-\d{2}-\d{2}$")

# yfinance shares cookies/crumbs between tickers; one caller at a time
_UPSTREAM_LOCK = threading.Lock()


def normalize_interval(interval: str | None) -> str:
    """Map the accepted ``1w`` alias onto Yahoo's ``1wk``; default ``1d``."""

    if interval == "1w":
        return "1wk"
    return interval or "1d"


def to_jsonable(value: Any) -> Any:
    """Convert pandas/numpy values returned by yfinance into JSON-safe values.

    NaN/NaT become None, timestamps become ISO-8601 strings and numpy scalars
    become their Python equivalents.
    """

    if value is None or isinstance(value, (str, bool)):
        return value
    if isinstance(value, float):
        return None if math.isnan(value) or math.isinf(value) else float(value)
    if isinstance(value, int):
        return value
    if isinstance(value, dict):
        return {str(k): to_jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set)):
        return [to_jsonable(v) for v in value]
    try:
        if value != value:  # NaT and numpy NaN
            return None
    except (TypeError, ValueError):
        pass
    if hasattr(value, "isoformat"):
        return value.isoformat()
    if hasattr(value, "item"):
        return to_jsonable(value.item())
    return str(value)


def round_price(value: Any) -> Any:
    value = to_jsonable(value)
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return round(value, 2)
    return value


def select_fields(record: dict[str, Any], fields: Sequence[str] | None, anchor: str) -> dict[str, Any]:
    """Reduce ``record`` to ``anchor`` plus the requested fields it contains."""

    if not fields:
        return record
    selected = {anchor: record.get(anchor)}
    for field in fields:
        if field in record:
            selected[field] = record[field]
    return selected


def filter_option_sides(options: list[dict[str, Any]], sides: Iterable[str]) -> list[dict[str, Any]]:
    """Keep only the requested sides (``calls``/``puts``) of each chain."""

    wanted = set(sides)
    filtered = []
    for chain in options:
        kept: dict[str, Any] = {}
        if chain.get("expirationDate"):
            kept["expirationDate"] = chain["expirationDate"]
        for side in OPTION_SIDES:
            if side in wanted and chain.get(side):
                kept[side] = chain[side]
        filtered.append(kept)
    return filtered


def limit_strikes(options: list[dict[str, Any]], market_price: float, limit: int) -> list[dict[str, Any]]:
    """Keep the ``limit`` strikes nearest the money on each side.

    Calls keep strikes above the market price (ascending), puts keep strikes
    below it (descending), so the closest contracts come first.
    """

    limited = []
    for chain in options:
        kept: dict[str, Any] = {}
        if chain.get("expirationDate"):
            kept["expirationDate"] = chain["expirationDate"]

        calls = chain.get("calls") or []
        if calls:
            above = [c for c in calls if _is_number(c.get("strike")) and c["strike"] > market_price]
            above.sort(key=lambda c: c["strike"])
            kept["calls"] = above[:limit]

        puts = chain.get("puts") or []
        if puts:
            below = [p for p in puts if _is_number(p.get("strike")) and p["strike"] < market_price]
            below.sort(key=lambda p: p["strike"], reverse=True)
            kept["puts"] = below[:limit]

        limited.append(kept)
    return limited


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _market_price(quote: dict[str, Any]) -> float:
    for key in ("regularMarketPrice", "regularMarketDayHigh"):
        value = quote.get(key)
        if _is_number(value):
            return float(value)
    return 0.0


def _check_fields(fields: Sequence[str] | None) -> None:
    if not fields:
        return
    if any(not f or not f.strip() for f in fields):
        raise ValidationAppError(code="invalid_fields", message="Invalid fields provided")
    if len(fields) > MAX_FIELDS:
        raise ValidationAppError(
            code="too_many_fields",
            message=f"Maximum {MAX_FIELDS} fields allowed per request",
        )


def _parse_iso_date(value: str | None, label: str) -> date:
    if not value or not _ISO_DATE.match(value):
        raise ValidationAppError(
            code="invalid_date_format",
            message=f"{label} date must be in yyyy-MM-dd format",
        )
    try:
        return date.fromisoformat(value)
    except ValueError:
        raise ValidationAppError(
            code="invalid_date",
            message=f"Invalid {label.lower()} date",
        ) from None


def _interval_range_limit(interval: str) -> tuple[int, str]:
    """Return (max_range_days, interval_family) for a normalized interval."""

    if interval in INTRADAY_INTERVALS:
        return 7, "intraday"
    if interval == "1wk":
        return 365 * 50, "weekly"
    if interval == "1d":
        return 365 * 5, "daily"
    if interval in ("1mo", "3mo"):
        return 365 * 50, "monthly"
    return 365, "other"


def validate_quote_request(symbols: Sequence[str], fields: Sequence[str] | None = None) -> None:
    """Validate a quote request.

    Raises:
        ValidationAppError: If symbols or fields are missing, blank or too many.
    """
    if not symbols:
        raise ValidationAppError(
            code="missing_symbols",
            message="At least one symbol must be provided",
        )
    if any(not s or not s.strip() for s in symbols):
        raise ValidationAppError(code="invalid_symbols", message="Invalid symbols provided")
    if len(symbols) > MAX_SYMBOLS:
        raise ValidationAppError(
            code="too_many_symbols",
            message=f"Maximum {MAX_SYMBOLS} symbols allowed per request",
        )
    _check_fields(fields)


def validate_historical_request(
    ticker: str | None,
    from_date: str | None,
    to_date: str | None,
    interval: str | None = None,
    fields: Sequence[str] | None = None,
) -> None:
    """Validate a historical-prices request.

    Enforces date format and ordering plus a maximum range per interval
    family: 7 days intraday, 5 years daily, 50 years weekly/monthly.

    Raises:
        ValidationAppError: On the first failing rule.
    """
    if not ticker or not ticker.strip():
        raise ValidationAppError(code="missing_ticker", message="Ticker must be provided")

    if interval and interval not in VALID_INTERVALS:
        raise ValidationAppError(
            code="invalid_interval",
            message="Interval must be one of: " + ", ".join(VALID_INTERVALS),
        )

    _check_fields(fields)

    start = _parse_iso_date(from_date, "From")
    end = _parse_iso_date(to_date, "To")
    if start > end:
        raise ValidationAppError(
            code="invalid_date_range",
            message="From date must be before or equal to to date",
        )

    normalized = normalize_interval(interval)
    max_days, family = _interval_range_limit(normalized)
    if (end - start).days > max_days:
        if family == "intraday":
            message = f'Date range exceeds maximum of 7 days for intraday interval "{normalized}"'
        else:
            message = f"Date range exceeds maximum of {round(max_days / 365)} years for {family} interval"
        raise ValidationAppError(code="date_range_too_large", message=message)


def validate_options_request(
    ticker: str | None,
    expiration_date: str | None = None,
    expiration_dates_count: int | None = None,
    option_filter: Sequence[str] | None = None,
    limit: int | None = None,
) -> None:
    """Validate an option-chain request.

    Raises:
        ValidationAppError: On the first failing rule.
    """
    if not ticker or not ticker.strip():
        raise ValidationAppError(code="missing_ticker", message="Ticker must be provided")

    if expiration_date is not None:
        if not _ISO_DATE.match(expiration_date):
            raise ValidationAppError(
                code="invalid_date_format",
                message="Expiration date must be in yyyy-MM-dd format",
            )
        try:
            date.fromisoformat(expiration_date)
        except ValueError:
            raise ValidationAppError(
                code="invalid_date",
                message="Invalid expiration date",
            ) from None

    if expiration_dates_count is not None:
        if expiration_date is not None:
            raise ValidationAppError(
                code="conflicting_parameters",
                message="Cannot specify both expirationDate and expirationDatesCount",
            )
        if not 1 <= expiration_dates_count <= MAX_EXPIRATION_DATES:
            raise ValidationAppError(
                code="invalid_expiration_dates_count",
                message=f"expirationDatesCount must be an integer between 1 and {MAX_EXPIRATION_DATES}",
            )

    if option_filter:
        invalid = [f for f in option_filter if f not in OPTION_SIDES]
        if invalid:
            raise ValidationAppError(
                code="invalid_filter",
                message=(
                    f"Invalid filter values: {', '.join(invalid)}. "
                    "Valid values are: calls, puts"
                ),
            )

    if limit is not None and not 1 <= limit <= MAX_OPTION_LIMIT:
        raise ValidationAppError(
            code="invalid_limit",
            message=f"Limit must be an integer between 1 and {MAX_OPTION_LIMIT}",
        )


class YahooFinanceService:
    """Async façade over ``yfinance`` with serialized upstream access."""

    def __init__(
        self,
        *,
        timeout_seconds: float = 10.0,
        ticker_factory: Callable[[str], Any] = yf.Ticker,
    ) -> None:
        """Initialize the service.

        Args:
            timeout_seconds: Upper bound for a single upstream operation.
            ticker_factory: Builds a ticker handle; injectable for tests.
        """
        self._timeout = timeout_seconds
        self._ticker_factory = ticker_factory

    async def get_quotes(
        self,
        symbols: Sequence[str],
        fields: Sequence[str] | None = None,
    ) -> list[dict[str, Any]]:
        """Fetch one quote record per symbol, optionally reduced to ``fields``.

        Each symbol is a separate upstream call with its own timeout.
        """

        logger.info(
            "yahoo_finance.quotes",
            extra={"symbols": list(symbols), "fields": list(fields) if fields else "all"},
        )
        records = [await self._run("quote", self._fetch_quote, symbol) for symbol in symbols]
        return [select_fields(record, fields, "symbol") for record in records]

    async def get_historical_data(
        self,
        ticker: str,
        from_date: str,
        to_date: str,
        interval: str | None = None,
        fields: Sequence[str] | None = None,
    ) -> dict[str, Any]:
        """Fetch OHLCV bars between two inclusive dates.

        Prices are rounded to two decimals and the adjusted close is dropped.
        """

        normalized = normalize_interval(interval)
        # Yahoo treats the end bound as exclusive
        end_exclusive = (date.fromisoformat(to_date) + timedelta(days=1)).isoformat()

        logger.info(
            "yahoo_finance.historical",
            extra={"ticker": ticker, "from": from_date, "to": to_date, "interval": normalized},
        )
        quotes = await self._run(
            "chart", self._fetch_history, ticker, from_date, end_exclusive, normalized
        )
        return {
            "meta": {
                "symbol": ticker,
                "interval": normalized,
                "from": from_date,
                "to": to_date,
            },
            "quotes": [select_fields(quote, fields, "date") for quote in quotes],
        }

    async def get_options(
        self,
        ticker: str,
        expiration_date: str | None = None,
        expiration_dates_count: int | None = None,
        option_filter: Sequence[str] | None = None,
        limit: int | None = None,
    ) -> dict[str, Any]:
        """Fetch option chains for one or more expirations.

        Without ``expiration_date`` or ``expiration_dates_count`` only the
        nearest expiration is returned.
        """

        logger.info(
            "yahoo_finance.options",
            extra={
                "ticker": ticker,
                "expiration_date": expiration_date,
                "expiration_dates_count": expiration_dates_count,
            },
        )
        result = await self._run(
            "options", self._fetch_options, ticker, expiration_date, expiration_dates_count
        )

        if option_filter:
            result["options"] = filter_option_sides(result["options"], option_filter)

        market_price = _market_price(result.get("quote") or {})
        if limit and market_price > 0:
            result["options"] = limit_strikes(result["options"], market_price, limit)

        return result

    async def _run(self, operation: str, func: Callable[..., Any], *args: Any) -> Any:
        loop = asyncio.get_running_loop()
        try:
            return await asyncio.wait_for(
                loop.run_in_executor(None, self._serialized, func, *args),
                timeout=self._timeout,
            )
        except asyncio.TimeoutError:
            logger.warning(
                "yahoo_finance.timeout",
                extra={"operation": operation, "timeout_seconds": self._timeout},
            )
            raise UpstreamTimeoutAppError(
                code="upstream_timeout",
                message="External service is not responding",
                details={"provider": "yahoo_finance", "http_status": 408},
            ) from None
        except AppError:
            raise
        except Exception as exc:
            logger.error(
                "yahoo_finance.failed",
                extra={"operation": operation, "error_type": type(exc).__name__, "error_msg": str(exc)},
            )
            raise UpstreamAppError(
                code="upstream_error",
                message=f"Error fetching {operation} from Yahoo Finance: {exc}",
                details={"provider": "yahoo_finance", "http_status": 502},
            ) from exc

    @staticmethod
    def _serialized(func: Callable[..., Any], *args: Any) -> Any:
        with _UPSTREAM_LOCK:
            return func(*args)

    def _fetch_quote(self, symbol: str) -> dict[str, Any]:
        info = self._ticker_factory(symbol).info or {}
        return to_jsonable({"symbol": symbol, **info})

    def _fetch_history(
        self, ticker: str, start: str, end_exclusive: str, interval: str
    ) -> list[dict[str, Any]]:
        frame = self._ticker_factory(ticker).history(
            start=start,
            end=end_exclusive,
            interval=interval,
            auto_adjust=False,
            actions=False,
        )
        quotes = []
        for index, row in frame.iterrows():
            quote = {"date": to_jsonable(index)}
            for column, key in (("Open", "open"), ("High", "high"), ("Low", "low"), ("Close", "close")):
                quote[key] = round_price(row.get(column))
            if "Volume" in row:
                quote["volume"] = to_jsonable(row["Volume"])
            quotes.append(quote)
        return quotes

    def _fetch_options(
        self,
        ticker: str,
        expiration_date: str | None,
        expiration_dates_count: int | None,
    ) -> dict[str, Any]:
        handle = self._ticker_factory(ticker)
        expirations = [str(e) for e in (handle.options or ())]

        if expiration_date:
            selected = [expiration_date]
        elif expiration_dates_count:
            selected = expirations[:expiration_dates_count]
        else:
            selected = expirations[:1]

        info = handle.info or {}
        quote = to_jsonable({k: info[k] for k in QUOTE_FIELDS if k in info})

        strikes: set[float] = set()
        chains = []
        for expiration in selected:
            chain = handle.option_chain(expiration)
            calls = _frame_records(getattr(chain, "calls", None))
            puts = _frame_records(getattr(chain, "puts", None))
            strikes.update(c["strike"] for c in calls + puts if _is_number(c.get("strike")))
            chains.append({"expirationDate": expiration, "calls": calls, "puts": puts})

        return {
            "underlyingSymbol": ticker.upper(),
            "expirationDates": expirations,
            "strikes": sorted(strikes),
            "quote": quote,
            "options": chains,
        }


def _frame_records(frame: Any) -> list[dict[str, Any]]:
    if frame is None:
        return []
    return [to_jsonable(record) for record in frame.to_dict("records")]
