from __future__ import annotations

from typing import Annotated

from fastapi import APIRouter, Depends, Query, Request, Response

from app.api.responses import json_response, parse_int_param, require_param, split_fields
from app.core.container import ServiceContainer, get_container
from app.core.rate_limit import enforce_api_rate_limit
from app.schemas.statements import FinancialStatementsResponse
from app.services.alpha_vantage_service import MAX_STATEMENTS

router = APIRouter(tags=["Statements"], dependencies=[Depends(enforce_api_rate_limit)])

STATEMENTS_MAX_AGE = 86400


@router.get("/statements", response_model=FinancialStatementsResponse)
async def get_statements(
    request: Request,
    container: Annotated[ServiceContainer, Depends(get_container)],
    ticker: Annotated[str | None, Query(description="Ticker symbol, e.g. IBM")] = None,
    period: Annotated[str | None, Query(description="yearly or quarterly; both when omitted")] = None,
    limit_statements: Annotated[
        str | None, Query(alias="limitStatements", description="Newest N periods (1-100)")
    ] = None,
    fields: Annotated[
        str | None,
        Query(description="section.field selectors separated by | or , e.g. incomeStatement.netIncome"),
    ] = None,
) -> Response:
    """Return income statement, balance sheet, cash flow and earnings merged per period.

    The merged data is cached per ticker for a day; ``X-Cache`` reports
    whether this request was served from it.
    """
    ticker = require_param(ticker, "ticker")
    limit = parse_int_param(
        limit_statements,
        parameter="limitStatements",
        code="invalid_limit_statements",
        message=f"limitStatements must be a positive integer between 1 and {MAX_STATEMENTS}.",
    )

    result = await container.alpha_vantage.get_financial_statements(
        ticker, period, limit, split_fields(fields)
    )
    body = FinancialStatementsResponse.from_service(result).to_body()
    return json_response(
        request,
        body,
        max_age=STATEMENTS_MAX_AGE,
        cache_status=result["cache_status"],
    )
