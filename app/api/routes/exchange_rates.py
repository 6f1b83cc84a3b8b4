from __future__ import annotations

from typing import Annotated

from fastapi import APIRouter, Depends, Request, Response

from app.api.responses import response_headers
from app.core.container import ServiceContainer, get_container
from app.core.rate_limit import enforce_api_rate_limit

router = APIRouter(tags=["Exchange Rates"], dependencies=[Depends(enforce_api_rate_limit)])

EXCHANGE_RATES_MAX_AGE = 3600


@router.get(
    "/exchange-rate-ecb",
    operation_id="get_exchange_rates",
    response_class=Response,
    responses={200: {"content": {"application/xml": {}}}},
)
@router.post(
    "/exchange-rate-ecb",
    operation_id="post_exchange_rates",
    response_class=Response,
    responses={200: {"content": {"application/xml": {}}}},
)
async def get_exchange_rates(
    request: Request,
    container: Annotated[ServiceContainer, Depends(get_container)],
) -> Response:
    """Pass through the ECB daily euro reference rates XML."""

    rates = await container.exchange_rate.get_daily_rates()
    return Response(
        content=rates.data,
        media_type=rates.content_type,
        headers=response_headers(request, max_age=EXCHANGE_RATES_MAX_AGE),
    )
