# app/api/endpoints/pricing.py
from fastapi import APIRouter, Depends, Query
import logging

from app.api.models.pricing import PriceQuoteResponse
from app.core.container import X402Container, get_container
from app.x402.units import sol_to_lamports

router = APIRouter()
logger = logging.getLogger(__name__)


@router.get("/quote", response_model=PriceQuoteResponse, summary="Quote a USD Amount in SOL")
def get_quote(
    usd: float = Query(..., gt=0, description="Amount in USD.", example=1.5),
    container: X402Container = Depends(get_container)
) -> PriceQuoteResponse:
    """
    Convert a USD amount to SOL at the current oracle rate.

    The oracle never fails: when every live source is down the quote uses the
    last known rate or a conservative fallback, as reported in ``source``.
    """
    quote = container.oracle.quote(usd)
    logger.info(f"Quote {usd} USD -> {quote.native_amount:.9f} SOL ({quote.source})")
    return PriceQuoteResponse(
        reference_amount=quote.reference_amount,
        native_amount=quote.native_amount,
        native_lamports=sol_to_lamports(quote.native_amount),
        rate=quote.rate,
        as_of=quote.as_of,
        source=quote.source,
    )
