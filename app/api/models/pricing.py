# app/api/models/pricing.py
from datetime import datetime

from pydantic import BaseModel, Field


class PriceQuoteResponse(BaseModel):
    """
    USD amount converted to SOL at the oracle's current rate.
    """
    reference_amount: float = Field(..., description="Amount in USD.")
    native_amount: float = Field(..., description="Equivalent amount in SOL.")
    native_lamports: int = Field(..., description="Equivalent amount in lamports, rounded down.")
    rate: float = Field(..., description="USD per 1 SOL.")
    as_of: datetime = Field(..., description="When the rate was obtained.")
    source: str = Field(..., description="Rate provenance: pyth, coingecko, coinbase, stale:<source> or fallback.")
