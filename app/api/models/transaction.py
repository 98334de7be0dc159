# app/api/models/transaction.py
from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class TransactionResponse(BaseModel):
    """
    An on-chain payment submitted by the engine.
    """
    signature: str
    wallet_address: str
    kind: str = Field(..., description="session_open, session_use, credit_topup, credit_spend or other.")
    status: str = Field(..., description="pending, confirmed or failed.")
    amount_lamports: int
    amount_sol: float
    amount_usd: float
    conversion_rate: float = Field(..., description="USD per 1 SOL used for the conversion.")
    rate_source: Optional[str] = None
    recipient_address: str
    created_at: datetime
    confirmed_at: Optional[datetime] = None
    error_message: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


class TransactionListResponse(BaseModel):
    transactions: List[TransactionResponse]
    total_count: int


class TransactionStatsResponse(BaseModel):
    total_transactions: int
    successful_transactions: int
    failed_transactions: int
    pending_transactions: int
    total_sol_volume: float
    total_usd_volume: float
    average_confirmation_time: float = Field(..., description="Seconds from submission to confirmation.")
