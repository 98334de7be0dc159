# app/api/models/credit.py
from datetime import datetime
from typing import List, Literal, Optional

from pydantic import BaseModel, Field

ServiceTypeName = Literal["agent", "api", "web_service"]


class CreditBalanceResponse(BaseModel):
    wallet_address: str
    service_id: Optional[str] = None
    service_type: ServiceTypeName
    balance: float = Field(..., description="Balance in USD; 0 when no account exists.")


class CreditAccountResponse(BaseModel):
    """
    A prepaid credit account. Amounts are in USD.
    """
    wallet_address: str
    service_id: str
    service_type: ServiceTypeName
    balance: float
    total_purchased: float
    total_spent: float
    auto_topup_enabled: bool
    auto_topup_threshold: float
    auto_topup_amount: float
    last_topup_tx: Optional[str] = None
    last_topup_amount: Optional[float] = None
    last_topup_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime


class CreditListResponse(BaseModel):
    credits: List[CreditAccountResponse]
    total_count: int


class CreditSpendRequest(BaseModel):
    """Request model for spending prepaid credits."""
    wallet_address: str
    service_id: Optional[str] = None
    service_type: ServiceTypeName
    amount: float = Field(..., gt=0, description="USD amount to spend.", example=0.10)
    resource_url: Optional[str] = None
    http_method: str = "POST"


class CreditSpendResponse(BaseModel):
    wallet_address: str
    amount: float
    new_balance: float


class AutoTopupRequest(BaseModel):
    wallet_address: str
    service_id: Optional[str] = None
    service_type: ServiceTypeName
    threshold: float = Field(..., ge=0, description="Balance under which a failed spend asks for a top-up.")
    amount: float = Field(..., gt=0, description="USD amount the payer agreed to top up with.")


class AutoTopupResponse(BaseModel):
    wallet_address: str
    service_id: Optional[str] = None
    service_type: ServiceTypeName
    auto_topup_enabled: bool
