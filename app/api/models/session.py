# app/api/models/session.py
from datetime import datetime
from typing import List, Literal, Optional

from pydantic import BaseModel, Field

ResourceTypeName = Literal["agent_execution", "api_call", "data_access"]


class SessionResponse(BaseModel):
    """
    Snapshot of a payment session. Amounts are in USD.
    """
    session_token: str
    wallet_address: str
    resource_pattern: str
    authorized_amount: float
    spent_amount: float
    remaining_amount: float
    status: Literal["active", "expired", "revoked", "depleted"]
    expires_at: datetime
    auto_renew: bool
    renewal_amount: float
    opening_signature: Optional[str] = None
    last_used_at: Optional[datetime] = None
    created_at: datetime


class SessionListResponse(BaseModel):
    sessions: List[SessionResponse]
    total_count: int


class SessionValidateRequest(BaseModel):
    amount: float = Field(..., gt=0, description="USD amount that would be spent.", example=0.25)


class SessionValidateResponse(BaseModel):
    valid: bool
    remaining_amount: float


class SessionSpendRequest(BaseModel):
    """Request model for drawing from a payment session."""
    amount: float = Field(..., gt=0, description="USD amount to spend.", example=0.25)
    resource_url: str = Field(..., description="URL of the metered request.")
    resource_type: ResourceTypeName = Field("api_call", description="Kind of resource being paid for.")
    http_method: str = Field("POST", description="Method of the metered request.")
    resource: Optional[str] = Field(
        None,
        description="Resource name checked against the session's resource pattern, e.g. api/weather/forecast."
    )
    service_id: Optional[str] = None


class SessionSpendResponse(BaseModel):
    session_token: str
    amount: float
    remaining_amount: float


class SessionRevokeResponse(BaseModel):
    session_token: str
    revoked: bool = Field(..., description="False if the session was already terminal.")
    status: str
