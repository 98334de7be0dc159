# app/api/models/analytics.py
from datetime import date, datetime
from typing import List, Optional

from pydantic import BaseModel


class DailyStats(BaseModel):
    date: date
    service_id: Optional[str] = None
    service_type: str
    total_transactions: int
    total_volume: float
    unique_users: int
    avg_transaction_amount: float
    success_rate: float
    avg_response_time_ms: int


class DailyStatsResponse(BaseModel):
    stats: List[DailyStats]


class AggregateResponse(BaseModel):
    date: date
    rows_written: int


class TopService(BaseModel):
    service_id: str
    service_type: str
    revenue: float
    transactions: int


class RevenuePoint(BaseModel):
    date: date
    revenue: float
    transactions: int


class OverviewResponse(BaseModel):
    """
    Headline payment numbers, optionally for one wallet.
    """
    total_revenue: float
    total_transactions: int
    success_rate: float
    active_sessions_count: int
    average_session_value: float
    top_services: List[TopService]
    revenue_series: List[RevenuePoint]


class UsageEntry(BaseModel):
    id: int
    created_at: datetime
    kind: str
    service_id: Optional[str] = None
    resource_url: str
    resource_type: str
    http_method: str
    amount: float
    status: str
    response_code: Optional[int] = None
    response_time_ms: Optional[int] = None
    session_token: Optional[str] = None
    payment_proof: Optional[str] = None


class UsageHistoryResponse(BaseModel):
    wallet_address: str
    usage: List[UsageEntry]
    limit: int
    offset: int
