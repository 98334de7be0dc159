# app/api/endpoints/analytics.py
from datetime import date, timedelta
from fastapi import APIRouter, Depends, Query
from typing import Any, Optional
import logging

from app.api.models.analytics import (
    AggregateResponse,
    DailyStats,
    DailyStatsResponse,
    OverviewResponse,
    UsageEntry,
    UsageHistoryResponse,
)
from app.core.container import X402Container, get_container
from app.x402.units import utcnow

router = APIRouter()
logger = logging.getLogger(__name__)


@router.post("/aggregate", response_model=AggregateResponse, summary="Aggregate One Day of Usage")
def aggregate(
    day: Optional[date] = Query(None, description="UTC day to aggregate. Defaults to yesterday."),
    container: X402Container = Depends(get_container)
) -> Any:
    """
    Recompute the daily rollup rows for ``day``. Safe to rerun.
    """
    day = day or (utcnow().date() - timedelta(days=1))
    rows = container.analytics.aggregate_daily_stats(day)
    return AggregateResponse(date=day, rows_written=rows)


@router.get("/daily", response_model=DailyStatsResponse, summary="Daily Usage Rollups")
def daily_stats(
    day: date = Query(...),
    service_id: Optional[str] = Query(None),
    container: X402Container = Depends(get_container)
) -> Any:
    stats = container.analytics.get_daily_stats(day, service_id=service_id)
    return DailyStatsResponse(stats=[DailyStats(**s) for s in stats])


@router.get("/overview", response_model=OverviewResponse, summary="Payment Overview")
def overview(
    wallet: Optional[str] = Query(None),
    service_id: Optional[str] = Query(None),
    days: int = Query(30, ge=1, le=365),
    container: X402Container = Depends(get_container)
) -> Any:
    stats = container.analytics.get_overall_stats(wallet)
    series = container.analytics.get_revenue_time_series(service_id=service_id, days=days)
    return OverviewResponse(**stats, revenue_series=series)


@router.get("/usage", response_model=UsageHistoryResponse, summary="Usage History of a Wallet")
def usage_history(
    wallet: str = Query(...),
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
    container: X402Container = Depends(get_container)
) -> Any:
    """
    Every metered use paid by ``wallet``, newest first, whether it was paid
    from a session, from credits or with a standalone proof.
    """
    usage = container.analytics.get_usage_history(wallet, limit=limit, offset=offset)
    return UsageHistoryResponse(
        wallet_address=wallet,
        usage=[UsageEntry(**u) for u in usage],
        limit=limit,
        offset=offset
    )
