# app/x402/analytics.py
"""
Usage and revenue aggregation.

Rolls usage records up into one x402_analytics row per
(day, service_id, service_type) and answers the dashboard queries on top of
those rollups. Aggregating a day again overwrites its rows, so the job can be
rerun safely.
"""
import logging
from collections import defaultdict
from datetime import date, datetime, time, timedelta
from typing import Any, Callable, Dict, List, Optional, Tuple

from sqlalchemy.orm import sessionmaker

from app.db.models import DailyAnalytics, PaymentSession, UsageRecord
from app.db.session import session_scope
from app.x402.units import micros_to_usd, utcnow
from app.x402.usage import SERVICE_TYPE_FOR_RESOURCE, STATUS_COMPLETED

logger = logging.getLogger(__name__)

TOP_SERVICES_LIMIT = 5


def usage_to_dict(row: UsageRecord) -> Dict[str, Any]:
    return {
        "id": row.id,
        "created_at": row.created_at.isoformat(),
        "kind": row.kind,
        "service_id": row.service_id,
        "resource_url": row.resource_url,
        "resource_type": row.resource_type,
        "http_method": row.http_method,
        "amount": micros_to_usd(row.amount_micros),
        "status": row.status,
        "response_code": row.response_code,
        "response_time_ms": row.response_time_ms,
        "session_token": row.session_token,
        "payment_proof": row.payment_proof,
    }


def analytics_to_dict(row: DailyAnalytics) -> Dict[str, Any]:
    return {
        "date": row.date.isoformat(),
        "service_id": row.service_id or None,
        "service_type": row.service_type,
        "total_transactions": row.total_transactions,
        "total_volume": micros_to_usd(row.total_volume_micros),
        "unique_users": row.unique_users,
        "avg_transaction_amount": micros_to_usd(row.avg_transaction_micros),
        "success_rate": row.success_rate,
        "avg_response_time_ms": row.avg_response_time_ms,
    }


class UsageAggregator:
    """Daily rollups of usage records and revenue queries."""

    def __init__(self, session_factory: sessionmaker, clock: Callable[[], datetime] = utcnow):
        self._session_factory = session_factory
        self._clock = clock

    def aggregate_daily_stats(self, day: date) -> int:
        """
        Recompute the rollup rows for one UTC day.

        Args:
            day: Day to aggregate

        Returns:
            Number of (service_id, service_type) rows written
        """
        start = datetime.combine(day, time.min)
        end = start + timedelta(days=1)
        now = self._clock()

        with session_scope(self._session_factory) as db:
            records = (
                db.query(UsageRecord)
                .filter(UsageRecord.created_at >= start, UsageRecord.created_at < end)
                .all()
            )

            groups: Dict[Tuple[str, str], List[UsageRecord]] = defaultdict(list)
            for record in records:
                groups[(record.service_id or "", record.resource_type)].append(record)

            for (service_id, resource_type), group in groups.items():
                service_type = SERVICE_TYPE_FOR_RESOURCE.get(resource_type, "api")
                total = len(group)
                volume = sum(r.amount_micros for r in group)
                completed = sum(1 for r in group if r.status == STATUS_COMPLETED)
                response_time = sum(r.response_time_ms or 0 for r in group)

                row = (
                    db.query(DailyAnalytics)
                    .filter(
                        DailyAnalytics.date == day,
                        DailyAnalytics.service_id == service_id,
                        DailyAnalytics.service_type == service_type,
                    )
                    .one_or_none()
                )
                if row is None:
                    row = DailyAnalytics(date=day, service_id=service_id, service_type=service_type, created_at=now)
                    db.add(row)

                row.total_transactions = total
                row.total_volume_micros = volume
                row.unique_users = len({r.wallet_address for r in group})
                row.avg_transaction_micros = volume // total
                row.success_rate = completed / total * 100
                row.avg_response_time_ms = round(response_time / total)
                row.updated_at = now

        logger.info(f"x402: aggregated {len(records)} usage records for {day} into {len(groups)} rows")
        return len(groups)

    def get_daily_stats(self, day: date, service_id: Optional[str] = None) -> List[Dict[str, Any]]:
        with session_scope(self._session_factory) as db:
            query = db.query(DailyAnalytics).filter(DailyAnalytics.date == day)
            if service_id is not None:
                query = query.filter(DailyAnalytics.service_id == service_id)
            rows = query.order_by(DailyAnalytics.service_type, DailyAnalytics.service_id).all()
            return [analytics_to_dict(row) for row in rows]

    def get_service_stats(self, service_id: str, service_type: str, days: int = 30) -> List[Dict[str, Any]]:
        """Daily rows of one service over the last ``days`` days, newest first."""
        since = self._clock().date() - timedelta(days=days)
        with session_scope(self._session_factory) as db:
            rows = (
                db.query(DailyAnalytics)
                .filter(
                    DailyAnalytics.service_id == service_id,
                    DailyAnalytics.service_type == service_type,
                    DailyAnalytics.date >= since,
                )
                .order_by(DailyAnalytics.date.desc())
                .all()
            )
            return [analytics_to_dict(row) for row in rows]

    def get_revenue_time_series(self, service_id: Optional[str] = None, days: int = 30) -> List[Dict[str, Any]]:
        """Revenue and transaction count per day, oldest first."""
        since = self._clock().date() - timedelta(days=days)
        with session_scope(self._session_factory) as db:
            query = db.query(DailyAnalytics).filter(DailyAnalytics.date >= since)
            if service_id is not None:
                query = query.filter(DailyAnalytics.service_id == service_id)
            rows = query.order_by(DailyAnalytics.date.asc()).all()

            series: Dict[date, Dict[str, Any]] = {}
            for row in rows:
                point = series.setdefault(row.date, {"date": row.date.isoformat(), "revenue_micros": 0, "transactions": 0})
                point["revenue_micros"] += row.total_volume_micros
                point["transactions"] += row.total_transactions

        return [
            {"date": p["date"], "revenue": micros_to_usd(p["revenue_micros"]), "transactions": p["transactions"]}
            for p in series.values()
        ]

    def get_overall_stats(self, wallet_address: Optional[str] = None) -> Dict[str, Any]:
        """
        Headline numbers, optionally for one payer.

        Returns:
            Dict containing:
            - total_revenue: float - completed usage volume in USD
            - total_transactions: int
            - success_rate: float - percent of usage records completed
            - active_sessions_count: int
            - average_session_value: float - mean authorized amount of active sessions
            - top_services: list - best daily rollups by volume
        """
        with session_scope(self._session_factory) as db:
            usage = db.query(UsageRecord.amount_micros, UsageRecord.status)
            sessions = db.query(PaymentSession.authorized_micros).filter(PaymentSession.status == "active")
            if wallet_address:
                usage = usage.filter(UsageRecord.wallet_address == wallet_address)
                sessions = sessions.filter(PaymentSession.wallet_address == wallet_address)
            usage_rows = usage.all()
            active = [micros for (micros,) in sessions.all()]

            top = (
                db.query(DailyAnalytics)
                .order_by(DailyAnalytics.total_volume_micros.desc())
                .limit(TOP_SERVICES_LIMIT)
                .all()
            )
            top_services = [
                {
                    "service_id": row.service_id or "unknown",
                    "service_type": row.service_type,
                    "revenue": micros_to_usd(row.total_volume_micros),
                    "transactions": row.total_transactions,
                }
                for row in top
            ]

        completed = [micros for micros, status in usage_rows if status == STATUS_COMPLETED]
        total = len(usage_rows)
        return {
            "total_revenue": micros_to_usd(sum(completed)),
            "total_transactions": total,
            "success_rate": len(completed) / total * 100 if total else 0.0,
            "active_sessions_count": len(active),
            "average_session_value": micros_to_usd(sum(active) // len(active)) if active else 0.0,
            "top_services": top_services,
        }

    def get_usage_history(self, wallet_address: str, limit: int = 50, offset: int = 0) -> List[Dict[str, Any]]:
        """A payer's usage records, newest first."""
        with session_scope(self._session_factory) as db:
            rows = (
                db.query(UsageRecord)
                .filter(UsageRecord.wallet_address == wallet_address)
                .order_by(UsageRecord.created_at.desc(), UsageRecord.id.desc())
                .offset(offset)
                .limit(limit)
                .all()
            )
            return [usage_to_dict(row) for row in rows]
