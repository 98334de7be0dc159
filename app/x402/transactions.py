# app/x402/transactions.py
"""
Durable log of on-chain payments.

A row is written the moment a submission succeeds (status ``pending``) and
afterwards only the confirmation monitor touches it, moving it to
``confirmed`` or ``failed`` exactly once. Amounts and the conversion rate are
never updated, and rows are never deleted.
"""
import json
import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from sqlalchemy import func, update
from sqlalchemy.orm import sessionmaker

from app.db.models import TransactionLog
from app.db.session import session_scope
from app.x402.units import micros_to_usd, usd_to_micros, utcnow

logger = logging.getLogger(__name__)


class TransactionKind(Enum):
    """Why a payment was made."""
    SESSION_OPEN = "session_open"
    SESSION_USE = "session_use"
    CREDIT_TOPUP = "credit_topup"
    CREDIT_SPEND = "credit_spend"
    OTHER = "other"


class TransactionStatus(Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    FAILED = "failed"


TERMINAL_STATUSES = {TransactionStatus.CONFIRMED, TransactionStatus.FAILED}


@dataclass
class TransactionRecord:
    """Detached view of a transaction_logs row."""
    signature: str
    wallet_address: str
    kind: str
    status: str
    amount_lamports: int
    amount_sol: float
    amount_usd: float
    conversion_rate: float
    rate_source: Optional[str]
    recipient_address: str
    created_at: datetime
    confirmed_at: Optional[datetime] = None
    error_message: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_row(cls, row: TransactionLog) -> "TransactionRecord":
        return cls(
            signature=row.signature,
            wallet_address=row.wallet_address,
            kind=row.transaction_type,
            status=row.status,
            amount_lamports=row.amount_lamports,
            amount_sol=row.amount_sol,
            amount_usd=micros_to_usd(row.amount_usd_micros),
            conversion_rate=row.conversion_rate,
            rate_source=row.rate_source,
            recipient_address=row.recipient_address,
            created_at=row.created_at,
            confirmed_at=row.confirmed_at,
            error_message=row.error_message,
            metadata=json.loads(row.metadata_json) if row.metadata_json else {},
        )

    @property
    def is_terminal(self) -> bool:
        return self.status in {s.value for s in TERMINAL_STATUSES}


class TransactionLogStore:
    """Persistence for TransactionRecord rows."""

    def __init__(self, session_factory: sessionmaker):
        self._session_factory = session_factory

    def record_transaction(
        self,
        signature: str,
        wallet_address: str,
        kind: TransactionKind,
        amount_lamports: int,
        amount_sol: float,
        amount_usd: float,
        conversion_rate: float,
        recipient_address: str,
        rate_source: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None
    ) -> TransactionRecord:
        """Insert a new pending transaction."""
        with session_scope(self._session_factory) as db:
            row = TransactionLog(
                signature=signature,
                wallet_address=wallet_address,
                transaction_type=kind.value,
                status=TransactionStatus.PENDING.value,
                amount_lamports=amount_lamports,
                amount_sol=amount_sol,
                amount_usd_micros=usd_to_micros(amount_usd),
                conversion_rate=conversion_rate,
                rate_source=rate_source,
                recipient_address=recipient_address,
                metadata_json=json.dumps(metadata) if metadata else None,
                created_at=utcnow(),
            )
            db.add(row)
            db.flush()
            record = TransactionRecord.from_row(row)

        logger.info(f"Transaction logged: {signature} ({kind.value}, {amount_sol:.9f} SOL)")
        return record

    def get_transaction(self, signature: str) -> Optional[TransactionRecord]:
        with session_scope(self._session_factory) as db:
            row = db.query(TransactionLog).filter(TransactionLog.signature == signature).one_or_none()
            return TransactionRecord.from_row(row) if row else None

    def mark_transaction_terminal(
        self,
        signature: str,
        status: TransactionStatus,
        error_message: Optional[str] = None,
        at: Optional[datetime] = None
    ) -> bool:
        """
        Move a pending transaction to a terminal status.

        The update only matches rows still ``pending``, so the first terminal
        answer wins and a confirmed row can never become failed (or vice versa).

        Returns:
            True if this call performed the transition
        """
        if status not in TERMINAL_STATUSES:
            raise ValueError(f"Not a terminal status: {status}")

        values: Dict[str, Any] = {"status": status.value, "error_message": error_message}
        if status == TransactionStatus.CONFIRMED:
            values["confirmed_at"] = at or utcnow()

        with session_scope(self._session_factory) as db:
            result = db.execute(
                update(TransactionLog)
                .where(TransactionLog.signature == signature)
                .where(TransactionLog.status == TransactionStatus.PENDING.value)
                .values(**values)
            )
            changed = result.rowcount == 1

        if changed:
            logger.info(f"Transaction status updated: {signature} -> {status.value}")
        return changed

    def get_pending_transactions(self, older_than: Optional[datetime] = None) -> List[TransactionRecord]:
        """Pending transactions, newest first, optionally created before ``older_than``."""
        with session_scope(self._session_factory) as db:
            query = db.query(TransactionLog).filter(TransactionLog.status == TransactionStatus.PENDING.value)
            if older_than is not None:
                query = query.filter(TransactionLog.created_at < older_than)
            rows = query.order_by(TransactionLog.created_at.desc()).all()
            return [TransactionRecord.from_row(row) for row in rows]

    def get_transaction_history(self, wallet_address: str, limit: int = 50) -> List[TransactionRecord]:
        with session_scope(self._session_factory) as db:
            rows = (
                db.query(TransactionLog)
                .filter(TransactionLog.wallet_address == wallet_address)
                .order_by(TransactionLog.created_at.desc())
                .limit(limit)
                .all()
            )
            return [TransactionRecord.from_row(row) for row in rows]

    def get_transaction_stats(self, wallet_address: Optional[str] = None) -> Dict[str, Any]:
        """
        Aggregate counts and volumes.

        Returns:
            Dict containing:
            - total_transactions, successful_transactions, failed_transactions,
              pending_transactions: int
            - total_sol_volume: float
            - total_usd_volume: float
            - average_confirmation_time: float - seconds from submission to confirmation
        """
        with session_scope(self._session_factory) as db:
            query = db.query(
                TransactionLog.status,
                func.count(TransactionLog.id),
                func.coalesce(func.sum(TransactionLog.amount_sol), 0.0),
                func.coalesce(func.sum(TransactionLog.amount_usd_micros), 0),
            )
            if wallet_address:
                query = query.filter(TransactionLog.wallet_address == wallet_address)
            by_status = {
                status: (count, sol, usd_micros)
                for status, count, sol, usd_micros in query.group_by(TransactionLog.status).all()
            }

            confirmed = db.query(TransactionLog.created_at, TransactionLog.confirmed_at).filter(
                TransactionLog.status == TransactionStatus.CONFIRMED.value,
                TransactionLog.confirmed_at.isnot(None),
            )
            if wallet_address:
                confirmed = confirmed.filter(TransactionLog.wallet_address == wallet_address)
            durations = [(c - s).total_seconds() for s, c in confirmed.all()]

        def count(status: TransactionStatus) -> int:
            return by_status.get(status.value, (0, 0.0, 0))[0]

        return {
            "total_transactions": sum(v[0] for v in by_status.values()),
            "successful_transactions": count(TransactionStatus.CONFIRMED),
            "failed_transactions": count(TransactionStatus.FAILED),
            "pending_transactions": count(TransactionStatus.PENDING),
            "total_sol_volume": float(sum(v[1] for v in by_status.values())),
            "total_usd_volume": micros_to_usd(sum(int(v[2]) for v in by_status.values())),
            "average_confirmation_time": sum(durations) / len(durations) if durations else 0.0,
        }
