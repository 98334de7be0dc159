# app/x402/usage.py
"""Usage records: one row per metered use, whichever way it was paid."""
from datetime import datetime
from enum import Enum
from typing import Optional

from sqlalchemy import update
from sqlalchemy.orm import Session, sessionmaker

from app.db.models import UsageRecord
from app.db.session import session_scope
from app.x402.units import utcnow

STATUS_COMPLETED = "completed"
STATUS_FAILED = "failed"


class UsageKind(Enum):
    SESSION_USE = "session_use"
    CREDIT_SPEND = "credit_spend"
    PROOF = "proof"


class ResourceType(Enum):
    AGENT_EXECUTION = "agent_execution"
    API_CALL = "api_call"
    DATA_ACCESS = "data_access"


# service_type -> resource_type, and back for analytics rollups
RESOURCE_TYPE_FOR_SERVICE = {
    "agent": ResourceType.AGENT_EXECUTION.value,
    "api": ResourceType.API_CALL.value,
    "web_service": ResourceType.DATA_ACCESS.value,
}
SERVICE_TYPE_FOR_RESOURCE = {v: k for k, v in RESOURCE_TYPE_FOR_SERVICE.items()}


def add_usage_record(
    db: Session,
    wallet_address: str,
    resource_url: str,
    resource_type: str,
    http_method: str,
    amount_micros: int,
    kind: UsageKind,
    session_token: Optional[str] = None,
    service_id: Optional[str] = None,
    payment_proof: Optional[str] = None,
    request_id: Optional[str] = None,
    status: str = STATUS_COMPLETED,
    response_code: Optional[int] = None,
    response_time_ms: Optional[int] = None,
    error_message: Optional[str] = None,
    created_at: Optional[datetime] = None
) -> UsageRecord:
    """Add a usage row to the caller's unit of work."""
    row = UsageRecord(
        session_token=session_token,
        wallet_address=wallet_address,
        service_id=service_id,
        resource_url=resource_url,
        resource_type=resource_type,
        http_method=http_method.upper(),
        amount_micros=amount_micros,
        kind=kind.value,
        payment_proof=payment_proof,
        request_id=request_id,
        status=status,
        response_code=response_code,
        response_time_ms=response_time_ms,
        error_message=error_message,
        created_at=created_at or utcnow(),
    )
    db.add(row)
    return row


def record_usage_outcome(
    session_factory: sessionmaker,
    request_id: str,
    response_code: Optional[int],
    response_time_ms: int,
    error_message: Optional[str] = None
) -> int:
    """
    Store how a metered request ended on the usage rows it was charged under.

    A 5xx response or an exception (``error_message``) marks the use failed.

    Returns:
        Number of usage rows updated; 0 when the request was not charged
    """
    failed = error_message is not None or (response_code is not None and response_code >= 500)
    with session_scope(session_factory) as db:
        result = db.execute(
            update(UsageRecord)
            .where(UsageRecord.request_id == request_id)
            .values(
                status=STATUS_FAILED if failed else STATUS_COMPLETED,
                response_code=response_code,
                response_time_ms=response_time_ms,
                error_message=error_message,
            )
            .execution_options(synchronize_session=False)
        )
        return result.rowcount
