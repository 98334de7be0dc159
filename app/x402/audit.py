# app/x402/audit.py
"""
Audit logging for x402 payments.

Every money-moving event is appended to a JSON lines file so that payments,
session draw-downs and credit movements can be reconciled after the fact
against the transaction log and the settlement ledger.

Log format: JSON lines (one event per line)
Log location: Configured via X402_AUDIT_LOG_PATH

Events logged:
- Payment submitted / failed (signature, kind, SOL and USD amounts, rate)
- Transaction confirmed / failed (terminal reconciliation outcome)
- Session opened / spent / revoked / expired
- Credits topped up / spent, auto top-up required
- Proof verified / rejected (standalone payment proofs)
- 402 returned (amount, currency, recipient)
- Error (type, context)
"""
import json
import logging
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, Any, Optional
from enum import Enum

from app.core.config import settings

logger = logging.getLogger(__name__)


class AuditEventType(Enum):
    """Types of audit events that can be logged."""
    PAYMENT_SUBMITTED = "payment_submitted"
    PAYMENT_FAILED = "payment_failed"
    TRANSACTION_CONFIRMED = "transaction_confirmed"
    TRANSACTION_FAILED = "transaction_failed"
    SESSION_OPENED = "session_opened"
    SESSION_SPENT = "session_spent"
    SESSION_REVOKED = "session_revoked"
    SESSION_EXPIRED = "session_expired"
    CREDITS_TOPPED_UP = "credits_topped_up"
    CREDITS_SPENT = "credits_spent"
    AUTO_TOPUP_REQUIRED = "auto_topup_required"
    PROOF_VERIFIED = "proof_verified"
    PROOF_REJECTED = "proof_rejected"
    PAYMENT_REQUIRED_SENT = "payment_required_sent"
    ERROR = "error"


def generate_request_id() -> str:
    """Generate a unique request ID for tracking."""
    return str(uuid.uuid4())[:8]


def get_audit_log_path() -> Path:
    return Path(settings.X402_AUDIT_LOG_PATH)


def ensure_audit_log_directory() -> bool:
    """
    Ensure the audit log directory exists.

    Returns:
        True if directory exists or was created, False on error
    """
    try:
        log_dir = get_audit_log_path().parent
        if not log_dir.exists():
            log_dir.mkdir(parents=True, exist_ok=True)
            logger.info(f"Created audit log directory: {log_dir}")
        return True
    except OSError as e:
        logger.error(f"Failed to create audit log directory: {e}")
        return False


def create_audit_event(
    event_type: AuditEventType,
    data: Dict[str, Any],
    wallet_address: Optional[str] = None,
    client_ip: Optional[str] = None,
    request_id: Optional[str] = None
) -> Dict[str, Any]:
    """
    Create an audit event dictionary.

    Args:
        event_type: Type of event to log
        data: Event-specific data
        wallet_address: Payer wallet address (if available)
        client_ip: Client IP address (if the event came from an HTTP request)
        request_id: Unique request identifier (if available)

    Returns:
        A structured event ready to be written to the audit log
    """
    return {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "event_type": event_type.value,
        "request_id": request_id or generate_request_id(),
        "client_ip": client_ip,
        "wallet_address": wallet_address,
        "data": data
    }


def log_audit_event(
    event_type: AuditEventType,
    data: Dict[str, Any],
    wallet_address: Optional[str] = None,
    client_ip: Optional[str] = None,
    request_id: Optional[str] = None
) -> Optional[str]:
    """
    Append an audit event to the x402 audit log.

    A failed write is logged and reported as None; auditing never breaks the
    payment path.

    Returns:
        The request_id used for this event, or None on error
    """
    event = create_audit_event(
        event_type=event_type,
        data=data,
        wallet_address=wallet_address,
        client_ip=client_ip,
        request_id=request_id
    )

    try:
        ensure_audit_log_directory()
        with open(get_audit_log_path(), "a") as f:
            f.write(json.dumps(event, default=str) + "\n")

        logger.debug(f"Audit event logged: {event_type.value} [{event['request_id']}]")
        return event["request_id"]

    except OSError as e:
        logger.error(f"Failed to write audit event: {e}")
        return None


# Convenience functions for specific event types

def log_payment_submitted(
    wallet_address: str,
    signature: str,
    kind: str,
    amount_usd: float,
    amount_lamports: int,
    conversion_rate: float,
    rate_source: str
) -> Optional[str]:
    """Log a transaction accepted by the ledger (still pending)."""
    return log_audit_event(
        event_type=AuditEventType.PAYMENT_SUBMITTED,
        data={
            "signature": signature,
            "kind": kind,
            "amount_usd": amount_usd,
            "amount_lamports": amount_lamports,
            "conversion_rate": conversion_rate,
            "rate_source": rate_source,
        },
        wallet_address=wallet_address
    )


def log_payment_failed(
    reason: str,
    stage: str,
    wallet_address: Optional[str] = None,
    amount_usd: Optional[float] = None
) -> Optional[str]:
    """Log a payment that never reached the ledger."""
    return log_audit_event(
        event_type=AuditEventType.PAYMENT_FAILED,
        data={
            "reason": reason,
            "stage": stage,
            "amount_usd": amount_usd,
        },
        wallet_address=wallet_address
    )


def log_transaction_terminal(
    signature: str,
    confirmed: bool,
    wallet_address: Optional[str] = None,
    error_message: Optional[str] = None
) -> Optional[str]:
    """Log the reconciled outcome of a submitted transaction."""
    return log_audit_event(
        event_type=AuditEventType.TRANSACTION_CONFIRMED if confirmed else AuditEventType.TRANSACTION_FAILED,
        data={
            "signature": signature,
            "error_message": error_message,
        },
        wallet_address=wallet_address
    )


def log_session_opened(
    wallet_address: str,
    session_token: str,
    authorized_amount: float,
    resource_pattern: str,
    expires_at: str,
    opening_signature: Optional[str] = None
) -> Optional[str]:
    return log_audit_event(
        event_type=AuditEventType.SESSION_OPENED,
        data={
            "session_token": session_token,
            "authorized_amount": authorized_amount,
            "resource_pattern": resource_pattern,
            "expires_at": expires_at,
            "opening_signature": opening_signature,
        },
        wallet_address=wallet_address
    )


def log_session_spent(
    wallet_address: str,
    session_token: str,
    amount: float,
    remaining: float,
    resource_url: str
) -> Optional[str]:
    return log_audit_event(
        event_type=AuditEventType.SESSION_SPENT,
        data={
            "session_token": session_token,
            "amount": amount,
            "remaining": remaining,
            "resource_url": resource_url,
        },
        wallet_address=wallet_address
    )


def log_session_closed(
    session_token: str,
    status: str,
    wallet_address: Optional[str] = None
) -> Optional[str]:
    """Log a session leaving the active state by revocation or expiry."""
    event_type = AuditEventType.SESSION_REVOKED if status == "revoked" else AuditEventType.SESSION_EXPIRED
    return log_audit_event(
        event_type=event_type,
        data={"session_token": session_token, "status": status},
        wallet_address=wallet_address
    )


def log_credits_topped_up(
    wallet_address: str,
    service_id: str,
    service_type: str,
    amount: float,
    new_balance: float,
    signature: str
) -> Optional[str]:
    return log_audit_event(
        event_type=AuditEventType.CREDITS_TOPPED_UP,
        data={
            "service_id": service_id,
            "service_type": service_type,
            "amount": amount,
            "new_balance": new_balance,
            "signature": signature,
        },
        wallet_address=wallet_address
    )


def log_credits_spent(
    wallet_address: str,
    service_id: str,
    service_type: str,
    amount: float,
    new_balance: float
) -> Optional[str]:
    return log_audit_event(
        event_type=AuditEventType.CREDITS_SPENT,
        data={
            "service_id": service_id,
            "service_type": service_type,
            "amount": amount,
            "new_balance": new_balance,
        },
        wallet_address=wallet_address
    )


def log_auto_topup_required(
    wallet_address: str,
    service_id: str,
    service_type: str,
    balance: float,
    topup_amount: float
) -> Optional[str]:
    return log_audit_event(
        event_type=AuditEventType.AUTO_TOPUP_REQUIRED,
        data={
            "service_id": service_id,
            "service_type": service_type,
            "balance": balance,
            "topup_amount": topup_amount,
        },
        wallet_address=wallet_address
    )


def log_proof_checked(
    signature: str,
    is_valid: bool,
    wallet_address: Optional[str] = None,
    invalid_reason: Optional[str] = None,
    client_ip: Optional[str] = None
) -> Optional[str]:
    """Log a standalone payment proof verification."""
    return log_audit_event(
        event_type=AuditEventType.PROOF_VERIFIED if is_valid else AuditEventType.PROOF_REJECTED,
        data={
            "signature": signature,
            "is_valid": is_valid,
            "invalid_reason": invalid_reason,
        },
        wallet_address=wallet_address,
        client_ip=client_ip
    )


def log_payment_required_sent(
    client_ip: str,
    amount: float,
    currency: str,
    pay_to: str,
    resource: str,
    reason: Optional[str] = None
) -> Optional[str]:
    """Log a 402 Payment Required response event."""
    return log_audit_event(
        event_type=AuditEventType.PAYMENT_REQUIRED_SENT,
        data={
            "amount": amount,
            "currency": currency,
            "pay_to": pay_to,
            "resource": resource,
            "reason": reason,
        },
        client_ip=client_ip
    )


def log_error(
    error_type: str,
    error_message: str,
    context: Optional[Dict[str, Any]] = None,
    wallet_address: Optional[str] = None,
    client_ip: Optional[str] = None
) -> Optional[str]:
    """Log an error event."""
    return log_audit_event(
        event_type=AuditEventType.ERROR,
        data={
            "error_type": error_type,
            "error_message": error_message,
            "context": context or {},
        },
        wallet_address=wallet_address,
        client_ip=client_ip
    )


def read_audit_log(
    max_entries: int = 100,
    event_type: Optional[AuditEventType] = None,
    wallet_address: Optional[str] = None
) -> list:
    """
    Read entries from the audit log.

    Args:
        max_entries: Maximum number of entries to return
        event_type: Filter by event type (optional)
        wallet_address: Filter by payer wallet (optional)

    Returns:
        List of audit events (most recent first)
    """
    log_path = get_audit_log_path()
    if not log_path.exists():
        return []

    events = []
    try:
        with open(log_path, "r") as f:
            for line in f:
                line = line.strip()
                if not line:
                    continue
                try:
                    event = json.loads(line)
                except json.JSONDecodeError:
                    continue
                if event_type and event.get("event_type") != event_type.value:
                    continue
                if wallet_address and event.get("wallet_address") != wallet_address:
                    continue
                events.append(event)
    except OSError as e:
        logger.error(f"Failed to read audit log: {e}")
        return []

    return list(reversed(events))[:max_entries]


def get_audit_stats() -> Dict[str, Any]:
    """
    Get statistics from the audit log.

    Returns:
        Dict with event counts, date range, etc.
    """
    log_path = get_audit_log_path()
    if not log_path.exists():
        return {
            "total_events": 0,
            "events_by_type": {},
            "log_path": str(log_path),
            "log_exists": False,
        }

    events_by_type: Dict[str, int] = {}
    total = 0
    first_timestamp = None
    last_timestamp = None

    try:
        with open(log_path, "r") as f:
            for line in f:
                line = line.strip()
                if not line:
                    continue
                try:
                    event = json.loads(line)
                except json.JSONDecodeError:
                    continue
                total += 1
                event_type = event.get("event_type", "unknown")
                events_by_type[event_type] = events_by_type.get(event_type, 0) + 1

                timestamp = event.get("timestamp")
                if timestamp:
                    if first_timestamp is None:
                        first_timestamp = timestamp
                    last_timestamp = timestamp
    except OSError as e:
        logger.error(f"Failed to get audit stats: {e}")
        return {
            "total_events": 0,
            "events_by_type": {},
            "log_path": str(log_path),
            "log_exists": False,
            "error": str(e),
        }

    return {
        "total_events": total,
        "events_by_type": events_by_type,
        "first_event": first_timestamp,
        "last_event": last_timestamp,
        "log_path": str(log_path),
        "log_exists": True,
    }
