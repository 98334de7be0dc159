# app/x402/sessions.py
"""
Payment session manager.

A session is a spending envelope opened by one upfront on-chain payment and
drawn down by metered uses without further payments:

    (none) --open--> active --spend--> active | depleted
                     active --now > expires_at--> expired
                     active --revoke--> revoked

expired, revoked and depleted are terminal. The manager is the only writer
of x402_payment_sessions; at all times remaining == authorized - spent.

Spends on one session are serialized by a per-token lock in this process and
applied with a single conditional UPDATE, so an over-spend is rejected whole
and never partially applied, even against another process.
"""
import fnmatch
import logging
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy import case, update
from sqlalchemy.orm import sessionmaker

from app.core.config import settings
from app.db.models import PaymentSession
from app.db.session import session_scope
from app.x402 import audit
from app.x402.catalog import ServiceConfig
from app.x402.errors import (
    InsufficientSessionBalanceError,
    InvalidAmountError,
    ResourceMismatchError,
    SessionExpiredError,
    SessionInactiveError,
    SessionNotFoundError,
)
from app.x402.locks import KeyedLock
from app.x402.submitter import TransactionSubmitter
from app.x402.transactions import TransactionKind
from app.x402.units import micros_to_usd, require_micros, usd_to_micros, utcnow
from app.x402.usage import UsageKind, add_usage_record
from app.x402.wallet import PayerWallet

logger = logging.getLogger(__name__)

STATUS_ACTIVE = "active"
STATUS_EXPIRED = "expired"
STATUS_REVOKED = "revoked"
STATUS_DEPLETED = "depleted"


@dataclass
class PaymentSessionView:
    """Snapshot of a payment session."""
    session_token: str
    wallet_address: str
    resource_pattern: str
    authorized_amount: float
    spent_amount: float
    remaining_amount: float
    status: str
    expires_at: datetime
    auto_renew: bool
    renewal_amount: float
    created_at: datetime
    opening_signature: Optional[str] = None
    last_used_at: Optional[datetime] = None

    @classmethod
    def from_row(cls, row: PaymentSession) -> "PaymentSessionView":
        return cls(
            session_token=row.session_token,
            wallet_address=row.wallet_address,
            resource_pattern=row.resource_pattern,
            authorized_amount=micros_to_usd(row.authorized_micros),
            spent_amount=micros_to_usd(row.spent_micros),
            remaining_amount=micros_to_usd(row.remaining_micros),
            status=row.status,
            expires_at=row.expires_at,
            auto_renew=row.auto_renew,
            renewal_amount=micros_to_usd(row.renewal_micros),
            created_at=row.created_at,
            opening_signature=row.opening_signature,
            last_used_at=row.last_used_at,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "session_token": self.session_token,
            "wallet_address": self.wallet_address,
            "resource_pattern": self.resource_pattern,
            "authorized_amount": self.authorized_amount,
            "spent_amount": self.spent_amount,
            "remaining_amount": self.remaining_amount,
            "status": self.status,
            "expires_at": self.expires_at.isoformat(),
            "auto_renew": self.auto_renew,
            "renewal_amount": self.renewal_amount,
            "opening_signature": self.opening_signature,
            "last_used_at": self.last_used_at.isoformat() if self.last_used_at else None,
            "created_at": self.created_at.isoformat(),
        }


def generate_session_token() -> str:
    """64 hex characters from the OS CSPRNG."""
    return secrets.token_hex(32)


def resource_matches(pattern: str, resource: str) -> bool:
    """Glob match of a resource against a session's resource pattern (``*`` spans ``/``)."""
    return fnmatch.fnmatchcase(resource, pattern)


class PaymentSessionManager:
    """Opens, validates, draws down and closes payment sessions."""

    def __init__(
        self,
        session_factory: sessionmaker,
        submitter: Optional[TransactionSubmitter] = None,
        locks: Optional[KeyedLock] = None,
        clock: Callable[[], datetime] = utcnow
    ):
        self._session_factory = session_factory
        self._submitter = submitter
        self._locks = locks or KeyedLock()
        self._clock = clock

    resource_matches = staticmethod(resource_matches)

    def open(
        self,
        payer: PayerWallet,
        authorized_amount: float,
        resource_pattern: str,
        duration_hours: Optional[float] = None,
        auto_renew: bool = False,
        renewal_amount: Optional[float] = None,
        service: Optional[ServiceConfig] = None,
        execute_payment: bool = True
    ) -> PaymentSessionView:
        """
        Pay ``authorized_amount`` upfront and open a session for it.

        Args:
            payer: Wallet paying for (and owning) the session
            authorized_amount: USD envelope, must be positive
            resource_pattern: Glob of resources the session may pay for
            duration_hours: Lifetime. Uses X402_SESSION_DEFAULT_HOURS if not provided.
            auto_renew: Stored preference for renewing when depleted
            renewal_amount: Amount to renew with. Defaults to authorized_amount.
            service: Service being paid for; enforces its max_session_amount
            execute_payment: False grants the session without an on-chain payment

        Raises:
            InvalidAmountError: Amount not positive or above the service's session cap
            PaymentError: The opening payment failed; no session is created
        """
        micros = require_micros(authorized_amount, "Session amount")
        if service is not None and service.max_session_amount is not None \
                and authorized_amount > service.max_session_amount:
            raise InvalidAmountError(
                f"Session amount {authorized_amount} exceeds maximum {service.max_session_amount} "
                f"for {service.service_id}"
            )

        hours = duration_hours if duration_hours is not None else settings.X402_SESSION_DEFAULT_HOURS
        if hours <= 0:
            raise InvalidAmountError(f"Session duration must be positive, got {hours}")

        wallet_address = payer.address
        opening_signature = None
        if execute_payment:
            if self._submitter is None:
                raise RuntimeError("PaymentSessionManager has no submitter configured")
            record = self._submitter.pay(
                payer,
                authorized_amount,
                TransactionKind.SESSION_OPEN,
                metadata={"resource_pattern": resource_pattern}
            )
            opening_signature = record.signature

        now = self._clock()
        with session_scope(self._session_factory) as db:
            row = PaymentSession(
                session_token=generate_session_token(),
                wallet_address=wallet_address,
                authorized_micros=micros,
                spent_micros=0,
                remaining_micros=micros,
                resource_pattern=resource_pattern,
                status=STATUS_ACTIVE,
                expires_at=now + timedelta(hours=hours),
                auto_renew=auto_renew,
                renewal_micros=usd_to_micros(renewal_amount if renewal_amount is not None else authorized_amount),
                opening_signature=opening_signature,
                created_at=now,
            )
            db.add(row)
            db.flush()
            view = PaymentSessionView.from_row(row)

        logger.info(f"x402: session opened for {wallet_address}: {authorized_amount} USD on {resource_pattern}")
        audit.log_session_opened(
            wallet_address=wallet_address,
            session_token=view.session_token,
            authorized_amount=authorized_amount,
            resource_pattern=resource_pattern,
            expires_at=view.expires_at.isoformat(),
            opening_signature=opening_signature
        )
        return view

    def get_session(self, session_token: str) -> Optional[PaymentSessionView]:
        with session_scope(self._session_factory) as db:
            row = db.query(PaymentSession).filter(PaymentSession.session_token == session_token).one_or_none()
            return PaymentSessionView.from_row(row) if row else None

    def get_user_sessions(self, wallet_address: str, status: Optional[str] = None) -> List[PaymentSessionView]:
        """Sessions owned by ``wallet_address``, newest first."""
        with session_scope(self._session_factory) as db:
            query = db.query(PaymentSession).filter(PaymentSession.wallet_address == wallet_address)
            if status:
                query = query.filter(PaymentSession.status == status)
            rows = query.order_by(PaymentSession.created_at.desc()).all()
            return [PaymentSessionView.from_row(row) for row in rows]

    def validate(self, session_token: str, amount: float) -> PaymentSessionView:
        """
        Check that ``amount`` could be spent from the session right now.

        An active session found past its expiry is moved to ``expired`` here.

        Returns:
            The session as read

        Raises:
            InvalidAmountError, SessionNotFoundError, SessionInactiveError,
            SessionExpiredError, InsufficientSessionBalanceError
        """
        require_micros(amount, "Spend amount")

        view = self.get_session(session_token)
        if view is None:
            raise SessionNotFoundError("Session not found")

        if view.status != STATUS_ACTIVE:
            raise SessionInactiveError(view.status)

        if self._clock() > view.expires_at:
            self._expire(session_token, view.wallet_address)
            raise SessionExpiredError("Session expired")

        if usd_to_micros(amount) > usd_to_micros(view.remaining_amount):
            raise InsufficientSessionBalanceError(
                "Insufficient session balance",
                {"remaining": view.remaining_amount, "requested": amount}
            )
        return view

    def spend(
        self,
        session_token: str,
        amount: float,
        resource_url: str,
        resource_type: str = "api_call",
        http_method: str = "POST",
        resource: Optional[str] = None,
        service_id: Optional[str] = None,
        request_id: Optional[str] = None
    ) -> float:
        """
        Draw ``amount`` from the session and record the use.

        Args:
            session_token: Session to spend from
            amount: USD amount
            resource_url: URL of the metered request
            resource_type: agent_execution, api_call or data_access
            http_method: Method of the metered request
            resource: If given, must match the session's resource pattern
            service_id: Service being paid, stored on the usage record
            request_id: Id of the metered request, so its outcome can be recorded later

        Returns:
            Remaining balance in USD

        Raises:
            ResourceMismatchError plus everything validate() raises
        """
        micros = require_micros(amount, "Spend amount")

        with self._locks.hold(session_token):
            view = self.validate(session_token, amount)
            if resource is not None and not resource_matches(view.resource_pattern, resource):
                raise ResourceMismatchError(
                    f"Resource {resource} is not covered by session pattern {view.resource_pattern}"
                )

            now = self._clock()
            with session_scope(self._session_factory) as db:
                result = db.execute(
                    update(PaymentSession)
                    .where(PaymentSession.session_token == session_token)
                    .where(PaymentSession.status == STATUS_ACTIVE)
                    .where(PaymentSession.remaining_micros >= micros)
                    .where(PaymentSession.expires_at >= now)
                    .values(
                        spent_micros=PaymentSession.spent_micros + micros,
                        remaining_micros=PaymentSession.remaining_micros - micros,
                        status=case(
                            (PaymentSession.remaining_micros == micros, STATUS_DEPLETED),
                            else_=PaymentSession.status
                        ),
                        last_used_at=now,
                    )
                    .execution_options(synchronize_session=False)
                )
                applied = result.rowcount == 1
                if applied:
                    add_usage_record(
                        db,
                        wallet_address=view.wallet_address,
                        resource_url=resource_url,
                        resource_type=resource_type,
                        http_method=http_method,
                        amount_micros=micros,
                        kind=UsageKind.SESSION_USE,
                        session_token=session_token,
                        service_id=service_id,
                        request_id=request_id,
                        created_at=now,
                    )
                    remaining_micros, status = (
                        db.query(PaymentSession.remaining_micros, PaymentSession.status)
                        .filter(PaymentSession.session_token == session_token)
                        .one()
                    )

            if not applied:
                # Lost a race with another process; report the reason as of now
                self.validate(session_token, amount)
                raise InsufficientSessionBalanceError("Insufficient session balance")

        remaining = micros_to_usd(remaining_micros)
        if status == STATUS_DEPLETED:
            logger.info(f"x402: session {session_token[:8]}... depleted")
        audit.log_session_spent(
            wallet_address=view.wallet_address,
            session_token=session_token,
            amount=amount,
            remaining=remaining,
            resource_url=resource_url
        )
        return remaining

    def revoke(self, session_token: str) -> bool:
        """
        Revoke an active session.

        Returns:
            True if the session moved to revoked, False if it was already terminal

        Raises:
            SessionNotFoundError: Unknown token
        """
        with self._locks.hold(session_token):
            with session_scope(self._session_factory) as db:
                result = db.execute(
                    update(PaymentSession)
                    .where(PaymentSession.session_token == session_token)
                    .where(PaymentSession.status == STATUS_ACTIVE)
                    .values(status=STATUS_REVOKED)
                    .execution_options(synchronize_session=False)
                )
                revoked = result.rowcount == 1
                wallet_address = (
                    db.query(PaymentSession.wallet_address)
                    .filter(PaymentSession.session_token == session_token)
                    .scalar()
                )

        if wallet_address is None:
            raise SessionNotFoundError("Session not found")
        if revoked:
            logger.info(f"x402: session {session_token[:8]}... revoked")
            audit.log_session_closed(session_token, STATUS_REVOKED, wallet_address=wallet_address)
        return revoked

    def cleanup_expired_sessions(self) -> int:
        """Move every active session past its expiry to expired. Returns the count."""
        with session_scope(self._session_factory) as db:
            result = db.execute(
                update(PaymentSession)
                .where(PaymentSession.status == STATUS_ACTIVE)
                .where(PaymentSession.expires_at < self._clock())
                .values(status=STATUS_EXPIRED)
                .execution_options(synchronize_session=False)
            )
            count = result.rowcount

        if count:
            logger.info(f"x402: expired {count} sessions")
        return count

    def _expire(self, session_token: str, wallet_address: str) -> None:
        with session_scope(self._session_factory) as db:
            result = db.execute(
                update(PaymentSession)
                .where(PaymentSession.session_token == session_token)
                .where(PaymentSession.status == STATUS_ACTIVE)
                .values(status=STATUS_EXPIRED)
                .execution_options(synchronize_session=False)
            )
            changed = result.rowcount == 1

        if changed:
            logger.info(f"x402: session {session_token[:8]}... expired")
            audit.log_session_closed(session_token, STATUS_EXPIRED, wallet_address=wallet_address)
