# app/x402/credits.py
"""
Credit ledger.

A standing balance per (wallet, service) pair, bought with on-chain top-ups
and spent per metered use. This module is the only writer of
x402_payment_credits. Every mutation keeps
balance == total_purchased - total_spent and never lets balance go negative:
spends are a conditional UPDATE guarded by ``balance >= amount`` and run
under a per-account lock.

Auto top-up is a signal, not a payment: when a spend fails on an account with
auto top-up enabled and a balance under its threshold, AutoTopupRequiredError
tells the caller how much the payer agreed to top up with. The ledger never
pays on the payer's behalf.
"""
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Tuple

from sqlalchemy import func, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import sessionmaker

from app.db.models import CreditAccount, UsageRecord
from app.db.session import session_scope
from app.x402 import audit
from app.x402.errors import (
    AutoTopupRequiredError,
    InsufficientCreditsError,
    InvalidAmountError,
    SignatureVerificationError,
)
from app.x402.locks import KeyedLock
from app.x402.submitter import TransactionSubmitter
from app.x402.transactions import TransactionKind, TransactionRecord
from app.x402.units import micros_to_usd, require_micros, usd_to_micros, utcnow
from app.x402.usage import RESOURCE_TYPE_FOR_SERVICE, UsageKind, add_usage_record
from app.x402.wallet import PayerWallet

logger = logging.getLogger(__name__)

AccountKey = Tuple[str, str, str]


def account_key(wallet_address: str, service_id: Optional[str], service_type: str) -> AccountKey:
    """Normalized account key; a missing service id is stored as ''."""
    return (wallet_address, service_id or "", service_type)


def spend_resource(service_id: Optional[str], service_type: str) -> str:
    """Resource name a payer signs to authorize a credit spend."""
    return f"credits/{service_type}/{service_id or ''}"


@dataclass
class CreditAccountView:
    wallet_address: str
    service_id: str
    service_type: str
    balance: float
    total_purchased: float
    total_spent: float
    auto_topup_enabled: bool
    auto_topup_threshold: float
    auto_topup_amount: float
    created_at: datetime
    updated_at: datetime
    last_topup_tx: Optional[str] = None
    last_topup_amount: Optional[float] = None
    last_topup_at: Optional[datetime] = None

    @classmethod
    def from_row(cls, row: CreditAccount) -> "CreditAccountView":
        return cls(
            wallet_address=row.wallet_address,
            service_id=row.service_id,
            service_type=row.service_type,
            balance=micros_to_usd(row.balance_micros),
            total_purchased=micros_to_usd(row.total_purchased_micros),
            total_spent=micros_to_usd(row.total_spent_micros),
            auto_topup_enabled=row.auto_topup_enabled,
            auto_topup_threshold=micros_to_usd(row.auto_topup_threshold_micros),
            auto_topup_amount=micros_to_usd(row.auto_topup_amount_micros),
            created_at=row.created_at,
            updated_at=row.updated_at,
            last_topup_tx=row.last_topup_tx,
            last_topup_amount=micros_to_usd(row.last_topup_micros) if row.last_topup_micros is not None else None,
            last_topup_at=row.last_topup_at,
        )


@dataclass
class CreditTopUpResult:
    signature: str
    amount: float
    new_balance: float
    transaction: TransactionRecord


class CreditLedger:
    """Per-(wallet, service) prepaid balances."""

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

    def _filter(self, query, key: AccountKey):
        wallet_address, service_id, service_type = key
        return query.filter(
            CreditAccount.wallet_address == wallet_address,
            CreditAccount.service_id == service_id,
            CreditAccount.service_type == service_type,
        )

    def _where(self, statement, key: AccountKey):
        wallet_address, service_id, service_type = key
        return (
            statement
            .where(CreditAccount.wallet_address == wallet_address)
            .where(CreditAccount.service_id == service_id)
            .where(CreditAccount.service_type == service_type)
        )

    def get_account(
        self,
        wallet_address: str,
        service_id: Optional[str],
        service_type: str
    ) -> Optional[CreditAccountView]:
        key = account_key(wallet_address, service_id, service_type)
        with session_scope(self._session_factory) as db:
            row = self._filter(db.query(CreditAccount), key).one_or_none()
            return CreditAccountView.from_row(row) if row else None

    def balance(self, wallet_address: str, service_id: Optional[str], service_type: str) -> float:
        """Current balance in USD; 0 when no account exists (none is created)."""
        account = self.get_account(wallet_address, service_id, service_type)
        return account.balance if account else 0.0

    def top_up(
        self,
        payer: PayerWallet,
        service_id: Optional[str],
        service_type: str,
        amount: float
    ) -> CreditTopUpResult:
        """
        Buy ``amount`` USD of credits with an on-chain payment.

        The balance is credited once the ledger accepted the payment; the
        account is created on first top-up.

        Raises:
            InvalidAmountError: Amount not positive
            PaymentError: The payment failed; the ledger is unchanged
        """
        micros = require_micros(amount, "Top-up amount")
        if self._submitter is None:
            raise RuntimeError("CreditLedger has no submitter configured")

        key = account_key(payer.address, service_id, service_type)
        record = self._submitter.pay(
            payer,
            amount,
            TransactionKind.CREDIT_TOPUP,
            metadata={"service_id": key[1], "service_type": service_type}
        )

        with self._locks.hold(key):
            try:
                new_balance = self._apply_topup(key, micros, record.signature)
            except IntegrityError:
                # Another process created the account first
                new_balance = self._apply_topup(key, micros, record.signature)

        logger.info(f"x402: credits topped up for {key[0]} on {service_type}/{key[1]}: +{amount} -> {new_balance}")
        audit.log_credits_topped_up(
            wallet_address=key[0],
            service_id=key[1],
            service_type=service_type,
            amount=amount,
            new_balance=new_balance,
            signature=record.signature
        )
        return CreditTopUpResult(
            signature=record.signature,
            amount=amount,
            new_balance=new_balance,
            transaction=record
        )

    def _apply_topup(self, key: AccountKey, micros: int, signature: str) -> float:
        now = self._clock()
        with session_scope(self._session_factory) as db:
            result = db.execute(
                self._where(update(CreditAccount), key)
                .values(
                    balance_micros=CreditAccount.balance_micros + micros,
                    total_purchased_micros=CreditAccount.total_purchased_micros + micros,
                    last_topup_tx=signature,
                    last_topup_micros=micros,
                    last_topup_at=now,
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                wallet_address, service_id, service_type = key
                db.add(CreditAccount(
                    wallet_address=wallet_address,
                    service_id=service_id,
                    service_type=service_type,
                    balance_micros=micros,
                    total_purchased_micros=micros,
                    total_spent_micros=0,
                    last_topup_tx=signature,
                    last_topup_micros=micros,
                    last_topup_at=now,
                    created_at=now,
                    updated_at=now,
                ))
                db.flush()
            balance_micros = self._filter(db.query(CreditAccount.balance_micros), key).scalar()
        return micros_to_usd(balance_micros)

    def spend(
        self,
        wallet_address: str,
        service_id: Optional[str],
        service_type: str,
        amount: float,
        resource_url: Optional[str] = None,
        http_method: str = "POST",
        payment_signature: Optional[str] = None,
        request_id: Optional[str] = None
    ) -> float:
        """
        Deduct ``amount`` USD and record the use.

        Args:
            payment_signature: Wallet signature authorizing this spend. Stored
                as the usage row's payment proof, so it can be used once.
            request_id: Id of the metered request

        Returns:
            New balance in USD

        Raises:
            InvalidAmountError: Amount not positive
            SignatureVerificationError: ``payment_signature`` was already used
            AutoTopupRequiredError: Short, and the account asked to be topped up
            InsufficientCreditsError: Short (balance unchanged)
        """
        micros = require_micros(amount, "Spend amount")
        key = account_key(wallet_address, service_id, service_type)

        with self._locks.hold(key):
            now = self._clock()
            try:
                applied, account = self._deduct(
                    key, micros, now, resource_url, http_method, payment_signature, request_id
                )
            except IntegrityError:
                # Rolled back with the deduction
                raise SignatureVerificationError("Payment signature already used")

        if not applied:
            self._reject_spend(key, amount, account)

        audit.log_credits_spent(
            wallet_address=wallet_address,
            service_id=key[1],
            service_type=service_type,
            amount=amount,
            new_balance=account.balance
        )
        return account.balance

    def _deduct(
        self,
        key: AccountKey,
        micros: int,
        now: datetime,
        resource_url: Optional[str],
        http_method: str,
        payment_signature: Optional[str],
        request_id: Optional[str]
    ) -> Tuple[bool, Optional[CreditAccountView]]:
        wallet_address, service_id, service_type = key
        with session_scope(self._session_factory) as db:
            result = db.execute(
                self._where(update(CreditAccount), key)
                .where(CreditAccount.balance_micros >= micros)
                .values(
                    balance_micros=CreditAccount.balance_micros - micros,
                    total_spent_micros=CreditAccount.total_spent_micros + micros,
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            applied = result.rowcount == 1
            if applied:
                add_usage_record(
                    db,
                    wallet_address=wallet_address,
                    resource_url=resource_url or f"{service_type}/{service_id}",
                    resource_type=RESOURCE_TYPE_FOR_SERVICE.get(service_type, "api_call"),
                    http_method=http_method,
                    amount_micros=micros,
                    kind=UsageKind.CREDIT_SPEND,
                    service_id=service_id or None,
                    payment_proof=payment_signature,
                    request_id=request_id,
                    created_at=now,
                )
            row = self._filter(db.query(CreditAccount), key).one_or_none()
            account = CreditAccountView.from_row(row) if row else None
        return applied, account

    def _reject_spend(self, key: AccountKey, amount: float, account: Optional[CreditAccountView]) -> None:
        if account is None:
            raise InsufficientCreditsError("Credit account not found", {"balance": 0.0, "requested": amount})

        if account.auto_topup_enabled and account.balance < account.auto_topup_threshold:
            logger.info(f"x402: auto top-up required for {key[0]} on {key[2]}/{key[1]}")
            audit.log_auto_topup_required(
                wallet_address=key[0],
                service_id=key[1],
                service_type=key[2],
                balance=account.balance,
                topup_amount=account.auto_topup_amount
            )
            raise AutoTopupRequiredError(
                "Insufficient credits. Auto top-up triggered but requires user action.",
                topup_amount=account.auto_topup_amount
            )

        raise InsufficientCreditsError(
            "Insufficient credits",
            {"balance": account.balance, "requested": amount}
        )

    def enable_auto_topup(
        self,
        wallet_address: str,
        service_id: Optional[str],
        service_type: str,
        threshold: float,
        amount: float
    ) -> bool:
        """
        Turn on auto top-up for an existing account.

        Returns:
            False if the account does not exist
        """
        if threshold is None or threshold < 0:
            raise InvalidAmountError(f"Auto top-up threshold cannot be negative, got {threshold}")
        amount_micros = require_micros(amount, "Auto top-up amount")
        return self._set_auto_topup(
            account_key(wallet_address, service_id, service_type),
            enabled=True,
            threshold_micros=usd_to_micros(threshold),
            amount_micros=amount_micros
        )

    def disable_auto_topup(self, wallet_address: str, service_id: Optional[str], service_type: str) -> bool:
        return self._set_auto_topup(account_key(wallet_address, service_id, service_type), enabled=False)

    def _set_auto_topup(self, key: AccountKey, enabled: bool, **micros: int) -> bool:
        values: Dict[str, Any] = {"auto_topup_enabled": enabled, "updated_at": self._clock()}
        if enabled:
            values["auto_topup_threshold_micros"] = micros["threshold_micros"]
            values["auto_topup_amount_micros"] = micros["amount_micros"]

        with self._locks.hold(key):
            with session_scope(self._session_factory) as db:
                result = db.execute(
                    self._where(update(CreditAccount), key)
                    .values(**values)
                    .execution_options(synchronize_session=False)
                )
                return result.rowcount == 1

    def get_all_credits(self, wallet_address: str) -> List[CreditAccountView]:
        """Every account of ``wallet_address``, most recently updated first."""
        with session_scope(self._session_factory) as db:
            rows = (
                db.query(CreditAccount)
                .filter(CreditAccount.wallet_address == wallet_address)
                .order_by(CreditAccount.updated_at.desc())
                .all()
            )
            return [CreditAccountView.from_row(row) for row in rows]

    def get_credit_history(self, wallet_address: str, limit: int = 50) -> List[Dict[str, Any]]:
        """Recent credit spends of ``wallet_address``."""
        with session_scope(self._session_factory) as db:
            rows = (
                db.query(UsageRecord)
                .filter(
                    UsageRecord.wallet_address == wallet_address,
                    UsageRecord.kind == UsageKind.CREDIT_SPEND.value,
                )
                .order_by(UsageRecord.created_at.desc(), UsageRecord.id.desc())
                .limit(limit)
                .all()
            )
            return [
                {
                    "service_id": row.service_id,
                    "resource_url": row.resource_url,
                    "resource_type": row.resource_type,
                    "http_method": row.http_method,
                    "amount": micros_to_usd(row.amount_micros),
                    "status": row.status,
                    "created_at": row.created_at.isoformat(),
                }
                for row in rows
            ]

    def get_credit_stats(self, wallet_address: str) -> Dict[str, Any]:
        """
        Totals across every account of ``wallet_address``.

        Returns:
            Dict with total_spent, total_purchased, average_spend and transaction_count
        """
        with session_scope(self._session_factory) as db:
            spent_micros, purchased_micros = (
                db.query(
                    func.coalesce(func.sum(CreditAccount.total_spent_micros), 0),
                    func.coalesce(func.sum(CreditAccount.total_purchased_micros), 0),
                )
                .filter(CreditAccount.wallet_address == wallet_address)
                .one()
            )
            count = (
                db.query(func.count(UsageRecord.id))
                .filter(
                    UsageRecord.wallet_address == wallet_address,
                    UsageRecord.kind == UsageKind.CREDIT_SPEND.value,
                    UsageRecord.status == "completed",
                )
                .scalar()
            )

        total_spent = micros_to_usd(int(spent_micros))
        return {
            "total_spent": total_spent,
            "total_purchased": micros_to_usd(int(purchased_micros)),
            "average_spend": total_spent / count if count else 0.0,
            "transaction_count": count,
        }
