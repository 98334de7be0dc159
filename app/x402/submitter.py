# app/x402/submitter.py
"""
Transaction submitter.

Turns a USD amount into a signed SOL transfer to the configured recipient
and hands it to the ledger. A TransactionRecord is written only after the
ledger accepted the transaction; any earlier failure leaves no trace in the
transaction log (only in the audit log). The submitter never decides that a
payment is confirmed: that is the confirmation monitor's job.
"""
import logging
import uuid
from typing import Any, Dict, Optional

from sqlalchemy.exc import IntegrityError

from app.core.config import settings
from app.x402 import audit
from app.x402.errors import (
    EndpointPoolExhaustedError,
    InsufficientFundsError,
    InvalidAmountError,
    PaymentError,
    RpcError,
    SubmissionError,
)
from app.x402.monitor import ConfirmationMonitor
from app.x402.oracle import PriceOracle
from app.x402.rpc import SolanaRpcClient
from app.x402.transactions import TransactionKind, TransactionLogStore, TransactionRecord
from app.x402.units import lamports_to_sol, require_micros, sol_to_lamports
from app.x402.wallet import PayerWallet

logger = logging.getLogger(__name__)

# Ledger answers that mean the payer cannot cover the transfer
INSUFFICIENT_FUNDS_MARKERS = (
    "insufficient funds",
    "insufficient lamports",
    "no record of a prior credit",
)


def is_insufficient_funds(error: RpcError) -> bool:
    message = str(error).lower()
    return any(marker in message for marker in INSUFFICIENT_FUNDS_MARKERS)


class TransactionSubmitter:
    """Pays USD-denominated amounts in SOL."""

    def __init__(
        self,
        rpc: SolanaRpcClient,
        oracle: PriceOracle,
        store: TransactionLogStore,
        monitor: Optional[ConfirmationMonitor] = None,
        recipient: Optional[str] = None,
        fee_lamports: Optional[int] = None
    ):
        self._rpc = rpc
        self._oracle = oracle
        self._store = store
        self._monitor = monitor
        self.recipient = recipient or settings.X402_RECIPIENT_ADDRESS
        self.fee_lamports = fee_lamports if fee_lamports is not None else settings.X402_ESTIMATED_FEE_LAMPORTS

    def pay(
        self,
        payer: PayerWallet,
        reference_amount: float,
        kind: TransactionKind,
        metadata: Optional[Dict[str, Any]] = None
    ) -> TransactionRecord:
        """
        Pay ``reference_amount`` USD from ``payer`` to the recipient.

        Args:
            payer: Wallet that signs the transfer
            reference_amount: Amount in USD, must be positive
            kind: Why the payment is made (stored on the record)
            metadata: Extra context stored on the record

        Returns:
            The pending TransactionRecord

        Raises:
            InvalidAmountError: Amount not positive or below one lamport
            InsufficientFundsError: Payer balance below amount plus fee
            PaymentRejectedError: Payer declined to sign
            SubmissionError: Ledger unreachable or transaction refused
        """
        require_micros(reference_amount, "Payment amount")

        wallet_address = payer.address
        quote = self._oracle.quote(reference_amount)
        lamports = sol_to_lamports(quote.native_amount)
        if lamports <= 0:
            raise InvalidAmountError(f"Payment amount {reference_amount} USD is below one lamport")

        logger.info(
            f"x402: paying {reference_amount} USD = {quote.native_amount:.9f} SOL "
            f"at {quote.rate:.2f} USD/SOL ({quote.source}) from {wallet_address}"
        )

        try:
            signature = self._submit(payer, lamports)
        except PaymentError as e:
            audit.log_payment_failed(
                reason=str(e),
                stage=e.code,
                wallet_address=wallet_address,
                amount_usd=reference_amount
            )
            raise

        try:
            record = self._store.record_transaction(
                signature=signature,
                wallet_address=wallet_address,
                kind=kind,
                amount_lamports=lamports,
                amount_sol=lamports_to_sol(lamports),
                amount_usd=reference_amount,
                conversion_rate=quote.rate,
                rate_source=quote.source,
                recipient_address=self.recipient,
                metadata=metadata,
            )
        except IntegrityError:
            # The ledger handed back a signature we already logged: nothing new was paid
            error = SubmissionError(
                f"Duplicate transaction signature {signature}",
                {"signature": signature}
            )
            audit.log_payment_failed(
                reason=str(error),
                stage=error.code,
                wallet_address=wallet_address,
                amount_usd=reference_amount
            )
            raise error
        if self._monitor is not None:
            self._monitor.register(signature)

        audit.log_payment_submitted(
            wallet_address=wallet_address,
            signature=signature,
            kind=kind.value,
            amount_usd=reference_amount,
            amount_lamports=lamports,
            conversion_rate=quote.rate,
            rate_source=quote.source
        )
        return record

    def _submit(self, payer: PayerWallet, lamports: int) -> str:
        required = lamports + self.fee_lamports
        try:
            balance = self._rpc.get_balance(payer.address)
        except (RpcError, EndpointPoolExhaustedError) as e:
            raise SubmissionError(f"Could not read payer balance: {e}")

        if balance < required:
            raise InsufficientFundsError(
                f"Insufficient SOL balance: have {lamports_to_sol(balance):.9f}, "
                f"need {lamports_to_sol(required):.9f}",
                {"balance_lamports": balance, "required_lamports": required}
            )

        try:
            blockhash = self._rpc.get_latest_blockhash()["blockhash"]
        except (RpcError, EndpointPoolExhaustedError) as e:
            raise SubmissionError(f"Could not fetch a recent blockhash: {e}")

        try:
            signed = payer.sign_transfer(self.recipient, lamports, blockhash, reference=uuid.uuid4().hex)
        except ValueError as e:
            raise SubmissionError(f"Could not build transfer: {e}")

        try:
            return self._rpc.send_transaction(signed)
        except EndpointPoolExhaustedError as e:
            raise SubmissionError(f"Transaction submission failed on every endpoint: {e}")
        except RpcError as e:
            if is_insufficient_funds(e):
                raise InsufficientFundsError(f"Ledger rejected transfer: {e}")
            raise SubmissionError(f"Ledger rejected transfer: {e}")
