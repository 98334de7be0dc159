# app/x402/proof.py
"""
Standalone payment proof verification.

A caller without a session may pay for a single use on-chain and present the
transaction signature as proof. The proof is accepted when the transaction
exists, succeeded, moves at least the required lamports from the caller to
the recipient, and has never been redeemed before.
"""
import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import sessionmaker

from app.core.config import settings
from app.db.models import UsageRecord
from app.db.session import session_scope
from app.x402 import audit
from app.x402.errors import ProofVerificationError
from app.x402.oracle import PriceOracle
from app.x402.rpc import SolanaRpcClient
from app.x402.units import sol_to_lamports, usd_to_micros
from app.x402.usage import UsageKind, add_usage_record

logger = logging.getLogger(__name__)

SYSTEM_PROGRAM = "system"


@dataclass
class VerifiedProof:
    signature: str
    payer: str
    recipient: str
    lamports: int
    required_lamports: int


def transferred_lamports(transaction: Dict[str, Any], recipient: str, source: Optional[str] = None) -> int:
    """Sum of system transfers to ``recipient`` (from ``source`` if given) in a jsonParsed transaction."""
    message = transaction.get("transaction", {}).get("message", {})
    instructions = list(message.get("instructions", []))
    for inner in (transaction.get("meta") or {}).get("innerInstructions") or []:
        instructions.extend(inner.get("instructions", []))

    total = 0
    for instruction in instructions:
        if instruction.get("program") != SYSTEM_PROGRAM:
            continue
        parsed = instruction.get("parsed")
        if not isinstance(parsed, dict) or parsed.get("type") != "transfer":
            continue
        info = parsed.get("info", {})
        if info.get("destination") != recipient:
            continue
        if source is not None and info.get("source") != source:
            continue
        total += int(info.get("lamports", 0))
    return total


class ProofVerifier:
    """Checks and redeems single-use payment proofs."""

    def __init__(
        self,
        rpc: SolanaRpcClient,
        oracle: PriceOracle,
        session_factory: sessionmaker,
        recipient: Optional[str] = None,
        tolerance_percent: Optional[float] = None
    ):
        self._rpc = rpc
        self._oracle = oracle
        self._session_factory = session_factory
        self.recipient = recipient or settings.X402_RECIPIENT_ADDRESS
        self.tolerance_percent = (
            tolerance_percent if tolerance_percent is not None else settings.X402_PROOF_TOLERANCE_PERCENT
        )

    def is_redeemed(self, signature: str) -> bool:
        with session_scope(self._session_factory) as db:
            return db.query(UsageRecord.id).filter(UsageRecord.payment_proof == signature).first() is not None

    def required_lamports(self, amount: float) -> int:
        """Minimum lamports accepted for ``amount`` USD, after the price tolerance."""
        quote = self._oracle.quote(amount)
        return sol_to_lamports(quote.native_amount * (1 - self.tolerance_percent / 100))

    def verify(
        self,
        signature: str,
        amount: float,
        wallet_address: str,
        recipient: Optional[str] = None
    ) -> VerifiedProof:
        """
        Verify that ``signature`` pays ``amount`` USD from ``wallet_address``.

        Raises:
            ProofVerificationError: Unknown, failed, underpaying or already used transaction
            RpcError / EndpointPoolExhaustedError: The ledger could not be queried
        """
        recipient = recipient or self.recipient
        try:
            proof = self._verify(signature, amount, wallet_address, recipient)
        except ProofVerificationError as e:
            logger.warning(f"x402: proof {signature} rejected: {e}")
            audit.log_proof_checked(signature, False, wallet_address=wallet_address, invalid_reason=str(e))
            raise

        audit.log_proof_checked(signature, True, wallet_address=wallet_address)
        return proof

    def _verify(self, signature: str, amount: float, wallet_address: str, recipient: str) -> VerifiedProof:
        if self.is_redeemed(signature):
            raise ProofVerificationError("Payment proof already used")

        transaction = self._rpc.get_transaction(signature)
        if not transaction:
            raise ProofVerificationError("Payment transaction not found")

        error = (transaction.get("meta") or {}).get("err")
        if error is not None:
            raise ProofVerificationError(f"Payment transaction failed: {error}")

        paid = transferred_lamports(transaction, recipient, source=wallet_address)
        if paid == 0:
            raise ProofVerificationError(f"No transfer from {wallet_address} to {recipient} in transaction")

        required = self.required_lamports(amount)
        if paid < required:
            raise ProofVerificationError(
                f"Payment of {paid} lamports is below the required {required}",
                {"paid_lamports": paid, "required_lamports": required}
            )

        return VerifiedProof(
            signature=signature,
            payer=wallet_address,
            recipient=recipient,
            lamports=paid,
            required_lamports=required,
        )

    def redeem(
        self,
        signature: str,
        amount: float,
        wallet_address: str,
        resource_url: str,
        resource_type: str,
        http_method: str,
        service_id: Optional[str] = None,
        recipient: Optional[str] = None,
        request_id: Optional[str] = None
    ) -> VerifiedProof:
        """
        Verify a proof and record the use it pays for, consuming the proof.

        Raises:
            ProofVerificationError: As verify(), or if a concurrent request redeemed it first
        """
        proof = self.verify(signature, amount, wallet_address, recipient)
        try:
            with session_scope(self._session_factory) as db:
                add_usage_record(
                    db,
                    wallet_address=wallet_address,
                    resource_url=resource_url,
                    resource_type=resource_type,
                    http_method=http_method,
                    amount_micros=usd_to_micros(amount),
                    kind=UsageKind.PROOF,
                    service_id=service_id,
                    payment_proof=signature,
                    request_id=request_id,
                )
        except IntegrityError:
            audit.log_proof_checked(signature, False, wallet_address=wallet_address,
                                    invalid_reason="Payment proof already used")
            raise ProofVerificationError("Payment proof already used")
        return proof
