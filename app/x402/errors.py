# app/x402/errors.py
"""
Typed errors raised by the payment engine.

Every error carries a stable ``code`` so the HTTP layer can map it to a
response without string matching. Oracle degradation has no error type:
the price oracle never raises.
"""
from typing import Any, Dict, List, Optional


class X402Error(Exception):
    """Base class for payment engine errors."""

    code = "X402_ERROR"

    def __init__(self, message: str, context: Optional[Dict[str, Any]] = None):
        self.message = message
        self.context = context or {}
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        return {"error": self.message, "code": self.code, **self.context}


class InvalidAmountError(X402Error, ValueError):
    code = "INVALID_AMOUNT"


# --- Settlement ledger / RPC ---

class RpcError(X402Error):
    """The RPC node answered with a definitive error."""

    code = "RPC_ERROR"

    def __init__(self, message: str, rpc_code: Optional[int] = None, context: Optional[Dict[str, Any]] = None):
        self.rpc_code = rpc_code
        super().__init__(message, context)


class RpcTransportError(RpcError):
    """Transient transport or node health failure; safe to retry elsewhere."""

    code = "RPC_TRANSPORT_ERROR"


class EndpointPoolExhaustedError(X402Error):
    """Every endpoint in the failover pool failed."""

    code = "RPC_UNAVAILABLE"

    def __init__(self, errors: List[Exception]):
        self.errors = list(errors)
        summary = "; ".join(str(e) for e in self.errors) or "no endpoints configured"
        super().__init__(f"All RPC endpoints failed: {summary}")


# --- Payment submission ---

class PaymentError(X402Error):
    code = "PAYMENT_FAILED"


class PaymentRejectedError(PaymentError):
    """The payer declined to sign the transfer."""

    code = "PAYMENT_REJECTED"


class InsufficientFundsError(PaymentError):
    """The payer does not hold enough native balance for amount plus fees."""

    code = "INSUFFICIENT_FUNDS"


class SubmissionError(PaymentError):
    code = "SUBMISSION_FAILED"


# --- Session policy ---

class SessionError(X402Error):
    code = "SESSION_ERROR"


class SessionNotFoundError(SessionError):
    code = "SESSION_NOT_FOUND"


class SessionInactiveError(SessionError):
    code = "SESSION_INACTIVE"

    def __init__(self, status: str):
        self.status = status
        super().__init__(f"Session is {status}", {"status": status})


class SessionExpiredError(SessionError):
    code = "SESSION_EXPIRED"


class InsufficientSessionBalanceError(SessionError):
    code = "INSUFFICIENT_BALANCE"


class ResourceMismatchError(SessionError):
    code = "RESOURCE_MISMATCH"


# --- Credits ---

class InsufficientCreditsError(X402Error):
    code = "INSUFFICIENT_CREDITS"


class AutoTopupRequiredError(InsufficientCreditsError):
    """Balance is below the auto top-up threshold; the payer must approve a top-up."""

    code = "AUTO_TOPUP_REQUIRED"

    def __init__(self, message: str, topup_amount: float):
        self.topup_amount = topup_amount
        super().__init__(message)
        self.context["topup_amount"] = topup_amount


# --- Proofs ---

class ProofVerificationError(X402Error):
    """A payment proof did not match the expected recipient or amount."""

    code = "PROOF_INVALID"


class SignatureVerificationError(X402Error):
    """A request was not signed by the wallet it claims to spend from."""

    code = "SIGNATURE_INVALID"


def http_status_for(error: X402Error) -> int:
    """HTTP status used when ``error`` reaches a client."""
    if isinstance(error, SessionNotFoundError):
        return 404
    if isinstance(error, SignatureVerificationError):
        return 401
    if isinstance(error, InvalidAmountError):
        return 400
    if isinstance(error, EndpointPoolExhaustedError):
        return 503
    if isinstance(error, (SessionError, InsufficientCreditsError, PaymentError, ProofVerificationError)):
        return 402
    if isinstance(error, RpcError):
        return 502
    return 500
