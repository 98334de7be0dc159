# app/x402/header.py
"""
X-402-Payment header codec.

Format (keys are case-insensitive, order does not matter):

    session=<token>; wallet=<address>; amount=<usd>; currency=<unit>;
    timestamp=<epoch ms>[; proof=<signature>][; signature=<sig>]

``wallet`` is required. Missing ``amount`` reads as 0, ``currency`` as USDC
and ``timestamp`` as the current time.

``signature`` is the wallet's base58 ed25519 signature of signing_message(),
which binds the wallet, amount, currency and timestamp to one resource.
"""
import logging
import time
from dataclasses import dataclass
from typing import Optional

from app.core.config import settings
from app.x402.errors import SignatureVerificationError
from app.x402.units import usd_to_micros
from app.x402.wallet import verify_wallet_signature

logger = logging.getLogger(__name__)

X402_PAYMENT_HEADER = "X-402-Payment"
X402_PAYMENT_RESPONSE_HEADER = "X-402-Payment-Response"
DEFAULT_CURRENCY = "USDC"


@dataclass
class X402Header:
    wallet_address: str
    amount: float = 0.0
    currency: str = DEFAULT_CURRENCY
    timestamp: int = 0
    session_token: Optional[str] = None
    payment_proof: Optional[str] = None
    signature: Optional[str] = None


def now_ms() -> int:
    return int(time.time() * 1000)


def parse_x402_header(value: Optional[str]) -> Optional[X402Header]:
    """
    Parse an X-402-Payment header value.

    Returns:
        X402Header, or None if the value is empty, malformed or has no wallet
    """
    if not value:
        return None

    fields = {}
    for part in value.split(";"):
        part = part.strip()
        if not part:
            continue
        key, sep, raw = part.partition("=")
        if not sep:
            continue
        fields[key.strip().lower()] = raw.strip()

    wallet = fields.get("wallet")
    if not wallet:
        logger.debug("X-402-Payment header without wallet")
        return None

    try:
        amount = float(fields["amount"]) if fields.get("amount") else 0.0
        timestamp = int(fields["timestamp"]) if fields.get("timestamp") else now_ms()
    except ValueError as e:
        logger.warning(f"Malformed X-402-Payment header: {e}")
        return None

    return X402Header(
        wallet_address=wallet,
        amount=amount,
        currency=fields.get("currency") or DEFAULT_CURRENCY,
        timestamp=timestamp,
        session_token=fields.get("session") or None,
        payment_proof=fields.get("proof") or None,
        signature=fields.get("signature") or None,
    )


def format_x402_header(header: X402Header) -> str:
    parts = []
    if header.session_token:
        parts.append(f"session={header.session_token}")
    if header.payment_proof:
        parts.append(f"proof={header.payment_proof}")
    parts.append(f"wallet={header.wallet_address}")
    parts.append(f"amount={header.amount}")
    parts.append(f"currency={header.currency}")
    parts.append(f"timestamp={header.timestamp or now_ms()}")
    if header.signature:
        parts.append(f"signature={header.signature}")
    return "; ".join(parts)


def signing_message(header: X402Header, resource: str) -> bytes:
    """Canonical bytes a wallet signs to authorize ``header`` for ``resource``."""
    return (
        f"x402:{resource}:{header.wallet_address}:{usd_to_micros(header.amount)}:"
        f"{header.currency}:{header.timestamp}"
    ).encode("utf-8")


def verify_signed_header(
    header: Optional[X402Header],
    resource: str,
    wallet_address: str,
    amount: float,
    max_age_seconds: Optional[int] = None,
    now: Optional[int] = None
) -> X402Header:
    """
    Check that ``wallet_address`` itself authorized paying ``amount`` for ``resource``.

    Args:
        header: Parsed X-402-Payment header
        resource: What is being paid for; part of the signed message
        wallet_address: Wallet the request spends from
        amount: USD amount the request spends
        max_age_seconds: Allowed clock distance of the header timestamp.
            Uses X402_SIGNATURE_MAX_AGE_SECONDS if not provided.
        now: Current epoch milliseconds

    Raises:
        SignatureVerificationError: Header missing, unsigned, stale, for another
            wallet or amount, or not signed by ``wallet_address``
    """
    if header is None:
        raise SignatureVerificationError(f"{X402_PAYMENT_HEADER} header is required")
    if not header.signature:
        raise SignatureVerificationError("Request signature is required")
    if header.wallet_address != wallet_address:
        raise SignatureVerificationError("Signed wallet does not match the request")
    if usd_to_micros(header.amount) != usd_to_micros(amount):
        raise SignatureVerificationError(
            "Signed amount does not match the request",
            {"signed_amount": header.amount, "requested": amount}
        )

    max_age = max_age_seconds if max_age_seconds is not None else settings.X402_SIGNATURE_MAX_AGE_SECONDS
    now = now if now is not None else now_ms()
    if abs(now - header.timestamp) > max_age * 1000:
        raise SignatureVerificationError("Request signature expired")

    if not verify_wallet_signature(wallet_address, signing_message(header, resource), header.signature):
        raise SignatureVerificationError("Invalid request signature")
    return header
