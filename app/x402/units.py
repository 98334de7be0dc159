# app/x402/units.py
"""
Unit conversion for reference (USD) and native (SOL) amounts.

Reference amounts are stored as integer micro-USD so that balance arithmetic
in the database is exact. Native amounts travel on the wire as lamports.
"""
import math
from datetime import datetime, timezone
from typing import Optional

from app.x402.errors import InvalidAmountError

# Conversion constants
MICROS_PER_USD = 10 ** 6  # 6 decimals, same precision as numeric(18, 6)
LAMPORTS_PER_SOL = 10 ** 9  # 1 SOL = 10^9 lamports


def usd_to_micros(usd: float) -> int:
    """Convert a USD amount to integer micro-USD (rounded to nearest)."""
    return int(round(float(usd) * MICROS_PER_USD))


def require_micros(amount: Optional[float], label: str = "Amount") -> int:
    """
    Micro-USD value of a positive amount.

    Raises InvalidAmountError when the amount is missing, not positive, or
    rounds to zero micro-USD, so no caller can move a zero-valued charge.
    """
    if amount is None or not amount > 0:
        raise InvalidAmountError(f"{label} must be positive, got {amount}")
    micros = usd_to_micros(amount)
    if micros <= 0:
        raise InvalidAmountError(f"{label} {amount} is below the smallest unit of 0.000001 USD")
    return micros


def micros_to_usd(micros: int) -> float:
    """Convert integer micro-USD to a USD float."""
    return (micros or 0) / MICROS_PER_USD


def sol_to_lamports(sol: float) -> int:
    """Convert SOL to lamports, rounding down like a wallet transfer does."""
    return int(math.floor(sol * LAMPORTS_PER_SOL))


def lamports_to_sol(lamports: int) -> float:
    """Convert lamports to SOL."""
    return lamports / LAMPORTS_PER_SOL


def utcnow() -> datetime:
    """Naive UTC timestamp, the form stored in every DateTime column."""
    return datetime.now(timezone.utc).replace(tzinfo=None)
