# app/x402/oracle.py
"""
SOL/USD price oracle.

Converts between the reference unit (USD) and the settlement asset (SOL).
Sources are tried in order of trust:
1. Cached rate younger than the TTL (30s by default)
2. Pyth SOL/USD price account, read on-chain through the RPC failover pool
3. Off-chain HTTP sources (CoinGecko, then Coinbase)
4. The last cached rate even if stale
5. A fixed conservative estimate

Every quote records which source produced its rate. The oracle never raises:
it degrades source quality rather than failing the caller.

Configuration is loaded from app/core/config.py:
- PYTH_SOL_USD_FEED: Pyth price account address
- X402_PRICE_CACHE_TTL_SECONDS: Cache lifetime
- X402_FALLBACK_SOL_USD_RATE: Rate used when nothing else is available
- X402_PRICE_MIN_PLAUSIBLE / X402_PRICE_MAX_PLAUSIBLE: Sanity bounds
"""
import logging
import struct
import threading
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, List, Optional, Tuple

import requests

from app.core.config import settings
from app.x402.rpc import SolanaRpcClient

logger = logging.getLogger(__name__)

# Pyth price account layout: int64 price at 208, int32 exponent at 220
PYTH_PRICE_OFFSET = 208
PYTH_EXPONENT_OFFSET = 220

SOURCE_PYTH = "pyth"
SOURCE_FALLBACK = "fallback"
STALE_PREFIX = "stale:"


def _coingecko_price(payload: Any) -> Optional[float]:
    return payload.get("solana", {}).get("usd")


def _coinbase_price(payload: Any) -> Optional[float]:
    rate = payload.get("data", {}).get("rates", {}).get("USD")
    return float(rate) if rate is not None else None


# Ranked off-chain sources: (name, url, extractor)
HTTP_PRICE_SOURCES: List[Tuple[str, str, Callable[[Any], Optional[float]]]] = [
    ("coingecko", "https://api.coingecko.com/api/v3/simple/price?ids=solana&vs_currencies=usd", _coingecko_price),
    ("coinbase", "https://api.coinbase.com/v2/exchange-rates?currency=SOL", _coinbase_price),
]


@dataclass
class PriceData:
    """A SOL/USD rate and where it came from."""
    sol_usd: float
    timestamp: float
    source: str


@dataclass
class PriceQuote:
    """
    Conversion between USD and SOL at a single rate.

    rate is USD per 1 SOL, so native_amount = reference_amount / rate.
    """
    reference_amount: float
    native_amount: float
    rate: float
    as_of: datetime
    source: str

    def to_dict(self) -> dict:
        return {
            "reference_amount": self.reference_amount,
            "native_amount": self.native_amount,
            "rate": self.rate,
            "as_of": self.as_of.isoformat(),
            "source": self.source,
        }


def parse_pyth_price(data: bytes) -> Optional[float]:
    """Decode the aggregate price from a Pyth price account, or None if too short."""
    if data is None or len(data) < PYTH_EXPONENT_OFFSET + 4:
        return None
    (price,) = struct.unpack_from("<q", data, PYTH_PRICE_OFFSET)
    (exponent,) = struct.unpack_from("<i", data, PYTH_EXPONENT_OFFSET)
    return price * (10 ** exponent)


class PriceOracle:
    """SOL/USD oracle with short-lived caching and graceful degradation."""

    def __init__(
        self,
        rpc: Optional[SolanaRpcClient] = None,
        cache_ttl_seconds: Optional[float] = None,
        fallback_rate: Optional[float] = None,
        http_sources: Optional[List[Tuple[str, str, Callable[[Any], Optional[float]]]]] = None,
        feed_address: Optional[str] = None,
        http_timeout: float = 10.0
    ):
        """
        Initialize the oracle.

        Args:
            rpc: RPC client for the on-chain source. If None, the on-chain source is skipped.
            cache_ttl_seconds: Cache lifetime. Uses config if not provided.
            fallback_rate: Conservative estimate. Uses config if not provided.
            http_sources: Ranked off-chain sources. Defaults to CoinGecko then Coinbase.
            feed_address: Pyth price account. Uses config if not provided.
            http_timeout: Timeout for off-chain requests in seconds.
        """
        self._rpc = rpc
        self._ttl = cache_ttl_seconds if cache_ttl_seconds is not None else settings.X402_PRICE_CACHE_TTL_SECONDS
        self._fallback_rate = fallback_rate if fallback_rate is not None else settings.X402_FALLBACK_SOL_USD_RATE
        self._http_sources = http_sources if http_sources is not None else HTTP_PRICE_SOURCES
        self._feed_address = feed_address or settings.PYTH_SOL_USD_FEED
        self._http_timeout = http_timeout
        self._cached: Optional[PriceData] = None
        self._lock = threading.Lock()

    def is_plausible(self, price: Optional[float]) -> bool:
        """Reject zero, negative, non-numeric and absurd values."""
        if price is None:
            return False
        try:
            value = float(price)
        except (TypeError, ValueError):
            return False
        return settings.X402_PRICE_MIN_PLAUSIBLE < value < settings.X402_PRICE_MAX_PLAUSIBLE

    def _fetch_pyth_price(self) -> Optional[float]:
        if self._rpc is None:
            return None
        data = self._rpc.get_account_data(self._feed_address)
        price = parse_pyth_price(data)
        if not self.is_plausible(price):
            logger.warning(f"Pyth price {price} rejected as implausible")
            return None
        return float(price)

    def _fetch_http_price(self, name: str, url: str, extract: Callable[[Any], Optional[float]]) -> Optional[float]:
        response = requests.get(url, timeout=self._http_timeout)
        response.raise_for_status()
        price = extract(response.json())
        if not self.is_plausible(price):
            logger.warning(f"{name} price {price} rejected as implausible")
            return None
        return float(price)

    def _store(self, price: float, source: str) -> PriceData:
        data = PriceData(sol_usd=price, timestamp=time.time(), source=source)
        with self._lock:
            self._cached = data
        return data

    def get_price(self) -> PriceData:
        """
        Current SOL/USD rate with provenance.

        Returns:
            PriceData from the best source available right now
        """
        with self._lock:
            cached = self._cached

        if cached is not None and time.time() - cached.timestamp < self._ttl:
            logger.debug(f"Using cached SOL price: {cached.sol_usd} ({cached.source})")
            return cached

        try:
            price = self._fetch_pyth_price()
            if price is not None:
                return self._store(price, SOURCE_PYTH)
        except Exception as e:
            logger.warning(f"Pyth price feed failed, trying fallbacks: {e}")

        for name, url, extract in self._http_sources:
            try:
                price = self._fetch_http_price(name, url, extract)
                if price is not None:
                    return self._store(price, name)
            except Exception as e:
                logger.warning(f"{name} price failed: {e}")

        if cached is not None:
            logger.warning(f"All price feeds failed, using stale cached price from {cached.source}")
            source = cached.source if cached.source.startswith(STALE_PREFIX) else f"{STALE_PREFIX}{cached.source}"
            return PriceData(sol_usd=cached.sol_usd, timestamp=cached.timestamp, source=source)

        logger.warning(f"All price feeds failed, using fallback estimate {self._fallback_rate}")
        return PriceData(sol_usd=self._fallback_rate, timestamp=time.time(), source=SOURCE_FALLBACK)

    def get_rate(self) -> float:
        """USD per 1 SOL."""
        return self.get_price().sol_usd

    def quote(self, reference_amount: float) -> PriceQuote:
        """Quote ``reference_amount`` USD in SOL."""
        return self.usd_to_native(reference_amount)

    def usd_to_native(self, usd_amount: float) -> PriceQuote:
        price = self.get_price()
        return PriceQuote(
            reference_amount=usd_amount,
            native_amount=usd_amount / price.sol_usd,
            rate=price.sol_usd,
            as_of=datetime.fromtimestamp(price.timestamp, tz=timezone.utc),
            source=price.source,
        )

    def native_to_usd(self, sol_amount: float) -> PriceQuote:
        price = self.get_price()
        return PriceQuote(
            reference_amount=sol_amount * price.sol_usd,
            native_amount=sol_amount,
            rate=price.sol_usd,
            as_of=datetime.fromtimestamp(price.timestamp, tz=timezone.utc),
            source=price.source,
        )

    def get_cached_price(self) -> Optional[PriceData]:
        with self._lock:
            return self._cached

    def clear_cache(self) -> None:
        """Clear the price cache (useful for testing)."""
        with self._lock:
            self._cached = None
