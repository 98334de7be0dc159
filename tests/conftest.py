# tests/conftest.py
"""
Shared fixtures for the payment engine tests.

Every test gets its own SQLite file database and its own audit log, and no
test talks to a real RPC node or price API.
"""
from datetime import datetime, timedelta
from itertools import count
from unittest.mock import MagicMock

import pytest

from app.core.config import settings
from app.db.session import create_db_engine, init_db, make_session_factory
from app.x402.errors import PaymentRejectedError
from app.x402.oracle import PriceOracle
from app.x402.transactions import TransactionLogStore

PAYER_ADDRESS = "9WzDXwBbmkg8ZTbNMqUxvQRAyrZzDsGYdLVL9zYtAWWM"
RECIPIENT_ADDRESS = "FbRDjtZRRtLmjok6NvzsxSey4gDAoTmr8RacPiaRZEWX"

# 2.00 USD at 128 USD/SOL is exactly 0.015625 SOL = 15,625,000 lamports
TEST_SOL_USD_RATE = 128.0


class FakeWallet:
    """PayerWallet test double."""

    def __init__(self, address: str = PAYER_ADDRESS, reject: bool = False):
        self._address = address
        self.reject = reject
        self.signed = []
        self.references = []

    @property
    def address(self) -> str:
        return self._address

    def sign_transfer(self, recipient: str, lamports: int, recent_blockhash: str, reference=None) -> bytes:
        if self.reject:
            raise PaymentRejectedError("User rejected the request")
        self.signed.append((recipient, lamports, recent_blockhash))
        self.references.append(reference)
        return b"signed-transfer"


class FakeClock:
    """Settable clock for time-dependent components."""

    def __init__(self, now: datetime = datetime(2025, 11, 5, 12, 0, 0)):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


@pytest.fixture(autouse=True)
def audit_log(tmp_path, monkeypatch):
    """Send audit events to a per-test file."""
    path = tmp_path / "audit" / "x402_audit.jsonl"
    monkeypatch.setattr(settings, "X402_AUDIT_LOG_PATH", str(path))
    return path


@pytest.fixture
def engine(tmp_path):
    engine = create_db_engine(f"sqlite:///{tmp_path / 'x402_test.db'}")
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return make_session_factory(engine)


@pytest.fixture
def store(session_factory):
    return TransactionLogStore(session_factory)


@pytest.fixture
def oracle():
    """Oracle with no live sources: always quotes the fixed fallback rate."""
    return PriceOracle(rpc=None, http_sources=[], fallback_rate=TEST_SOL_USD_RATE)


@pytest.fixture
def wallet():
    return FakeWallet()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def mock_rpc():
    """RPC client double with a funded payer and unique signatures."""
    rpc = MagicMock()
    signatures = count(1)
    rpc.get_balance.return_value = 10 * 10 ** 9
    rpc.get_latest_blockhash.return_value = {
        "blockhash": "EkSnNWid2cvwEVnVx9aBqawnmiCNiDgp3gUdkDPTKN1N",
        "lastValidBlockHeight": 1000,
    }
    rpc.send_transaction.side_effect = lambda signed, skip_preflight=False: f"sig{next(signatures):04d}"
    return rpc


@pytest.fixture
def rejecting_wallet():
    return FakeWallet(reject=True)


@pytest.fixture
def recipient():
    return RECIPIENT_ADDRESS
