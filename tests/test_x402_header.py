"""
Unit tests for the X-402-Payment header codec.
"""
import pytest
from solders.keypair import Keypair

from app.x402.errors import SignatureVerificationError
from app.x402.header import (
    DEFAULT_CURRENCY,
    X402Header,
    format_x402_header,
    parse_x402_header,
    signing_message,
    verify_signed_header,
)
from app.x402.wallet import KeypairWallet

TOKEN = "ab" * 32
WALLET = "9WzDXwBbmkg8ZTbNMqUxvQRAyrZzDsGYdLVL9zYtAWWM"


class TestParseHeader:
    """Tests for parsing header values."""

    def test_full_session_header(self):
        header = parse_x402_header(
            f"session={TOKEN}; wallet={WALLET}; amount=0.25; currency=USDC; timestamp=1730800000000"
        )

        assert header.session_token == TOKEN
        assert header.wallet_address == WALLET
        assert header.amount == 0.25
        assert header.currency == "USDC"
        assert header.timestamp == 1730800000000
        assert header.payment_proof is None

    def test_proof_header(self):
        header = parse_x402_header(f"proof=5VERv8NMvzbJMEkV8xnrLkEaWRtSz9CosKDYjCJjBRnb; wallet={WALLET}")

        assert header.payment_proof == "5VERv8NMvzbJMEkV8xnrLkEaWRtSz9CosKDYjCJjBRnb"
        assert header.session_token is None

    def test_keys_case_insensitive_and_any_order(self):
        header = parse_x402_header(f"Wallet={WALLET};SESSION={TOKEN}")

        assert header.wallet_address == WALLET
        assert header.session_token == TOKEN

    def test_defaults(self):
        header = parse_x402_header(f"wallet={WALLET}")

        assert header.amount == 0.0
        assert header.currency == DEFAULT_CURRENCY
        assert header.timestamp > 0

    @pytest.mark.parametrize("value", [
        None,
        "",
        f"session={TOKEN}",
        "wallet=",
        f"wallet={WALLET}; amount=lots",
        f"wallet={WALLET}; timestamp=yesterday",
    ])
    def test_rejected(self, value):
        assert parse_x402_header(value) is None

    def test_ignores_junk_segments(self):
        header = parse_x402_header(f"wallet={WALLET};; garbage ; amount=1")

        assert header.amount == 1.0


class TestFormatHeader:
    def test_format_then_parse(self):
        original = X402Header(
            wallet_address=WALLET, amount=0.25, currency="USDC", timestamp=1730800000000, session_token=TOKEN
        )

        value = format_x402_header(original)

        assert value.startswith(f"session={TOKEN}; wallet={WALLET}")
        assert parse_x402_header(value) == original


class TestSignedHeader:
    """Tests for wallet-signed headers."""

    NOW = 1730800000000
    RESOURCE = "credits/api/weather"

    @pytest.fixture
    def signer(self):
        return KeypairWallet(Keypair())

    def signed(self, signer, amount=0.25, timestamp=NOW, resource=RESOURCE, wallet_address=None):
        header = X402Header(wallet_address=wallet_address or signer.address, amount=amount, timestamp=timestamp)
        header.signature = signer.sign_message(signing_message(header, resource))
        return parse_x402_header(format_x402_header(header))

    def verify(self, header, wallet_address, amount=0.25, now=NOW):
        return verify_signed_header(header, self.RESOURCE, wallet_address, amount, max_age_seconds=300, now=now)

    def test_message_binds_every_field(self):
        base = X402Header(wallet_address=WALLET, amount=0.25, timestamp=self.NOW)
        message = signing_message(base, self.RESOURCE)

        assert message == f"x402:{self.RESOURCE}:{WALLET}:250000:USDC:{self.NOW}".encode("utf-8")
        assert signing_message(base, "credits/api/other") != message

    def test_valid(self, signer):
        header = self.signed(signer)

        assert self.verify(header, signer.address) is header

    def test_within_clock_skew(self, signer):
        assert self.verify(self.signed(signer), signer.address, now=self.NOW + 299 * 1000)

    def test_missing_header(self, signer):
        with pytest.raises(SignatureVerificationError, match="header is required"):
            self.verify(None, signer.address)

    def test_unsigned(self, signer):
        header = parse_x402_header(f"wallet={signer.address}; amount=0.25; timestamp={self.NOW}")

        with pytest.raises(SignatureVerificationError, match="signature is required"):
            self.verify(header, signer.address)

    def test_other_wallet(self, signer):
        with pytest.raises(SignatureVerificationError, match="wallet"):
            self.verify(self.signed(signer), WALLET)

    def test_other_amount(self, signer):
        with pytest.raises(SignatureVerificationError, match="amount") as exc_info:
            self.verify(self.signed(signer, amount=0.01), signer.address, amount=0.25)

        assert exc_info.value.context == {"signed_amount": 0.01, "requested": 0.25}

    def test_expired(self, signer):
        with pytest.raises(SignatureVerificationError, match="expired"):
            self.verify(self.signed(signer), signer.address, now=self.NOW + 301 * 1000)

    def test_other_resource(self, signer):
        with pytest.raises(SignatureVerificationError, match="Invalid"):
            self.verify(self.signed(signer, resource="credits/api/other"), signer.address)

    def test_signed_by_someone_else(self, signer):
        intruder = KeypairWallet(Keypair())
        header = self.signed(intruder, wallet_address=signer.address)

        with pytest.raises(SignatureVerificationError, match="Invalid"):
            self.verify(header, signer.address)
