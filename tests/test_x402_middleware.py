# tests/test_x402_middleware.py
"""
Unit tests for x402 middleware.
"""
import base64
import json
import pytest
from types import SimpleNamespace
from unittest.mock import MagicMock, patch

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from fastapi.testclient import TestClient

from app.db.models import UsageRecord
from app.db.session import session_scope
from app.x402 import audit
from app.x402.analytics import UsageAggregator
from app.x402.catalog import ServiceCatalog, ServiceConfig
from app.x402.errors import EndpointPoolExhaustedError, RpcTransportError
from app.x402.middleware import (
    X402_VERSION,
    X402Middleware,
    create_402_response,
    encode_payment_response,
    get_client_ip,
)
from app.x402.header import X402_PAYMENT_HEADER, X402_PAYMENT_RESPONSE_HEADER
from app.x402.proof import ProofVerifier
from app.x402.sessions import PaymentSessionManager
from app.x402.units import utcnow

OWNER = "FbRDjtZRRtLmjok6NvzsxSey4gDAoTmr8RacPiaRZEWX"
SIGNATURE = "5VERv8NMvzbJMEkV8xnrLkEaWRtSz9CosKDYjCJjBRnb"


def decode_payment_response(value: str) -> dict:
    return json.loads(base64.b64decode(value).decode("utf-8"))


@pytest.fixture
def ledger_rpc():
    return MagicMock()


@pytest.fixture
def container(session_factory, oracle, ledger_rpc):
    catalog = ServiceCatalog()
    catalog.register(
        ServiceConfig(
            service_id="weather", service_type="api", service_name="Weather API",
            owner_wallet=OWNER, base_price=0.25
        ),
        routes=[("GET", "/api/v1/weather/*")]
    )
    catalog.register(
        ServiceConfig(
            service_id="free", service_type="api", service_name="Free API",
            owner_wallet=OWNER, base_price=0.0
        ),
        routes=[("GET", "/api/v1/free/*")]
    )
    return SimpleNamespace(
        session_factory=session_factory,
        catalog=catalog,
        oracle=oracle,
        sessions=PaymentSessionManager(session_factory),
        proofs=ProofVerifier(ledger_rpc, oracle, session_factory, recipient=OWNER, tolerance_percent=2.0),
        submitter=SimpleNamespace(recipient=OWNER),
    )


def create_test_app(container):
    """Create a minimal test app with the middleware in front of metered and free routes."""
    app = FastAPI()
    app.add_middleware(X402Middleware, container=container)

    @app.get("/api/v1/weather/forecast")
    def forecast():
        return {"forecast": "sunny"}

    @app.get("/api/v1/weather/broken")
    def broken():
        return JSONResponse(status_code=503, content={"error": "upstream down"})

    @app.get("/api/v1/weather/crash")
    def crash():
        raise RuntimeError("boom")

    @app.get("/api/v1/free/ping")
    def ping():
        return {"pong": True}

    @app.get("/health")
    def health():
        return {"status": "ok"}

    return app


@pytest.fixture
def client(container):
    return TestClient(create_test_app(container))


@pytest.fixture
def session_token(container, wallet):
    return container.sessions.open(wallet, 10.0, "api/weather/*", execute_payment=False).session_token


def session_header(token, wallet_address):
    return {X402_PAYMENT_HEADER: f"session={token}; wallet={wallet_address}; amount=0.25; currency=USDC"}


class TestGetClientIP:
    """Test client IP extraction."""

    def test_forwarded_for_header(self):
        """Extract IP from X-Forwarded-For header."""
        request = MagicMock(spec=Request)
        request.headers = {"X-Forwarded-For": "203.0.113.50, 70.41.3.18"}
        request.client = None

        assert get_client_ip(request) == "203.0.113.50"

    def test_real_ip_header(self):
        """Extract IP from X-Real-IP header."""
        request = MagicMock(spec=Request)
        request.headers = {"X-Real-IP": "198.51.100.7"}
        request.client = None

        assert get_client_ip(request) == "198.51.100.7"

    def test_unknown(self):
        """No headers and no client means unknown."""
        request = MagicMock(spec=Request)
        request.headers = {}
        request.client = None

        assert get_client_ip(request) == "unknown"


class TestResponseHelpers:
    """Test 402 body and payment response encoding."""

    def test_402_body(self):
        """402 body lists what the client must pay."""
        response = create_402_response({"amount": 0.25}, error_message="Payment required")
        body = json.loads(response.body)

        assert response.status_code == 402
        assert body["x402Version"] == X402_VERSION
        assert body["accepts"] == [{"amount": 0.25}]
        assert body["code"] == "PAYMENT_REQUIRED"

    def test_encode_payment_response(self):
        """Payment response header is base64 JSON."""
        encoded = encode_payment_response({"mode": "session", "amount": 0.25})

        assert decode_payment_response(encoded) == {"mode": "session", "amount": 0.25}

    def test_installed_x402_has_encoding_module(self):
        """The pinned x402 release still ships the encoder the response header uses."""
        from x402.encoding import safe_base64_encode

        assert base64.b64decode(safe_base64_encode(b'{"a": 1}')) == b'{"a": 1}'


class TestPassThrough:
    """Requests that are not metered pass through untouched."""

    def test_unmetered_route(self, client):
        """Routes not in the catalog need no payment."""
        response = client.get("/health")

        assert response.status_code == 200
        assert X402_PAYMENT_RESPONSE_HEADER not in response.headers

    def test_free_service(self, client):
        """A service priced at zero is not charged."""
        assert client.get("/api/v1/free/ping").status_code == 200

    @patch("app.x402.middleware.settings")
    def test_disabled(self, mock_settings, client):
        """X402_ENABLED=false disables enforcement."""
        mock_settings.X402_ENABLED = False

        assert client.get("/api/v1/weather/forecast").status_code == 200


class TestPaymentRequired:
    """Metered requests without usable payment get 402."""

    def test_missing_header(self, client):
        """No X-402-Payment header returns 402 with requirements."""
        response = client.get("/api/v1/weather/forecast")
        body = response.json()

        assert response.status_code == 402
        requirement = body["accepts"][0]
        assert requirement["amount"] == 0.25
        assert requirement["pay_to"] == OWNER
        assert requirement["resource_pattern"] == "api/weather/*"
        assert requirement["amount_sol"] == pytest.approx(0.25 / 128.0)

    def test_header_without_session_or_proof(self, client, wallet):
        """A header naming only a wallet still needs a session or proof."""
        response = client.get("/api/v1/weather/forecast", headers={X402_PAYMENT_HEADER: f"wallet={wallet.address}"})

        assert response.status_code == 402
        assert "session or proof" in response.json()["error"]

    def test_402_audited(self, client):
        """Each 402 is written to the audit log."""
        client.get("/api/v1/weather/forecast", headers={"X-Forwarded-For": "203.0.113.50"})

        events = audit.read_audit_log(event_type=audit.AuditEventType.PAYMENT_REQUIRED_SENT)
        assert events[0]["client_ip"] == "203.0.113.50"
        assert events[0]["data"]["amount"] == 0.25


class TestSessionPayment:
    """Metered requests paid from a session."""

    def test_charges_session(self, client, container, session_token, wallet):
        """A valid session is charged the base price and the route runs."""
        response = client.get("/api/v1/weather/forecast", headers=session_header(session_token, wallet.address))

        assert response.status_code == 200
        assert response.json() == {"forecast": "sunny"}
        summary = decode_payment_response(response.headers[X402_PAYMENT_RESPONSE_HEADER])
        assert summary["mode"] == "session"
        assert summary["amount"] == 0.25
        assert summary["remaining_balance"] == 9.75
        assert container.sessions.get_session(session_token).remaining_amount == 9.75

    def test_wrong_wallet(self, client, container, session_token):
        """A session cannot be used by another wallet."""
        response = client.get("/api/v1/weather/forecast", headers=session_header(session_token, "Intruder111"))

        assert response.status_code == 402
        assert response.json()["code"] == "RESOURCE_MISMATCH"
        assert container.sessions.get_session(session_token).remaining_amount == 10.0

    def test_unknown_session(self, client, wallet):
        """Unknown tokens return 404."""
        response = client.get("/api/v1/weather/forecast", headers=session_header("0" * 64, wallet.address))

        assert response.status_code == 404
        assert response.json()["code"] == "SESSION_NOT_FOUND"

    def test_insufficient_balance(self, client, container, wallet):
        """A session without enough left returns 402 with the remaining balance."""
        token = container.sessions.open(wallet, 0.10, "api/weather/*", execute_payment=False).session_token

        response = client.get("/api/v1/weather/forecast", headers=session_header(token, wallet.address))
        body = response.json()

        assert response.status_code == 402
        assert body["code"] == "INSUFFICIENT_BALANCE"
        assert body["remaining"] == 0.10
        assert body["accepts"][0]["amount"] == 0.25

    def test_session_for_other_resource(self, client, container, wallet):
        """The session's resource pattern must cover the service."""
        token = container.sessions.open(wallet, 10.0, "agent/summarizer/*", execute_payment=False).session_token

        response = client.get("/api/v1/weather/forecast", headers=session_header(token, wallet.address))

        assert response.status_code == 402
        assert response.json()["code"] == "RESOURCE_MISMATCH"

    def test_revoked_session(self, client, container, session_token, wallet):
        """Revoked sessions are refused."""
        container.sessions.revoke(session_token)

        response = client.get("/api/v1/weather/forecast", headers=session_header(session_token, wallet.address))

        assert response.status_code == 402
        assert response.json()["status"] == "revoked"


class TestProofPayment:
    """Metered requests paid with a standalone on-chain payment."""

    def proof_header(self, wallet_address):
        return {X402_PAYMENT_HEADER: f"proof={SIGNATURE}; wallet={wallet_address}"}

    def paid_transaction(self, source, lamports):
        return {
            "meta": {"err": None},
            "transaction": {"message": {"instructions": [{
                "program": "system",
                "parsed": {"type": "transfer", "info": {"source": source, "destination": OWNER, "lamports": lamports}},
            }]}},
        }

    def test_valid_proof(self, client, ledger_rpc, session_factory, wallet):
        """A sufficient transfer to the service owner is accepted once."""
        ledger_rpc.get_transaction.return_value = self.paid_transaction(wallet.address, 1953125)

        response = client.get("/api/v1/weather/forecast", headers=self.proof_header(wallet.address))

        assert response.status_code == 200
        summary = decode_payment_response(response.headers[X402_PAYMENT_RESPONSE_HEADER])
        assert summary["mode"] == "proof"
        assert summary["transaction"] == SIGNATURE
        assert summary["lamports"] == 1953125

        replay = client.get("/api/v1/weather/forecast", headers=self.proof_header(wallet.address))
        assert replay.status_code == 402
        assert replay.json()["code"] == "PROOF_INVALID"

        (row,) = usage_rows(session_factory, wallet.address)
        assert row.response_code == 200
        assert row.status == "completed"

    def test_underpaying_proof(self, client, ledger_rpc, wallet):
        """Too small a transfer is refused."""
        ledger_rpc.get_transaction.return_value = self.paid_transaction(wallet.address, 1000)

        response = client.get("/api/v1/weather/forecast", headers=self.proof_header(wallet.address))

        assert response.status_code == 402
        assert response.json()["code"] == "PROOF_INVALID"

    def test_ledger_unreachable(self, client, ledger_rpc, wallet):
        """An unreachable ledger is a 503, not a payment failure."""
        ledger_rpc.get_transaction.side_effect = EndpointPoolExhaustedError([RpcTransportError("timeout")])

        response = client.get("/api/v1/weather/forecast", headers=self.proof_header(wallet.address))

        assert response.status_code == 503
        assert response.json()["code"] == "RPC_UNAVAILABLE"


def usage_rows(session_factory, wallet_address):
    with session_scope(session_factory) as db:
        rows = db.query(UsageRecord).filter(UsageRecord.wallet_address == wallet_address).order_by(UsageRecord.id).all()
        return [
            SimpleNamespace(
                request_id=r.request_id,
                status=r.status,
                response_code=r.response_code,
                response_time_ms=r.response_time_ms,
                error_message=r.error_message,
            )
            for r in rows
        ]


class TestOutcomeRecording:
    """The downstream result of a charged request is stored on its usage record."""

    def test_success_recorded(self, client, container, session_factory, session_token, wallet):
        response = client.get("/api/v1/weather/forecast", headers=session_header(session_token, wallet.address))

        assert response.status_code == 200
        (row,) = usage_rows(session_factory, wallet.address)
        assert row.request_id
        assert row.status == "completed"
        assert row.response_code == 200
        assert row.response_time_ms >= 0
        assert row.error_message is None

    def test_server_error_marks_failed(self, client, session_factory, session_token, wallet):
        response = client.get("/api/v1/weather/broken", headers=session_header(session_token, wallet.address))

        assert response.status_code == 503
        (row,) = usage_rows(session_factory, wallet.address)
        assert row.status == "failed"
        assert row.response_code == 503
        assert row.error_message == "HTTP 503"

    def test_exception_marks_failed(self, container, session_factory, session_token, wallet):
        client = TestClient(create_test_app(container), raise_server_exceptions=False)

        response = client.get("/api/v1/weather/crash", headers=session_header(session_token, wallet.address))

        assert response.status_code == 500
        (row,) = usage_rows(session_factory, wallet.address)
        assert row.status == "failed"
        assert row.response_code is None
        assert "boom" in row.error_message

    def test_refused_payment_records_nothing(self, client, session_factory, wallet):
        client.get("/api/v1/weather/forecast", headers=session_header("0" * 64, wallet.address))

        assert usage_rows(session_factory, wallet.address) == []

    def test_success_rate_follows_outcomes(self, client, session_factory, session_token, wallet):
        """One good and one failed request give a 50% success rate in the rollups."""
        headers = session_header(session_token, wallet.address)
        assert client.get("/api/v1/weather/forecast", headers=headers).status_code == 200
        assert client.get("/api/v1/weather/broken", headers=headers).status_code == 503

        aggregator = UsageAggregator(session_factory)
        today = utcnow().date()
        aggregator.aggregate_daily_stats(today)

        (stats,) = aggregator.get_daily_stats(today, service_id="weather")
        assert stats["total_transactions"] == 2
        assert stats["success_rate"] == 50.0
        assert aggregator.get_overall_stats(wallet.address)["success_rate"] == 50.0

    def test_outcome_store_failure_keeps_response(self, client, session_token, wallet):
        """The route's answer stands even if its outcome cannot be stored."""
        with patch("app.x402.middleware.record_usage_outcome", side_effect=RuntimeError("db gone")):
            response = client.get("/api/v1/weather/forecast", headers=session_header(session_token, wallet.address))

        assert response.status_code == 200
        assert response.json() == {"forecast": "sunny"}
        assert X402_PAYMENT_RESPONSE_HEADER in response.headers
