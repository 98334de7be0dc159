# tests/test_x402_audit.py
"""
Unit tests for x402 audit logging.
"""
import json
import tempfile
import pytest
from pathlib import Path
from unittest.mock import patch

from app.x402.audit import (
    AuditEventType,
    generate_request_id,
    create_audit_event,
    log_audit_event,
    log_payment_submitted,
    log_payment_failed,
    log_transaction_terminal,
    log_session_opened,
    log_session_spent,
    log_session_closed,
    log_credits_topped_up,
    log_credits_spent,
    log_auto_topup_required,
    log_proof_checked,
    log_payment_required_sent,
    log_error,
    read_audit_log,
    get_audit_stats,
)

WALLET = "9WzDXwBbmkg8ZTbNMqUxvQRAyrZzDsGYdLVL9zYtAWWM"
TOKEN = "ab" * 32


class TestAuditEventType:
    """Test audit event type enumeration."""

    def test_event_types_exist(self):
        """All expected event types exist."""
        assert AuditEventType.PAYMENT_SUBMITTED.value == "payment_submitted"
        assert AuditEventType.PAYMENT_FAILED.value == "payment_failed"
        assert AuditEventType.TRANSACTION_CONFIRMED.value == "transaction_confirmed"
        assert AuditEventType.TRANSACTION_FAILED.value == "transaction_failed"
        assert AuditEventType.SESSION_OPENED.value == "session_opened"
        assert AuditEventType.SESSION_REVOKED.value == "session_revoked"
        assert AuditEventType.CREDITS_SPENT.value == "credits_spent"
        assert AuditEventType.AUTO_TOPUP_REQUIRED.value == "auto_topup_required"
        assert AuditEventType.PAYMENT_REQUIRED_SENT.value == "payment_required_sent"
        assert AuditEventType.ERROR.value == "error"


class TestGenerateRequestId:
    """Test request ID generation."""

    def test_correct_length(self):
        """Request ID has expected length."""
        assert len(generate_request_id()) == 8

    def test_unique_ids(self):
        """Generated IDs are unique."""
        ids = [generate_request_id() for _ in range(100)]
        assert len(set(ids)) == 100


class TestCreateAuditEvent:
    """Test audit event creation."""

    def test_creates_event_structure(self):
        """Creates event with all required fields."""
        event = create_audit_event(
            event_type=AuditEventType.SESSION_SPENT,
            data={"amount": 0.25},
            wallet_address=WALLET,
            client_ip="192.168.1.1",
            request_id="abc12345"
        )

        assert event["event_type"] == "session_spent"
        assert event["request_id"] == "abc12345"
        assert event["client_ip"] == "192.168.1.1"
        assert event["wallet_address"] == WALLET
        assert event["data"]["amount"] == 0.25

    def test_timestamp_is_iso_format(self):
        """Timestamp is in ISO format, UTC."""
        event = create_audit_event(event_type=AuditEventType.ERROR, data={})

        assert "T" in event["timestamp"]
        assert event["timestamp"].endswith("+00:00")


class TestLogAuditEvent:
    """Test audit event logging to file."""

    @patch("app.x402.audit.settings")
    def test_writes_json_lines(self, mock_settings):
        """Events are written as JSON lines."""
        with tempfile.TemporaryDirectory() as tmpdir:
            log_path = Path(tmpdir) / "audit.jsonl"
            mock_settings.X402_AUDIT_LOG_PATH = str(log_path)

            log_audit_event(AuditEventType.SESSION_OPENED, {"test": 1}, WALLET)
            log_audit_event(AuditEventType.ERROR, {"test": 2})

            with open(log_path, "r") as f:
                lines = f.readlines()
                assert len(lines) == 2
                for line in lines:
                    event = json.loads(line.strip())
                    assert "timestamp" in event
                    assert "event_type" in event

    @patch("app.x402.audit.settings")
    def test_creates_directory_if_missing(self, mock_settings):
        """Creates parent directory if it doesn't exist."""
        with tempfile.TemporaryDirectory() as tmpdir:
            log_path = Path(tmpdir) / "subdir" / "audit.jsonl"
            mock_settings.X402_AUDIT_LOG_PATH = str(log_path)

            log_audit_event(AuditEventType.ERROR, {})

            assert log_path.exists()

    @patch("app.x402.audit.settings")
    def test_unwritable_log_returns_none(self, mock_settings):
        """A write failure is reported as None instead of raising."""
        with tempfile.TemporaryDirectory() as tmpdir:
            mock_settings.X402_AUDIT_LOG_PATH = tmpdir

            assert log_audit_event(AuditEventType.ERROR, {}) is None

    @patch("app.x402.audit.settings")
    def test_serializes_non_json_values(self, mock_settings):
        """Values such as datetimes are written as strings."""
        from datetime import datetime

        with tempfile.TemporaryDirectory() as tmpdir:
            log_path = Path(tmpdir) / "audit.jsonl"
            mock_settings.X402_AUDIT_LOG_PATH = str(log_path)

            log_audit_event(AuditEventType.ERROR, {"at": datetime(2025, 11, 5, 12, 0)})

            assert read_audit_log()[0]["data"]["at"] == "2025-11-05 12:00:00"


class TestConvenienceLoggingFunctions:
    """Test convenience logging functions."""

    @pytest.fixture
    def log_path(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            with patch("app.x402.audit.settings") as mock_settings:
                path = Path(tmpdir) / "audit.jsonl"
                mock_settings.X402_AUDIT_LOG_PATH = str(path)
                yield path

    def test_log_payment_submitted(self, log_path):
        """Log a payment accepted by the ledger."""
        log_payment_submitted(WALLET, "sig-1", "session_open", 2.0, 15625000, 128.0, "pyth")

        event = read_audit_log()[0]
        assert event["event_type"] == "payment_submitted"
        assert event["wallet_address"] == WALLET
        assert event["data"]["amount_lamports"] == 15625000
        assert event["data"]["rate_source"] == "pyth"

    def test_log_payment_failed(self, log_path):
        """Log a payment that never reached the ledger."""
        log_payment_failed("Insufficient SOL balance", "INSUFFICIENT_FUNDS", wallet_address=WALLET, amount_usd=2.0)

        event = read_audit_log()[0]
        assert event["event_type"] == "payment_failed"
        assert event["data"]["stage"] == "INSUFFICIENT_FUNDS"

    def test_log_transaction_terminal(self, log_path):
        """Confirmed and failed transactions get their own event types."""
        log_transaction_terminal("sig-1", confirmed=True, wallet_address=WALLET)
        log_transaction_terminal("sig-2", confirmed=False, error_message="InstructionError")

        events = read_audit_log()
        assert events[1]["event_type"] == "transaction_confirmed"
        assert events[0]["event_type"] == "transaction_failed"
        assert events[0]["data"]["error_message"] == "InstructionError"

    def test_log_session_lifecycle(self, log_path):
        """Log session open, spend and close."""
        log_session_opened(WALLET, TOKEN, 10.0, "api/weather/*", "2025-11-06T12:00:00", "sig-1")
        log_session_spent(WALLET, TOKEN, 0.25, 9.75, "https://gateway.example/api/v1/weather")
        log_session_closed(TOKEN, "revoked", wallet_address=WALLET)
        log_session_closed(TOKEN, "expired")

        types = [e["event_type"] for e in read_audit_log()]
        assert types == ["session_expired", "session_revoked", "session_spent", "session_opened"]

    def test_log_credit_events(self, log_path):
        """Log top-ups, spends and auto top-up signals."""
        log_credits_topped_up(WALLET, "summarizer", "agent", 1.0, 1.0, "sig-1")
        log_credits_spent(WALLET, "summarizer", "agent", 0.8, 0.2)
        log_auto_topup_required(WALLET, "summarizer", "agent", 0.2, 5.0)

        events = read_audit_log(wallet_address=WALLET)
        assert len(events) == 3
        assert events[0]["data"]["topup_amount"] == 5.0
        assert events[2]["data"]["signature"] == "sig-1"

    def test_log_proof_checked(self, log_path):
        """Valid and invalid proofs are distinguished."""
        log_proof_checked("sig-1", True, wallet_address=WALLET)
        log_proof_checked("sig-2", False, invalid_reason="Payment proof already used", client_ip="1.1.1.1")

        events = read_audit_log()
        assert events[0]["event_type"] == "proof_rejected"
        assert events[0]["client_ip"] == "1.1.1.1"
        assert events[1]["event_type"] == "proof_verified"

    def test_log_payment_required_sent(self, log_path):
        """Log a 402 response."""
        log_payment_required_sent("1.1.1.1", 0.25, "USD", "Owner111", "api/weather/forecast", reason="No header")

        event = read_audit_log()[0]
        assert event["data"]["pay_to"] == "Owner111"
        assert event["data"]["reason"] == "No header"

    def test_log_error(self, log_path):
        """Log an error with context."""
        log_error("RPC_UNAVAILABLE", "All RPC endpoints failed", context={"endpoints": 2})

        event = read_audit_log()[0]
        assert event["data"]["error_type"] == "RPC_UNAVAILABLE"
        assert event["data"]["context"] == {"endpoints": 2}


class TestReadAuditLog:
    """Test reading from audit log."""

    @patch("app.x402.audit.settings")
    def test_read_returns_most_recent_first(self, mock_settings):
        """Events are returned most recent first."""
        with tempfile.TemporaryDirectory() as tmpdir:
            log_path = Path(tmpdir) / "audit.jsonl"
            mock_settings.X402_AUDIT_LOG_PATH = str(log_path)

            for order in (1, 2, 3):
                log_audit_event(AuditEventType.SESSION_SPENT, {"order": order}, WALLET)

            events = read_audit_log()
            assert events[0]["data"]["order"] == 3
            assert events[2]["data"]["order"] == 1

    @patch("app.x402.audit.settings")
    def test_read_respects_max_entries(self, mock_settings):
        """Respects max_entries limit."""
        with tempfile.TemporaryDirectory() as tmpdir:
            log_path = Path(tmpdir) / "audit.jsonl"
            mock_settings.X402_AUDIT_LOG_PATH = str(log_path)

            for i in range(10):
                log_audit_event(AuditEventType.SESSION_SPENT, {"i": i}, WALLET)

            assert len(read_audit_log(max_entries=5)) == 5

    @patch("app.x402.audit.settings")
    def test_read_filters(self, mock_settings):
        """Filters by event type and wallet."""
        with tempfile.TemporaryDirectory() as tmpdir:
            log_path = Path(tmpdir) / "audit.jsonl"
            mock_settings.X402_AUDIT_LOG_PATH = str(log_path)

            log_audit_event(AuditEventType.SESSION_SPENT, {}, WALLET)
            log_audit_event(AuditEventType.ERROR, {}, WALLET)
            log_audit_event(AuditEventType.SESSION_SPENT, {}, "OtherWallet")

            assert len(read_audit_log(event_type=AuditEventType.SESSION_SPENT)) == 2
            assert len(read_audit_log(wallet_address=WALLET)) == 2
            assert len(read_audit_log(event_type=AuditEventType.SESSION_SPENT, wallet_address=WALLET)) == 1

    @patch("app.x402.audit.settings")
    def test_read_skips_corrupt_lines(self, mock_settings):
        """Lines that are not JSON are skipped."""
        with tempfile.TemporaryDirectory() as tmpdir:
            log_path = Path(tmpdir) / "audit.jsonl"
            mock_settings.X402_AUDIT_LOG_PATH = str(log_path)

            log_audit_event(AuditEventType.ERROR, {})
            with open(log_path, "a") as f:
                f.write("{not json\n")

            assert len(read_audit_log()) == 1

    @patch("app.x402.audit.settings")
    def test_read_returns_empty_for_nonexistent_file(self, mock_settings):
        """Returns empty list if log doesn't exist."""
        with tempfile.TemporaryDirectory() as tmpdir:
            mock_settings.X402_AUDIT_LOG_PATH = str(Path(tmpdir) / "nonexistent.jsonl")

            assert read_audit_log() == []


class TestGetAuditStats:
    """Test audit statistics."""

    @patch("app.x402.audit.settings")
    def test_stats_with_events(self, mock_settings):
        """Returns correct statistics."""
        with tempfile.TemporaryDirectory() as tmpdir:
            log_path = Path(tmpdir) / "audit.jsonl"
            mock_settings.X402_AUDIT_LOG_PATH = str(log_path)

            log_audit_event(AuditEventType.SESSION_SPENT, {}, WALLET)
            log_audit_event(AuditEventType.SESSION_SPENT, {}, WALLET)
            log_audit_event(AuditEventType.ERROR, {})

            stats = get_audit_stats()

            assert stats["total_events"] == 3
            assert stats["events_by_type"]["session_spent"] == 2
            assert stats["events_by_type"]["error"] == 1
            assert stats["log_exists"] is True
            assert stats["first_event"] is not None
            assert stats["last_event"] is not None

    @patch("app.x402.audit.settings")
    def test_stats_for_nonexistent_log(self, mock_settings):
        """Returns zero stats for nonexistent log."""
        with tempfile.TemporaryDirectory() as tmpdir:
            mock_settings.X402_AUDIT_LOG_PATH = str(Path(tmpdir) / "nonexistent.jsonl")

            stats = get_audit_stats()

            assert stats["total_events"] == 0
            assert stats["events_by_type"] == {}
            assert stats["log_exists"] is False


class TestRequestIdTracking:
    """Test request ID tracking across events."""

    @patch("app.x402.audit.settings")
    def test_same_request_id_across_events(self, mock_settings):
        """Same request ID can be used across related events."""
        with tempfile.TemporaryDirectory() as tmpdir:
            log_path = Path(tmpdir) / "audit.jsonl"
            mock_settings.X402_AUDIT_LOG_PATH = str(log_path)

            request_id = log_audit_event(AuditEventType.PAYMENT_SUBMITTED, {"signature": "sig-1"}, WALLET)
            log_audit_event(AuditEventType.SESSION_OPENED, {"session_token": TOKEN}, WALLET, request_id=request_id)

            events = read_audit_log()
            assert len(events) == 2
            assert all(e["request_id"] == request_id for e in events)
