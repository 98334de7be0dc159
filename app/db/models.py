# app/db/models.py
"""SQLAlchemy ORM models for the payment engine."""
from sqlalchemy import (
    BigInteger,
    Boolean,
    CheckConstraint,
    Column,
    Date,
    DateTime,
    Float,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import declarative_base

from app.x402.units import utcnow

Base = declarative_base()


class TransactionLog(Base):
    """On-chain payment submitted by the engine. Never deleted."""
    __tablename__ = "transaction_logs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    signature = Column(String(128), unique=True, nullable=False)
    wallet_address = Column(String(64), nullable=False, index=True)
    transaction_type = Column(String(32), nullable=False)
    status = Column(String(16), nullable=False, default="pending", index=True)
    amount_lamports = Column(BigInteger, nullable=False)
    amount_sol = Column(Float, nullable=False)
    amount_usd_micros = Column(BigInteger, nullable=False)
    conversion_rate = Column(Float, nullable=False)
    rate_source = Column(String(32))
    recipient_address = Column(String(64), nullable=False)
    metadata_json = Column(Text)
    error_message = Column(Text)
    created_at = Column(DateTime, nullable=False, default=utcnow, index=True)
    confirmed_at = Column(DateTime)


class PaymentSession(Base):
    """Preauthorized spending envelope drawn down per metered use."""
    __tablename__ = "x402_payment_sessions"
    __table_args__ = (
        CheckConstraint("remaining_micros >= 0", name="ck_session_remaining_non_negative"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    session_token = Column(String(64), unique=True, nullable=False)
    wallet_address = Column(String(64), nullable=False, index=True)
    authorized_micros = Column(BigInteger, nullable=False)
    spent_micros = Column(BigInteger, nullable=False, default=0)
    remaining_micros = Column(BigInteger, nullable=False)
    resource_pattern = Column(String(512), nullable=False)
    status = Column(String(16), nullable=False, default="active", index=True)
    expires_at = Column(DateTime, nullable=False)
    auto_renew = Column(Boolean, nullable=False, default=False)
    renewal_micros = Column(BigInteger, nullable=False, default=0)
    opening_signature = Column(String(128))
    last_used_at = Column(DateTime)
    created_at = Column(DateTime, nullable=False, default=utcnow)


class CreditAccount(Base):
    """Standing balance per (wallet, service) pair."""
    __tablename__ = "x402_payment_credits"
    __table_args__ = (
        UniqueConstraint("wallet_address", "service_id", "service_type", name="uq_credit_account"),
        CheckConstraint("balance_micros >= 0", name="ck_credit_balance_non_negative"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    wallet_address = Column(String(64), nullable=False, index=True)
    service_id = Column(String(64), nullable=False, default="")
    service_type = Column(String(32), nullable=False)
    balance_micros = Column(BigInteger, nullable=False, default=0)
    total_purchased_micros = Column(BigInteger, nullable=False, default=0)
    total_spent_micros = Column(BigInteger, nullable=False, default=0)
    last_topup_tx = Column(String(128))
    last_topup_micros = Column(BigInteger)
    last_topup_at = Column(DateTime)
    auto_topup_enabled = Column(Boolean, nullable=False, default=False)
    auto_topup_threshold_micros = Column(BigInteger, nullable=False, default=0)
    auto_topup_amount_micros = Column(BigInteger, nullable=False, default=0)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow)


class UsageRecord(Base):
    """One metered use, paid from a session, credits or a standalone proof."""
    __tablename__ = "x402_usage"

    id = Column(Integer, primary_key=True, autoincrement=True)
    session_token = Column(String(64), index=True)
    wallet_address = Column(String(64), nullable=False, index=True)
    service_id = Column(String(64))
    resource_url = Column(String(1024), nullable=False)
    resource_type = Column(String(32), nullable=False)
    http_method = Column(String(10), nullable=False)
    amount_micros = Column(BigInteger, nullable=False)
    kind = Column(String(32), nullable=False)
    payment_proof = Column(String(128), unique=True)
    request_id = Column(String(36), index=True)
    status = Column(String(16), nullable=False, default="completed")
    response_code = Column(Integer)
    response_time_ms = Column(Integer)
    error_message = Column(Text)
    created_at = Column(DateTime, nullable=False, default=utcnow, index=True)


class DailyAnalytics(Base):
    """Per-day, per-service rollup of usage records."""
    __tablename__ = "x402_analytics"
    __table_args__ = (
        UniqueConstraint("date", "service_id", "service_type", name="uq_analytics_day_service"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    date = Column(Date, nullable=False, index=True)
    service_id = Column(String(64), nullable=False, default="")
    service_type = Column(String(32), nullable=False)
    total_transactions = Column(Integer, nullable=False, default=0)
    total_volume_micros = Column(BigInteger, nullable=False, default=0)
    unique_users = Column(Integer, nullable=False, default=0)
    avg_transaction_micros = Column(BigInteger, nullable=False, default=0)
    success_rate = Column(Float, nullable=False, default=0.0)
    avg_response_time_ms = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow)
