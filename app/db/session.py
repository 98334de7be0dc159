# app/db/session.py
"""
SQLAlchemy engine and session management.

This module provides:
- Engine creation for the configured DATABASE_URL
- A session factory injected into the payment components
- A commit/rollback context manager for units of work

Usage:
    from app.db.session import create_db_engine, make_session_factory, session_scope

    engine = create_db_engine("sqlite:///./x402.db")
    factory = make_session_factory(engine)
    with session_scope(factory) as db:
        db.add(row)
"""
from contextlib import contextmanager
from typing import Generator, Optional

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from app.core.config import settings


def create_db_engine(database_url: Optional[str] = None, echo: bool = False) -> Engine:
    """
    Create a SQLAlchemy engine.

    SQLite connections are shared across the request threadpool and the
    confirmation monitor workers, so the same-thread check is disabled and a
    busy timeout lets concurrent writers wait for the write lock.
    """
    url = database_url or settings.DATABASE_URL
    connect_args = {}
    if url.startswith("sqlite"):
        connect_args = {"check_same_thread": False, "timeout": 30}
    return create_engine(url, connect_args=connect_args, pool_pre_ping=True, echo=echo)


def make_session_factory(engine: Engine) -> sessionmaker:
    """Session factory bound to ``engine``."""
    return sessionmaker(
        bind=engine,
        autocommit=False,
        autoflush=False,
        expire_on_commit=False,
    )


@contextmanager
def session_scope(factory: sessionmaker) -> Generator[Session, None, None]:
    """
    Context manager for a unit of work.

    Usage:
        with session_scope(factory) as db:
            db.query(PaymentSession).all()

    Yields:
        Session: SQLAlchemy database session, committed on success
    """
    session = factory()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def init_db(engine: Engine) -> None:
    """
    Initialize database tables.

    Creates all tables defined in the models if they don't exist.
    """
    from app.db.models import Base
    Base.metadata.create_all(bind=engine)
