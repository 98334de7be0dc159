# app/core/container.py
"""
Composition root.

Builds exactly one instance of every payment component and wires them
together. Components never construct their collaborators themselves; the
API layer and the middleware get them from here.
"""
import logging
from dataclasses import dataclass
from functools import lru_cache
from typing import Optional

from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker

from app.core.config import Settings, get_settings
from app.db.session import create_db_engine, init_db, make_session_factory
from app.x402 import audit
from app.x402.analytics import UsageAggregator
from app.x402.catalog import ServiceCatalog, load_catalog_file
from app.x402.credits import CreditLedger
from app.x402.locks import KeyedLock
from app.x402.maintenance import MaintenanceScheduler
from app.x402.monitor import ConfirmationMonitor
from app.x402.oracle import PriceOracle
from app.x402.proof import ProofVerifier
from app.x402.rpc import EndpointFailoverPool, SolanaRpcClient
from app.x402.sessions import PaymentSessionManager
from app.x402.submitter import TransactionSubmitter
from app.x402.transactions import TransactionLogStore, TransactionRecord, TransactionStatus

logger = logging.getLogger(__name__)


def audit_terminal_transaction(record: TransactionRecord) -> None:
    audit.log_transaction_terminal(
        signature=record.signature,
        confirmed=record.status == TransactionStatus.CONFIRMED.value,
        wallet_address=record.wallet_address,
        error_message=record.error_message
    )


@dataclass
class X402Container:
    settings: Settings
    engine: Engine
    session_factory: sessionmaker
    pool: EndpointFailoverPool
    rpc: SolanaRpcClient
    oracle: PriceOracle
    transactions: TransactionLogStore
    monitor: ConfirmationMonitor
    submitter: TransactionSubmitter
    sessions: PaymentSessionManager
    credits: CreditLedger
    analytics: UsageAggregator
    proofs: ProofVerifier
    catalog: ServiceCatalog
    maintenance: MaintenanceScheduler

    def start(self) -> None:
        """Start background reconciliation, pick up transactions left pending, schedule maintenance."""
        self.monitor.start()
        self.monitor.recover_pending()
        if self.settings.X402_MAINTENANCE_ENABLED:
            self.maintenance.start()

    def shutdown(self) -> None:
        self.maintenance.stop()
        self.monitor.stop()
        self.engine.dispose()


def build_container(settings: Optional[Settings] = None, database_url: Optional[str] = None) -> X402Container:
    """Create and wire every component."""
    settings = settings or get_settings()

    engine = create_db_engine(database_url or settings.DATABASE_URL)
    init_db(engine)
    session_factory = make_session_factory(engine)

    pool = EndpointFailoverPool(settings.rpc_endpoints())
    rpc = SolanaRpcClient(pool, timeout=settings.X402_RPC_TIMEOUT_SECONDS)
    oracle = PriceOracle(rpc=rpc)
    transactions = TransactionLogStore(session_factory)

    monitor = ConfirmationMonitor(rpc, transactions)
    monitor.add_listener(audit_terminal_transaction)

    submitter = TransactionSubmitter(rpc, oracle, transactions, monitor=monitor)
    locks = KeyedLock()
    sessions = PaymentSessionManager(session_factory, submitter=submitter, locks=locks)
    analytics = UsageAggregator(session_factory)

    catalog = ServiceCatalog()
    if settings.X402_SERVICE_CATALOG_PATH:
        load_catalog_file(catalog, settings.X402_SERVICE_CATALOG_PATH)

    logger.info(f"x402: container built ({len(pool.endpoints)} RPC endpoints)")
    return X402Container(
        settings=settings,
        engine=engine,
        session_factory=session_factory,
        pool=pool,
        rpc=rpc,
        oracle=oracle,
        transactions=transactions,
        monitor=monitor,
        submitter=submitter,
        sessions=sessions,
        credits=CreditLedger(session_factory, submitter=submitter, locks=locks),
        analytics=analytics,
        proofs=ProofVerifier(rpc, oracle, session_factory),
        catalog=catalog,
        maintenance=MaintenanceScheduler(
            sessions, analytics, interval=settings.X402_MAINTENANCE_INTERVAL_SECONDS
        ),
    )


@lru_cache()
def get_container() -> X402Container:
    return build_container()
