# app/x402/maintenance.py
"""
Periodic housekeeping.

Every X402_MAINTENANCE_INTERVAL_SECONDS one background thread moves
sessions past their expiry to ``expired`` and recomputes the analytics
rollups of yesterday and today. Both jobs are idempotent, so running them
more often than daily only costs queries.
"""
import logging
import threading
from datetime import datetime, timedelta
from typing import Callable, Dict, Optional

from app.core.config import settings
from app.x402.analytics import UsageAggregator
from app.x402.sessions import PaymentSessionManager
from app.x402.units import utcnow

logger = logging.getLogger(__name__)


class MaintenanceScheduler:
    """Runs session cleanup and daily aggregation on a timer."""

    def __init__(
        self,
        sessions: PaymentSessionManager,
        analytics: UsageAggregator,
        interval: Optional[float] = None,
        clock: Callable[[], datetime] = utcnow
    ):
        self._sessions = sessions
        self._analytics = analytics
        self._interval = interval if interval is not None else settings.X402_MAINTENANCE_INTERVAL_SECONDS
        self._clock = clock
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def run_once(self) -> Dict[str, int]:
        """
        Run every job once.

        Returns:
            Dict containing:
            - expired_sessions: int - sessions moved to expired
            - aggregated_rows: int - rollup rows written for yesterday and today
        """
        expired = self._sessions.cleanup_expired_sessions()
        today = self._clock().date()
        rows = 0
        for day in (today - timedelta(days=1), today):
            rows += self._analytics.aggregate_daily_stats(day)
        logger.info(f"x402: maintenance expired {expired} sessions, wrote {rows} analytics rows")
        return {"expired_sessions": expired, "aggregated_rows": rows}

    def start(self) -> None:
        if self.running:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name="x402-maintenance", daemon=True)
        self._thread.start()
        logger.info(f"x402: maintenance scheduled every {self._interval:.0f}s")

    def stop(self, join_timeout: float = 5.0) -> None:
        thread, self._thread = self._thread, None
        if thread is None:
            return
        self._stop.set()
        thread.join(join_timeout)
        logger.info("x402: maintenance stopped")

    def _loop(self) -> None:
        while not self._stop.is_set():
            try:
                self.run_once()
            except Exception as e:
                logger.error(f"x402: maintenance run failed: {e}")
            self._stop.wait(self._interval)
