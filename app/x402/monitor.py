# app/x402/monitor.py
"""
Transaction confirmation monitor.

Reconciles pending transactions against the settlement ledger:

    pending --confirmed/finalized--> confirmed
    pending --err------------------> failed
    pending --deadline passed------> abandoned (row stays pending)

One scheduler heap holds every outstanding signature ordered by its next
poll time; a fixed pool of worker threads drains it. A signature is polled
as soon as it is registered, then every X402_CONFIRMATION_POLL_INTERVAL_SECONDS
until it is terminal or its X402_CONFIRMATION_TIMEOUT_SECONDS deadline
passes. Abandoned rows are picked up again by recover_pending() on the next
start.

Ledger query errors are transient: the signature is simply polled again on
the next tick.
"""
import heapq
import itertools
import logging
import threading
import time
from datetime import timedelta
from typing import Callable, Dict, List, Optional, Tuple

from app.core.config import settings
from app.x402.rpc import SignatureState, SolanaRpcClient
from app.x402.transactions import (
    TransactionLogStore,
    TransactionRecord,
    TransactionStatus,
)
from app.x402.units import utcnow

logger = logging.getLogger(__name__)

TerminalListener = Callable[[TransactionRecord], None]


class ConfirmationMonitor:
    """Background reconciliation of submitted transactions."""

    def __init__(
        self,
        rpc: SolanaRpcClient,
        store: TransactionLogStore,
        poll_interval: Optional[float] = None,
        timeout: Optional[float] = None,
        workers: Optional[int] = None,
        clock: Callable[[], float] = time.monotonic
    ):
        """
        Initialize the monitor.

        Args:
            rpc: Ledger client used for status queries
            store: Transaction log the terminal states are written to
            poll_interval: Seconds between polls of one signature. Uses config if not provided.
            timeout: Seconds before a signature is abandoned. Uses config if not provided.
            workers: Worker thread count. Uses config if not provided.
            clock: Monotonic time source
        """
        self._rpc = rpc
        self._store = store
        self._interval = poll_interval if poll_interval is not None else settings.X402_CONFIRMATION_POLL_INTERVAL_SECONDS
        self._timeout = timeout if timeout is not None else settings.X402_CONFIRMATION_TIMEOUT_SECONDS
        self._num_workers = workers if workers is not None else settings.X402_MONITOR_WORKERS
        self._clock = clock

        self._cond = threading.Condition()
        self._queue: List[Tuple[float, int, str]] = []
        self._seq = itertools.count()
        self._deadlines: Dict[str, float] = {}
        self._events: Dict[str, threading.Event] = {}
        self._listeners: List[TerminalListener] = []
        self._threads: List[threading.Thread] = []
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    def add_listener(self, listener: TerminalListener) -> None:
        """Call ``listener(record)`` once for every pending -> terminal transition."""
        self._listeners.append(listener)

    def start(self) -> None:
        with self._cond:
            if self._running:
                return
            self._running = True
            self._threads = [
                threading.Thread(target=self._worker_loop, args=(i,), name=f"x402-monitor-{i}", daemon=True)
                for i in range(self._num_workers)
            ]
        for thread in self._threads:
            thread.start()
        logger.info(f"x402: confirmation monitor started with {self._num_workers} workers")

    def stop(self, join_timeout: float = 5.0) -> None:
        """Stop the workers. Outstanding signatures stay pending in the store."""
        with self._cond:
            if not self._running:
                return
            self._running = False
            self._cond.notify_all()
            threads, self._threads = self._threads, []

        for thread in threads:
            thread.join(join_timeout)

        with self._cond:
            abandoned = list(self._deadlines)
            self._queue.clear()
            self._deadlines.clear()
            for signature in abandoned:
                self._release_waiters(signature)
        logger.info(f"x402: confirmation monitor stopped ({len(abandoned)} transactions left pending)")

    def register(self, signature: str) -> bool:
        """
        Start polling ``signature``.

        Returns:
            False if the signature is already being tracked
        """
        with self._cond:
            if signature in self._deadlines:
                return False
            now = self._clock()
            self._deadlines[signature] = now + self._timeout
            heapq.heappush(self._queue, (now, next(self._seq), signature))
            self._cond.notify()
        logger.debug(f"x402: monitoring {signature}")
        return True

    def is_tracking(self, signature: str) -> bool:
        with self._cond:
            return signature in self._deadlines

    def recover_pending(self, grace_seconds: Optional[float] = None) -> int:
        """
        Re-register pending transactions left over from a previous run.

        Rows younger than the grace period are skipped; their submitter is
        presumably still tracking them.

        Returns:
            Number of signatures registered
        """
        grace = grace_seconds if grace_seconds is not None else settings.X402_PENDING_GRACE_SECONDS
        pending = self._store.get_pending_transactions(older_than=utcnow() - timedelta(seconds=grace))
        registered = sum(1 for record in pending if self.register(record.signature))
        if registered:
            logger.info(f"x402: recovered {registered} pending transactions")
        return registered

    def poll_transaction(self, signature: str) -> Optional[TransactionRecord]:
        """
        Query the ledger once for ``signature`` and persist a terminal answer.

        Terminal rows are returned without querying the ledger again.

        Raises:
            RpcError / EndpointPoolExhaustedError: If the ledger could not be queried
        """
        record = self._store.get_transaction(signature)
        if record is None or record.is_terminal:
            return record

        status = self._rpc.get_signature_status(signature)
        if status.state == SignatureState.CONFIRMED:
            self._finish(signature, TransactionStatus.CONFIRMED, None)
        elif status.state == SignatureState.FAILED:
            self._finish(signature, TransactionStatus.FAILED, status.error)
        else:
            return record

        return self._store.get_transaction(signature)

    def wait_for(self, signature: str, timeout: float) -> Optional[TransactionRecord]:
        """
        Block until ``signature`` is terminal, abandoned, or ``timeout`` elapses.

        Giving up on the wait has no effect on polling.

        Returns:
            The latest stored record (possibly still pending), or None if unknown
        """
        record = self._store.get_transaction(signature)
        if record is None or record.is_terminal:
            return record

        with self._cond:
            event = self._events.setdefault(signature, threading.Event())

        record = self._store.get_transaction(signature)
        if record is None or not record.is_terminal:
            event.wait(timeout)
            record = self._store.get_transaction(signature)

        with self._cond:
            if signature not in self._deadlines:
                self._events.pop(signature, None)
        return record

    def get_stats(self) -> dict:
        with self._cond:
            return {
                "running": self._running,
                "workers": len(self._threads),
                "tracked": len(self._deadlines),
                "waiters": len(self._events),
            }

    def _finish(self, signature: str, status: TransactionStatus, error: Optional[str]) -> None:
        changed = self._store.mark_transaction_terminal(signature, status, error_message=error)
        with self._cond:
            self._release_waiters(signature)
        if not changed:
            return

        record = self._store.get_transaction(signature)
        if status == TransactionStatus.CONFIRMED:
            logger.info(f"x402: transaction confirmed: {signature}")
        else:
            logger.warning(f"x402: transaction failed: {signature}: {error}")

        for listener in list(self._listeners):
            try:
                listener(record)
            except Exception as e:
                logger.error(f"x402: terminal listener failed for {signature}: {e}")

    def _release_waiters(self, signature: str) -> None:
        event = self._events.pop(signature, None)
        if event is not None:
            event.set()

    def _next_signature(self) -> Optional[str]:
        """Block until a signature is due. None means the monitor is stopping."""
        with self._cond:
            while self._running:
                if not self._queue:
                    self._cond.wait()
                    continue
                due = self._queue[0][0]
                delay = due - self._clock()
                if delay > 0:
                    self._cond.wait(delay)
                    continue
                _, _, signature = heapq.heappop(self._queue)
                return signature
            return None

    def _reschedule(self, signature: str, done: bool) -> None:
        with self._cond:
            deadline = self._deadlines.get(signature)
            if deadline is None:
                return

            now = self._clock()
            if not done and now >= deadline:
                logger.warning(
                    f"x402: giving up on {signature} after {self._timeout:.0f}s; "
                    f"left pending for recovery"
                )
                done = True

            if done:
                del self._deadlines[signature]
                self._release_waiters(signature)
                return

            heapq.heappush(self._queue, (now + self._interval, next(self._seq), signature))
            self._cond.notify()

    def _worker_loop(self, worker_id: int) -> None:
        while True:
            signature = self._next_signature()
            if signature is None:
                return

            done = False
            try:
                record = self.poll_transaction(signature)
                done = record is None or record.is_terminal
            except Exception as e:
                logger.warning(f"x402: worker {worker_id} poll of {signature} failed, retrying: {e}")

            self._reschedule(signature, done)
