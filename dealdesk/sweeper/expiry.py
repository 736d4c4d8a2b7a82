"""
Expiry sweeper: closes negotiations whose decision window elapsed and
flags fulfillments that stopped moving.

Expiry goes through DealEngine.expire, the same validated path as every
other transition, so a party acting at the same moment either wins the
conditional write or finds the record already expired. Losing that race
is counted as skipped, never as an error.

Stalled fulfillments are only reported (FulfillmentStalledEvent); the
sweeper never cancels or completes an accepted transaction.

USAGE:
    sweeper = ExpirySweeper(engine, interval_s=300)
    result = sweeper.check()          # interval-gated, call every loop cycle
    result = sweeper.sweep()          # unconditional pass
    sweeper.start()                   # background thread
"""

import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Dict, List, Optional

from dealdesk.engine.deal_engine import DealEngine
from dealdesk.events.types import FulfillmentStalledEvent
from dealdesk.fulfillment.coordinator import FulfillmentCoordinator
from dealdesk.logging import get_logger, log_performance, LogContext, LogStream
from dealdesk.state.errors import DealError, StoreUnavailableError
from dealdesk.time import utc_now


@dataclass
class SweepResult:
    """Outcome of one sweeper pass."""
    ran: bool
    timestamp: datetime
    scanned: int = 0
    expired: int = 0
    skipped: int = 0
    errors: int = 0
    stalled: List[str] = field(default_factory=list)
    skipped_reason: Optional[str] = None

    def to_dict(self) -> Dict:
        return {
            "ran": self.ran,
            "timestamp": self.timestamp.isoformat(),
            "scanned": self.scanned,
            "expired": self.expired,
            "skipped": self.skipped,
            "errors": self.errors,
            "stalled": list(self.stalled),
            "skipped_reason": self.skipped_reason,
        }


class ExpirySweeper:
    """
    Periodic expiry of overdue negotiations.

    Thread-safe: sweep() and check() serialize on an internal lock.
    """

    def __init__(
        self,
        engine: DealEngine,
        *,
        interval_s: float = 300.0,
        batch_size: int = 500,
        stall_after: Optional[timedelta] = timedelta(days=14),
    ) -> None:
        self.engine = engine
        self.interval_s = interval_s
        self.batch_size = batch_size
        self.stall_after = stall_after
        self.logger = get_logger(LogStream.SWEEPER)

        self._lock = threading.Lock()
        self._last_run: Optional[float] = None
        self._run_count = 0
        # transaction_id -> last_activity already reported
        self._flagged: Dict[str, datetime] = {}

        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def run_count(self) -> int:
        return self._run_count

    # -------------------------
    # Public API
    # -------------------------

    def check(self) -> SweepResult:
        """Sweep if interval_s elapsed since the last pass."""
        now_ts = self.engine.clock.now().timestamp()
        if self._last_run is not None:
            elapsed = now_ts - self._last_run
            if elapsed < self.interval_s:
                return SweepResult(
                    ran=False,
                    timestamp=utc_now(),
                    skipped_reason=f"interval_not_elapsed ({elapsed:.1f}s / {self.interval_s:.1f}s)",
                )
        return self.sweep()

    @log_performance(LogStream.SWEEPER)
    def sweep(self) -> SweepResult:
        """One full pass: expire overdue records, then flag stalled ones."""
        with self._lock:
            now = self.engine.clock.now()
            result = SweepResult(ran=True, timestamp=now)

            try:
                candidates = self.engine.store.list_expirable(now, self.batch_size)
            except StoreUnavailableError as e:
                self.logger.error(f"Sweep aborted, store unavailable: {e}")
                result.errors += 1
                self._mark_run(now)
                return result

            result.scanned = len(candidates)
            for record in candidates:
                with LogContext(record.transaction_id):
                    try:
                        self.engine.expire(record.transaction_id)
                        result.expired += 1
                    except DealError as e:
                        # Moved on, or a party won the race
                        result.skipped += 1
                        self.logger.debug("Expiry skipped", extra={
                            "transaction_id": record.transaction_id,
                            "reason": e.reason,
                        })
                    except StoreUnavailableError as e:
                        result.errors += 1
                        self.logger.error("Expiry failed", extra={
                            "transaction_id": record.transaction_id,
                            "error": str(e),
                        })

            if self.stall_after is not None:
                try:
                    self._flag_stalled(now, result)
                except StoreUnavailableError as e:
                    self.logger.error(f"Stall scan failed: {e}")
                    result.errors += 1

            self._mark_run(now)

            if result.expired or result.stalled or result.errors:
                self.logger.info(
                    f"Sweep: {result.expired} expired, {result.skipped} skipped, "
                    f"{len(result.stalled)} stalled, {result.errors} errors",
                    extra=result.to_dict(),
                )
            return result

    def _mark_run(self, now: datetime) -> None:
        self._last_run = now.timestamp()
        self._run_count += 1

    def _flag_stalled(self, now: datetime, result: SweepResult) -> None:
        records = self.engine.store.list_in_fulfillment(self.batch_size)

        # Forget records that left fulfillment (only when the listing is complete)
        if len(records) < self.batch_size:
            current = {r.transaction_id for r in records}
            for transaction_id in [t for t in self._flagged if t not in current]:
                del self._flagged[transaction_id]

        for record in records:
            idle = FulfillmentCoordinator.stalled_for(record, now, self.stall_after)
            if idle is None:
                continue
            last_activity = record.last_activity()
            if self._flagged.get(record.transaction_id) == last_activity:
                continue

            self.logger.warning(f"Fulfillment stalled on {record.transaction_id}", extra={
                "transaction_id": record.transaction_id,
                "state": record.state.value,
                "idle_hours": round(idle.total_seconds() / 3600, 2),
            })
            if self.engine.event_bus is not None:
                try:
                    self.engine.event_bus.emit(FulfillmentStalledEvent(
                        transaction_id=record.transaction_id,
                        kind=record.kind.value,
                        state=record.state.value,
                        initiator_id=record.initiator_id,
                        counterparty_id=record.counterparty_id,
                        last_activity=last_activity,
                        idle_hours=idle.total_seconds() / 3600,
                        timestamp=now,
                    ))
                except Exception as e:
                    # Not marked as flagged: the next pass reports it again
                    result.errors += 1
                    self.logger.error("Stall event emit failed", extra={
                        "transaction_id": record.transaction_id,
                        "error": str(e),
                    }, exc_info=True)
                    continue

            self._flagged[record.transaction_id] = last_activity
            result.stalled.append(record.transaction_id)

    # -------------------------
    # Background thread
    # -------------------------

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            self.logger.warning("Sweeper already running")
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run_loop, name="ExpirySweeper", daemon=True)
        self._thread.start()
        self.logger.info(f"Sweeper started (interval={self.interval_s}s, batch={self.batch_size})")

    def stop(self, timeout: float = 5.0) -> None:
        if self._thread is None:
            return
        self._stop_event.set()
        self._thread.join(timeout=timeout)
        if self._thread.is_alive():
            self.logger.warning("Sweeper thread did not stop cleanly")
        self._thread = None
        self.logger.info("Sweeper stopped")

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def _run_loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                self.sweep()
            except Exception as e:
                self.logger.error(f"Error in sweeper loop: {e}", exc_info=True)
            self._stop_event.wait(self.interval_s)
