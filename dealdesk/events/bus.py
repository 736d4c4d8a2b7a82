"""
Thread-safe event bus for transaction lifecycle events.

CRITICAL PROPERTIES:
1. Thread-safe via queue (producer-consumer pattern)
2. Handlers registered by event type
3. FIFO event processing
4. Handler failures are isolated (logged but don't crash bus)
5. Graceful shutdown with queue drain
6. Runs in dedicated thread, or inline when synchronous=True
"""

import atexit
import os
import queue
import threading
import weakref
from typing import Any, Callable, Dict, List, Optional, Type

from dealdesk.logging import get_logger, LogStream

# ============================================================================
# GLOBAL REGISTRY (helps tests / interpreter shutdown)
# ============================================================================

_BUS_REGISTRY: "weakref.WeakSet[DealEventBus]" = weakref.WeakSet()


def _stop_all_buses_at_exit() -> None:
    for bus in list(_BUS_REGISTRY):
        if bus.is_running:
            bus.stop(timeout=0.2)


atexit.register(_stop_all_buses_at_exit)


Handler = Callable[[Any], None]


# ============================================================================
# EVENT BUS
# ============================================================================

class DealEventBus:
    """
    Thread-safe event bus for distributing lifecycle events.

    ARCHITECTURE:
    - Producers call emit(event) from any thread
    - Events queued in thread-safe queue
    - Dedicated consumer thread processes events FIFO
    - Each event type has registered handlers
    - Handler failures logged but don't crash bus

    THREAD SAFETY:
    - emit() is thread-safe (uses queue.Queue)
    - subscribe() must be called before start()
    - Handlers execute in event bus thread (NOT caller thread), except in
      synchronous mode where they run in the emitting thread

    USAGE:
        bus = DealEventBus()
        bus.subscribe(TransitionEvent, relay.on_transition)
        bus.start()

        # From any thread:
        bus.emit(TransitionEvent(...))

        # Shutdown:
        bus.stop()
    """

    def __init__(
        self,
        max_queue_size: int = 10000,
        *,
        synchronous: bool = False,
        daemon: Optional[bool] = None,
    ):
        """
        Args:
            max_queue_size: Maximum events in queue (prevents memory leak)
            synchronous: Dispatch inline in emit() instead of on the bus thread
            daemon: Thread daemon flag (defaults to True under pytest)
        """
        self.logger = get_logger(LogStream.EVENTS)

        self._queue: queue.Queue = queue.Queue(maxsize=max_queue_size)
        self._handlers: Dict[Type, List[Handler]] = {}
        self._synchronous = synchronous

        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._running = False
        self._stats_lock = threading.Lock()

        # Stray non-daemon threads can hang the test runner
        if daemon is None:
            daemon = bool(os.environ.get('PYTEST_CURRENT_TEST') or os.environ.get('PYTEST_RUNNING'))
        self._daemon = bool(daemon)

        _BUS_REGISTRY.add(self)

        self._events_processed = 0
        self._events_failed = 0
        self._events_dropped = 0

        self.logger.info("DealEventBus initialized", extra={
            "max_queue_size": max_queue_size,
            "synchronous": synchronous
        })

    @property
    def is_running(self) -> bool:
        return self._running

    def subscribe(self, event_type: Type, handler: Handler):
        """
        Register handler for event type.

        Raises:
            RuntimeError: If bus is already running
        """
        if self._running:
            raise RuntimeError("Cannot subscribe while bus is running")

        self._handlers.setdefault(event_type, []).append(handler)

        self.logger.debug(f"Handler registered for {event_type.__name__}", extra={
            "event_type": event_type.__name__,
            "handler_count": len(self._handlers[event_type])
        })

    def emit(self, event: Any):
        """
        Emit event to bus.

        Thread-safe. Can be called from any thread.
        Non-fatal: if the queue is full the event is dropped and counted.

        Raises:
            RuntimeError: If the bus is not running
        """
        if not self._running:
            raise RuntimeError("Event bus is not running. Call start() first.")

        if self._synchronous:
            self._dispatch_event(event)
            with self._stats_lock:
                self._events_processed += 1
            return

        try:
            self._queue.put_nowait(event)
        except queue.Full:
            with self._stats_lock:
                self._events_dropped += 1
            self.logger.warning(
                "Event queue full, dropping event (dropped=%d)",
                self._events_dropped,
                extra={
                    "event_type": type(event).__name__,
                    "queue_size": self._queue.qsize(),
                    "events_dropped": self._events_dropped,
                },
            )

    def start(self):
        """
        Start event bus processing.

        Raises:
            RuntimeError: If already running
        """
        if self._running:
            raise RuntimeError("Event bus already running")

        self._stop_event.clear()
        self._running = True

        if not self._synchronous:
            self._thread = threading.Thread(
                target=self._process_events,
                name="DealEventBus",
                daemon=self._daemon
            )
            self._thread.start()

        self.logger.info("DealEventBus started", extra={
            "synchronous": self._synchronous,
            "registered_event_types": len(self._handlers)
        })

    def stop(self, timeout: float = 5.0):
        """
        Stop event bus and drain queue.

        Raises:
            RuntimeError: If not running
        """
        if not self._running:
            raise RuntimeError("Event bus not running")

        self.logger.info("Stopping DealEventBus...", extra={
            "queue_size": self._queue.qsize(),
            "events_processed": self._events_processed,
            "events_failed": self._events_failed
        })

        self._stop_event.set()

        if self._thread:
            self._thread.join(timeout=timeout)
            if self._thread.is_alive():
                self.logger.warning(
                    "Event bus thread did not stop cleanly",
                    extra={"timeout": timeout}
                )
            self._thread = None

        self._running = False

        self.logger.info("DealEventBus stopped", extra={
            "events_processed": self._events_processed,
            "events_failed": self._events_failed,
            "queue_remaining": self._queue.qsize()
        })

    def wait_until_idle(self, timeout: float = 5.0) -> bool:
        """Block until every queued event has been dispatched."""
        if self._synchronous:
            return True
        done = threading.Event()

        def _join():
            self._queue.join()
            done.set()

        threading.Thread(target=_join, daemon=True).start()
        return done.wait(timeout)

    def _process_events(self):
        """Event processing loop (runs in dedicated thread)."""
        while not self._stop_event.is_set():
            try:
                event = self._queue.get(block=True, timeout=0.1)
            except queue.Empty:
                continue

            try:
                self._dispatch_event(event)
                with self._stats_lock:
                    self._events_processed += 1
            finally:
                self._queue.task_done()

        drained = 0
        while True:
            try:
                event = self._queue.get(block=False)
            except queue.Empty:
                break
            try:
                self._dispatch_event(event)
                drained += 1
            finally:
                self._queue.task_done()

        self.logger.info(f"Event processing thread stopped (drained {drained} events)")

    def _dispatch_event(self, event: Any):
        """
        Dispatch event to registered handlers.

        Handler failures are logged but don't crash bus.
        """
        event_type = type(event)
        handlers = self._handlers.get(event_type, [])

        if not handlers:
            self.logger.debug(f"No handlers for {event_type.__name__}", extra={
                "event_type": event_type.__name__
            })
            return

        for handler in handlers:
            try:
                handler(event)
            except Exception as e:
                # Handler failure does NOT crash bus
                with self._stats_lock:
                    self._events_failed += 1
                self.logger.error(
                    f"Handler failed for {event_type.__name__}",
                    extra={
                        "event_type": event_type.__name__,
                        "handler": getattr(handler, "__qualname__", repr(handler)),
                        "error": str(e)
                    },
                    exc_info=True
                )

    def get_stats(self) -> Dict:
        return {
            "events_processed": self._events_processed,
            "events_failed": self._events_failed,
            "events_dropped": self._events_dropped,
            "queue_size": self._queue.qsize(),
            "running": self._running,
            "registered_event_types": len(self._handlers),
        }

    def __enter__(self):
        self.start()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.stop()
