"""
Dependency Injection Container.

Builds the engine and its collaborators from a DealDeskConfig in
dependency order and owns their lifecycle (bus thread, sweeper thread,
journal file handle, store connections).
"""

from datetime import timedelta
from pathlib import Path
from typing import Optional

from dealdesk.config import ConfigLoader, DealDeskConfig, StoreBackend
from dealdesk.engine import DealEngine
from dealdesk.events import DealEventBus, LoggingNotificationEmitter, NotificationEmitter, NotificationRelay
from dealdesk.fulfillment import FulfillmentCoordinator
from dealdesk.logging import get_logger, LogStream, setup_logging
from dealdesk.ratings import RatingCollector
from dealdesk.state import (
    MemoryTransactionStore,
    SqliteTransactionStore,
    TransactionLog,
    TransactionStore,
    TransitionAuthority,
)
from dealdesk.sweeper import ExpirySweeper
from dealdesk.time import Clock, RealTimeClock

logger = get_logger(LogStream.SYSTEM)


def _hours(value: Optional[float]) -> Optional[timedelta]:
    return timedelta(hours=value) if value is not None else None


class Container:
    """
    Wires every component of the deal desk.

    USAGE:
        container = Container()
        container.initialize(config=DealDeskConfig())
        container.start()
        engine = container.get_engine()
        ...
        container.stop()
    """

    def __init__(self):
        # Config
        self._config: Optional[DealDeskConfig] = None
        self._clock: Optional[Clock] = None

        # State
        self._store: Optional[TransactionStore] = None
        self._journal: Optional[TransactionLog] = None
        self._authority: Optional[TransitionAuthority] = None

        # Events
        self._event_bus: Optional[DealEventBus] = None
        self._relay: Optional[NotificationRelay] = None

        # Engine
        self._coordinator: Optional[FulfillmentCoordinator] = None
        self._collector: Optional[RatingCollector] = None
        self._engine: Optional[DealEngine] = None
        self._sweeper: Optional[ExpirySweeper] = None

    def initialize(
        self,
        config_dir: Optional[Path] = None,
        *,
        config: Optional[DealDeskConfig] = None,
        clock: Optional[Clock] = None,
        emitter: Optional[NotificationEmitter] = None,
        configure_logging: bool = False,
    ) -> None:
        """
        Initialize all components in dependency order.

        ORDER:
        1. Config (explicit object, or loaded from config_dir)
        2. Logging (optional)
        3. Clock
        4. State (store, journal, authority)
        5. Events (bus + notification relay, subscribed before start)
        6. Engine (coordinator, collector, engine)
        7. Sweeper (started by start())
        """
        if self._config is not None:
            raise RuntimeError("Container already initialized")

        # 1. Config
        if config is None:
            config = ConfigLoader(config_dir or Path("config")).load_and_validate()
        self._config = config
        config.ensure_directories()

        # 2. Logging
        if configure_logging:
            setup_logging(
                log_dir=config.logging.log_dir,
                log_level=config.logging.log_level.value,
                console_level=config.logging.console_level.value,
                json_logs=config.logging.json_logs,
                max_bytes=config.logging.max_bytes,
                backup_count=config.logging.backup_count,
            )
        logger.info("Config loaded")

        # 3. Clock
        self._clock = clock or RealTimeClock()
        logger.info(f"Clock initialized: {type(self._clock).__name__}")

        # 4. State
        if config.store.backend == StoreBackend.SQLITE:
            self._store = SqliteTransactionStore(
                db_path=config.store.db_path,
                clock=self._clock,
                busy_timeout_ms=config.store.busy_timeout_ms,
            )
        else:
            self._store = MemoryTransactionStore(clock=self._clock)
        logger.info(f"Store initialized: {type(self._store).__name__}")

        if config.journal.enabled:
            self._journal = TransactionLog(config.journal.path, clock=self._clock)

        negotiation = config.negotiation
        self._authority = TransitionAuthority(
            offer_ttl=timedelta(hours=negotiation.offer_ttl_hours),
            swap_ttl=_hours(negotiation.swap_ttl_hours),
            counter_resets_expiry=negotiation.counter_resets_expiry,
        )

        # 5. Events
        self._event_bus = DealEventBus(
            max_queue_size=config.events.max_queue_size,
            synchronous=config.events.synchronous,
        )
        self._relay = NotificationRelay(emitter or LoggingNotificationEmitter())
        self._relay.attach(self._event_bus)

        # 6. Engine
        self._coordinator = FulfillmentCoordinator(self._authority)
        self._collector = RatingCollector(self._authority)
        self._engine = DealEngine(
            self._store,
            self._authority,
            self._coordinator,
            self._collector,
            self._clock,
            event_bus=self._event_bus,
            journal=self._journal,
            max_merge_attempts=config.fulfillment.max_merge_attempts,
            default_timezone=config.fulfillment.default_timezone,
        )

        # 7. Sweeper
        self._sweeper = ExpirySweeper(
            self._engine,
            interval_s=config.sweeper.interval_s,
            batch_size=config.sweeper.batch_size,
            stall_after=_hours(config.fulfillment.stall_after_hours),
        )

        logger.info("Container initialized")

    # ========================================================================
    # COMPONENT ACCESSORS
    # ========================================================================

    def get_config(self) -> DealDeskConfig:
        if self._config is None:
            raise RuntimeError("Container not initialized")
        return self._config

    def get_clock(self) -> Clock:
        if self._clock is None:
            raise RuntimeError("Container not initialized")
        return self._clock

    def get_store(self) -> TransactionStore:
        if self._store is None:
            raise RuntimeError("Container not initialized")
        return self._store

    def get_journal(self) -> Optional[TransactionLog]:
        return self._journal

    def get_event_bus(self) -> DealEventBus:
        if self._event_bus is None:
            raise RuntimeError("Container not initialized")
        return self._event_bus

    def get_relay(self) -> NotificationRelay:
        if self._relay is None:
            raise RuntimeError("Container not initialized")
        return self._relay

    def get_engine(self) -> DealEngine:
        if self._engine is None:
            raise RuntimeError("Container not initialized")
        return self._engine

    def get_sweeper(self) -> ExpirySweeper:
        if self._sweeper is None:
            raise RuntimeError("Container not initialized")
        return self._sweeper

    # ========================================================================
    # LIFECYCLE
    # ========================================================================

    def start(self, run_sweeper: Optional[bool] = None) -> None:
        """Start the event bus and (if enabled) the sweeper thread."""
        if self._event_bus is None:
            raise RuntimeError("Container not initialized")
        self._event_bus.start()

        if run_sweeper is None:
            run_sweeper = self._config.sweeper.enabled
        if run_sweeper:
            self._sweeper.start()

        logger.info("Container started")

    def stop(self) -> None:
        """Stop all stoppable components."""
        if self._sweeper:
            try:
                self._sweeper.stop()
            except Exception as e:
                logger.error(f"Error stopping sweeper: {e}")

        if self._event_bus and self._event_bus.is_running:
            try:
                self._event_bus.stop(timeout=5.0)
            except Exception as e:
                logger.error(f"Error stopping event bus: {e}")

        if self._journal:
            try:
                self._journal.close()
            except Exception as e:
                logger.error(f"Error closing journal: {e}")

        if self._store:
            try:
                self._store.close()
            except Exception as e:
                logger.error(f"Error closing store: {e}")

        logger.info("Container stopped")
