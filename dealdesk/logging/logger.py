"""
Core logging module with structured logging and correlation ID tracking.

Architecture:
- One log stream per engine concern (system, negotiation, fulfillment, ratings, sweeper, store, events)
- JSON formatting for audit and offline analysis
- Human-readable console formatting for development
- Correlation ID propagation (one transaction id per engine call)
- Automatic rotation
"""

import logging
import logging.handlers
from pathlib import Path
from typing import Optional
from contextvars import ContextVar
import uuid

# Context variable for correlation ID (thread-safe)
_correlation_id: ContextVar[Optional[str]] = ContextVar('correlation_id', default=None)

LOGGER_NAMESPACE = "dealdesk"


# ============================================================================
# LOG STREAM DEFINITIONS
# ============================================================================

class LogStream:
    """Log stream identifiers."""
    SYSTEM = "system"             # Wiring, startup, shutdown
    NEGOTIATION = "negotiation"   # Offer/swap proposals and decisions
    FULFILLMENT = "fulfillment"   # Exchange mode, photos, shipping, meetups
    RATINGS = "ratings"           # Rating collection
    SWEEPER = "sweeper"           # Expiry sweeps, stalled fulfillment
    STORE = "store"               # Persistence, journal
    EVENTS = "events"             # Event bus, notifications

    @classmethod
    def all(cls):
        return [cls.SYSTEM, cls.NEGOTIATION, cls.FULFILLMENT, cls.RATINGS,
                cls.SWEEPER, cls.STORE, cls.EVENTS]


# ============================================================================
# CORRELATION ID MANAGEMENT
# ============================================================================

def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    """
    Set correlation ID for current context.

    Args:
        correlation_id: Optional correlation ID. If None, generates new UUID.

    Returns:
        The correlation ID that was set
    """
    if correlation_id is None:
        correlation_id = str(uuid.uuid4())
    _correlation_id.set(correlation_id)
    return correlation_id


def get_correlation_id() -> Optional[str]:
    """Get correlation ID for current context."""
    return _correlation_id.get()


class LogContext:
    """
    Context manager for scoped correlation ID.

    Usage:
        with LogContext(transaction_id):
            logger.info("Accepting offer")  # Includes correlation_id
    """

    def __init__(self, correlation_id: Optional[str] = None):
        self.correlation_id = correlation_id
        self._token = None

    def __enter__(self):
        self.correlation_id = self.correlation_id or str(uuid.uuid4())
        self._token = _correlation_id.set(self.correlation_id)
        return self.correlation_id

    def __exit__(self, exc_type, exc_val, exc_tb):
        _correlation_id.reset(self._token)


# ============================================================================
# CUSTOM LOG RECORD FACTORY
# ============================================================================

_original_factory = logging.getLogRecordFactory()


def _correlation_id_factory(*args, **kwargs):
    """
    Custom log record factory that injects correlation ID.
    """
    record = _original_factory(*args, **kwargs)
    record.correlation_id = get_correlation_id()
    return record


# Install custom factory
logging.setLogRecordFactory(_correlation_id_factory)


# ============================================================================
# LOGGER SETUP
# ============================================================================

_loggers_initialized = False


def setup_logging(
    log_dir: Path = Path("logs"),
    log_level: str = "INFO",
    console_level: str = "INFO",
    json_logs: bool = True,
    max_bytes: int = 10_000_000,  # 10MB
    backup_count: int = 5
) -> None:
    """
    Initialize logging infrastructure.

    Creates one rotating file per stream, e.g.:
    - logs/negotiation/negotiation.log (JSON)
    - logs/fulfillment/fulfillment.log (JSON)
    - logs/sweeper/sweeper.log (JSON)

    Args:
        log_dir: Base directory for logs
        log_level: File logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        console_level: Console logging level
        json_logs: If True, use JSON formatting
        max_bytes: Max bytes per log file before rotation
        backup_count: Number of backup files to keep
    """
    global _loggers_initialized

    if _loggers_initialized:
        return

    log_dir = Path(log_dir)
    for stream in LogStream.all():
        (log_dir / stream).mkdir(parents=True, exist_ok=True)

    from .formatters import JSONFormatter, ConsoleFormatter

    # Capture everything at the namespace, filter at handler level
    namespace = logging.getLogger(LOGGER_NAMESPACE)
    namespace.setLevel(logging.DEBUG)

    root = logging.getLogger()
    if not any(getattr(h, "_dealdesk_console", False) for h in root.handlers):
        console_handler = logging.StreamHandler()
        console_handler.setLevel(getattr(logging, console_level.upper()))
        console_handler.setFormatter(ConsoleFormatter())
        console_handler._dealdesk_console = True
        root.addHandler(console_handler)

    file_level = getattr(logging, log_level.upper())

    for stream in LogStream.all():
        log_file = log_dir / stream / f"{stream}.log"

        handler = logging.handlers.RotatingFileHandler(
            log_file,
            maxBytes=max_bytes,
            backupCount=backup_count,
            encoding='utf-8'
        )
        handler.setLevel(file_level)

        if json_logs:
            handler.setFormatter(JSONFormatter())
        else:
            handler.setFormatter(logging.Formatter(
                '%(asctime)s - %(name)s - %(levelname)s - %(correlation_id)s - %(message)s'
            ))

        logger = get_logger(stream)
        logger.addHandler(handler)
        logger.setLevel(file_level)
        logger.propagate = True  # Also send to root logger (console)

    _loggers_initialized = True

    get_logger(LogStream.SYSTEM).info(
        "Logging system initialized",
        extra={
            "log_dir": str(log_dir),
            "log_level": log_level,
            "json_logs": json_logs
        }
    )


def get_logger(stream: str) -> logging.Logger:
    """
    Get logger for specific stream.

    Example:
        logger = get_logger(LogStream.NEGOTIATION)
        logger.info("Offer accepted", extra={"transaction_id": "abc"})
    """
    return logging.getLogger(f"{LOGGER_NAMESPACE}.{stream}")


# ============================================================================
# PERFORMANCE LOGGING DECORATOR
# ============================================================================

def log_performance(stream: str = LogStream.SYSTEM):
    """
    Decorator to log function execution time.

    Usage:
        @log_performance(LogStream.SWEEPER)
        def sweep(self):
            ...
    """
    def decorator(func):
        import functools
        import time

        @functools.wraps(func)
        def wrapper(*args, **kwargs):
            logger = get_logger(stream)
            start = time.perf_counter()

            try:
                result = func(*args, **kwargs)
            except Exception as e:
                elapsed = time.perf_counter() - start
                logger.debug(
                    f"{func.__name__} failed",
                    extra={
                        "function": func.__name__,
                        "duration_ms": round(elapsed * 1000, 2),
                        "success": False,
                        "error_type": type(e).__name__
                    }
                )
                raise

            elapsed = time.perf_counter() - start
            logger.debug(
                f"{func.__name__} completed",
                extra={
                    "function": func.__name__,
                    "duration_ms": round(elapsed * 1000, 2),
                    "success": True
                }
            )
            return result

        return wrapper
    return decorator
