"""
Logging infrastructure for DealDesk.

Features:
- JSON structured logging
- Correlation ID tracking (trace one transaction across engine, store and events)
- One log stream per concern
- Automatic performance timing
- Log rotation
"""

from .logger import (
    get_logger,
    setup_logging,
    LogContext,
    log_performance,
    set_correlation_id,
    get_correlation_id,
    LogStream,
)

from .formatters import (
    JSONFormatter,
    ConsoleFormatter,
)

__all__ = [
    "get_logger",
    "setup_logging",
    "LogContext",
    "log_performance",
    "set_correlation_id",
    "get_correlation_id",
    "LogStream",
    "JSONFormatter",
    "ConsoleFormatter",
]
