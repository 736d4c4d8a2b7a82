"""Time abstraction layer"""

from .clock import (
    Clock,
    RealTimeClock,
    SimulatedClock,
    utc_now,
    ensure_utc,
    localize,
    epoch_ms,
    from_epoch_ms,
    parse_timestamp,
)

__all__ = [
    'Clock',
    'RealTimeClock',
    'SimulatedClock',
    'utc_now',
    'ensure_utc',
    'localize',
    'epoch_ms',
    'from_epoch_ms',
    'parse_timestamp',
]
