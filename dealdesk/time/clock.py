"""
Time abstraction layer for DealDesk.

Provides an injectable clock that can be:
- Real-time (for the running marketplace)
- Simulated (for tests and replays)

Every deadline check (offer windows, sweeps, stalled fulfillment) reads
time through a Clock so that expiry is testable without sleeping.
"""

from abc import ABC, abstractmethod
from datetime import datetime, timezone, timedelta
from typing import Optional
import threading
import time as _time_mod

import pytz


class Clock(ABC):
    """Abstract clock interface"""

    @abstractmethod
    def now(self) -> datetime:
        """Get current time (always UTC)"""
        pass


class RealTimeClock(Clock):
    """Wall clock"""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)


class SimulatedClock(Clock):
    """Manually driven clock for tests and replays"""

    def __init__(self, start_time: Optional[datetime] = None):
        """
        Args:
            start_time: Initial time (must be timezone-aware). Defaults to now.
        """
        if start_time is None:
            start_time = utc_now()
        if start_time.tzinfo is None:
            raise ValueError("start_time must be timezone-aware (UTC)")

        self._current_time = start_time.astimezone(timezone.utc)
        self._lock = threading.Lock()

    def now(self) -> datetime:
        with self._lock:
            return self._current_time

    def advance(self, delta: Optional[timedelta] = None, **kwargs) -> datetime:
        """
        Advance simulated time.

        Accepts a timedelta or timedelta keyword arguments:
            clock.advance(timedelta(hours=2))
            clock.advance(hours=2)
        """
        if delta is None:
            delta = timedelta(**kwargs)
        with self._lock:
            self._current_time += delta
            return self._current_time

    def set_time(self, new_time: datetime):
        """Set simulated time to specific value (must be timezone-aware)."""
        if new_time.tzinfo is None:
            raise ValueError("new_time must be timezone-aware (UTC)")
        with self._lock:
            self._current_time = new_time.astimezone(timezone.utc)


# ============================================================================
# TIME NORMALIZATION HELPERS
# ============================================================================

def utc_now() -> datetime:
    """
    Canonical way to get the current UTC time as a timezone-aware datetime.
    """
    return datetime.now(timezone.utc)


def ensure_utc(dt: datetime) -> datetime:
    """
    Ensure *dt* is timezone-aware and in UTC.

    - If naive (no tzinfo): attach UTC (assumes caller meant UTC).
    - If aware but not UTC: convert to UTC.
    """
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def localize(dt: datetime, tz: str) -> datetime:
    """
    Interpret a naive wall-clock time in *tz* and return it in UTC.

    Meetup times typed by users are local to the marketplace; aware
    datetimes pass through unchanged (converted to UTC).
    """
    if dt.tzinfo is not None:
        return dt.astimezone(timezone.utc)
    return pytz.timezone(tz).localize(dt).astimezone(timezone.utc)


def epoch_ms(dt: Optional[datetime] = None) -> int:
    """
    Return milliseconds since Unix epoch for *dt* (or now if None).
    """
    if dt is None:
        return int(_time_mod.time() * 1000)
    return int(ensure_utc(dt).timestamp() * 1000)


def from_epoch_ms(value: Optional[int]) -> Optional[datetime]:
    if value is None:
        return None
    return datetime.fromtimestamp(value / 1000, tz=timezone.utc)


def parse_timestamp(value) -> Optional[datetime]:
    """Parse an ISO-8601 string (or pass through a datetime) as UTC."""
    if value is None or isinstance(value, datetime):
        return ensure_utc(value) if value is not None else None
    return ensure_utc(datetime.fromisoformat(value))
