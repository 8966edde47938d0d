"""
bookingfast/core/clock.py

Injectable time source. Every expiry comparison in the engine reads "now"
through a Clock so trial and grace-period logic can be tested without waiting.
"""

from datetime import datetime, timedelta, timezone
from typing import Optional, Protocol


class Clock(Protocol):
    def now(self) -> datetime:
        ...


class SystemClock:
    """Wall clock, always timezone-aware UTC."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)


class FrozenClock:
    """Manually advanced clock for tests and replays."""

    def __init__(self, start: Optional[datetime] = None):
        self._now = ensure_utc(start) if start else datetime.now(timezone.utc)

    def now(self) -> datetime:
        return self._now

    def set(self, value: datetime) -> None:
        self._now = ensure_utc(value)

    def advance(self, delta: Optional[timedelta] = None, **kwargs) -> datetime:
        self._now = self._now + (delta if delta is not None else timedelta(**kwargs))
        return self._now


_default_clock: Clock = SystemClock()


def get_clock() -> Clock:
    return _default_clock


def set_clock(clock: Clock) -> Clock:
    """Swap the process-wide clock. Returns the previous one."""
    global _default_clock
    previous = _default_clock
    _default_clock = clock
    return previous


def resolve_clock(clock: Optional[Clock] = None) -> Clock:
    return clock if clock is not None else _default_clock


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Treat naive datetimes (SQLite drops tzinfo) as UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)
