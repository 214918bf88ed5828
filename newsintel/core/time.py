"""Time utilities and injectable clocks.

All TTL, decay and window arithmetic goes through a ``Clock`` so tests can
freeze or advance time deterministically with ``FakeClock``.
"""
import time
from datetime import datetime, timedelta, timezone
from typing import Optional


def utc_now() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def ensure_utc(dt: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive datetimes and convert aware ones."""
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def days_between(earlier: datetime, later: datetime) -> float:
    """Fractional days from ``earlier`` to ``later``, never negative."""
    delta = ensure_utc(later) - ensure_utc(earlier)
    return max(0.0, delta.total_seconds() / 86400.0)


def hours_between(earlier: datetime, later: datetime) -> float:
    return days_between(earlier, later) * 24.0


def month_key(dt: datetime) -> str:
    """YYYY-MM bucket used by search aggregations."""
    return ensure_utc(dt).strftime("%Y-%m")


class Clock:
    """System clock."""

    def now(self) -> datetime:
        return utc_now()

    def monotonic(self) -> float:
        return time.monotonic()


class FakeClock(Clock):
    """Manually advanced clock for tests."""

    def __init__(self, start: Optional[datetime] = None):
        self._now = ensure_utc(start) or datetime(2025, 1, 15, 12, 0, tzinfo=timezone.utc)
        self._mono = 0.0

    def now(self) -> datetime:
        return self._now

    def monotonic(self) -> float:
        return self._mono

    def advance(self, seconds: float = 0.0, **kwargs) -> datetime:
        """Move time forward by seconds (or timedelta keyword arguments)."""
        delta = timedelta(seconds=seconds, **kwargs)
        self._now += delta
        self._mono += delta.total_seconds()
        return self._now

    def set(self, when: datetime) -> None:
        when = ensure_utc(when)
        self._mono += max(0.0, (when - self._now).total_seconds())
        self._now = when
