# File: evbooking/domain/clock.py
"""
Canonical service clock

Every temporal rule (7-day advance window, 12-hour cut-off, token expiry)
is evaluated against the injected clock at call time, never against a
client-supplied "now".
"""

from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone
import threading


class Clock(ABC):
    """Source of the current instant"""

    @abstractmethod
    def now(self) -> datetime:
        """Return the current timezone-aware instant"""
        pass


class SystemClock(Clock):
    """Wall clock in UTC"""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)


class FixedClock(Clock):
    """
    Settable clock for tests and simulations
    Thread-safe so concurrent test workers observe the same instant
    """

    def __init__(self, instant: datetime):
        if instant.tzinfo is None:
            raise ValueError("FixedClock requires a timezone-aware instant")
        self._instant = instant
        self._lock = threading.Lock()

    def now(self) -> datetime:
        with self._lock:
            return self._instant

    def set(self, instant: datetime) -> None:
        if instant.tzinfo is None:
            raise ValueError("FixedClock requires a timezone-aware instant")
        with self._lock:
            self._instant = instant

    def advance(self, delta: timedelta) -> datetime:
        with self._lock:
            self._instant = self._instant + delta
            return self._instant
