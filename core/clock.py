"""
Injectable UTC clock.

Every service operation reads the time once from its clock and uses that
single value for all expiry decisions it makes, so a list and a detail view
built from the same read can never disagree about whether something expired.
"""

import threading
from datetime import datetime, timedelta, timezone
from typing import Optional


def utcnow() -> datetime:
    """Naive UTC timestamp, the form stored by the database layer."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class Clock:
    """Wall clock backed by the system time."""

    def now(self) -> datetime:
        return utcnow()


class ManualClock(Clock):
    """
    Clock that only moves when told to.

    Used by tests and replay tools. Thread-safe so it can be shared by
    concurrent workers.
    """

    def __init__(self, start: Optional[datetime] = None):
        self._now = start or utcnow()
        self._lock = threading.Lock()

    def now(self) -> datetime:
        with self._lock:
            return self._now

    def advance(self, **delta) -> datetime:
        """Move the clock forward, e.g. ``clock.advance(minutes=5)``."""
        with self._lock:
            self._now = self._now + timedelta(**delta)
            return self._now

    def set(self, value: datetime) -> None:
        with self._lock:
            self._now = value
