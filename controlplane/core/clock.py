"""Clock abstraction so month rollover and idle timeouts are testable."""

from datetime import datetime, timedelta

from controlplane.models.base import utcnow


class Clock:
    """Wall clock returning naive UTC datetimes (matches stored timestamps)."""

    def now(self) -> datetime:
        return utcnow()


class FrozenClock(Clock):
    """A clock that only moves when told to. Used by tests and replays."""

    def __init__(self, start: datetime) -> None:
        self._now = start

    def now(self) -> datetime:
        return self._now

    def set(self, value: datetime) -> None:
        self._now = value

    def advance(self, **delta: float) -> datetime:
        self._now = self._now + timedelta(**delta)
        return self._now


system_clock = Clock()
