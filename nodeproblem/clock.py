"""Clock abstraction used to stamp condition heartbeat times."""

from __future__ import annotations

import threading
from datetime import UTC, datetime, timedelta
from typing import Protocol

_EPOCH = datetime(1970, 1, 1, tzinfo=UTC)


class Clock(Protocol):
    def now(self) -> datetime: ...


class RealClock:
    """Wall clock, timezone-aware UTC."""

    def now(self) -> datetime:
        return datetime.now(tz=UTC)


class FakeClock:
    """Manually driven clock for tests.

    ``now()`` keeps returning the same instant until ``set()`` or ``step()``
    moves it.
    """

    def __init__(self, t: datetime) -> None:
        self._lock = threading.Lock()
        self._time = t

    def now(self) -> datetime:
        with self._lock:
            return self._time

    def set(self, t: datetime) -> None:
        with self._lock:
            self._time = t

    def step(self, d: timedelta) -> None:
        with self._lock:
            self._time += d


def format_rfc3339(t: datetime) -> str:
    """Render *t* the way the API server serialises object timestamps.

    Second precision, UTC, ``Z`` suffix. Naive datetimes are taken as UTC.
    """
    if t.tzinfo is None:
        t = t.replace(tzinfo=UTC)
    return t.astimezone(UTC).strftime("%Y-%m-%dT%H:%M:%SZ")


def unix_nanos(t: datetime) -> int:
    if t.tzinfo is None:
        t = t.replace(tzinfo=UTC)
    return (t - _EPOCH) // timedelta(microseconds=1) * 1000

