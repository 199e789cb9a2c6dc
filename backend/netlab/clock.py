"""Time sources for reservation lifecycle decisions."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Protocol

# purpose: inject "now" into schedulers, reapers and webhook handling
# status: active


class Clock(Protocol):
    def now(self) -> datetime: ...


class SystemClock:
    """Wall clock in UTC."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)


class FrozenClock:
    """Clock pinned to an instant; tests move it with ``advance``."""

    def __init__(self, instant: datetime) -> None:
        self._instant = as_utc(instant)

    def now(self) -> datetime:
        return self._instant

    def set(self, instant: datetime) -> None:
        self._instant = as_utc(instant)

    def advance(self, delta) -> datetime:
        self._instant = self._instant + delta
        return self._instant


def as_utc(value: datetime) -> datetime:
    """Return ``value`` as an aware UTC datetime (naive values are taken as UTC)."""

    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


_system_clock = SystemClock()


def get_clock() -> Clock:
    return _system_clock
