"""
Clocks used by the refresh scheduler.

The scheduler never reads the wall clock directly so tests can travel in time
with ManualClock instead of patching the standard library.
"""

from datetime import datetime, timedelta, timezone
from typing import Protocol

import anyio


class Clock(Protocol):
    def now(self) -> datetime:
        """Current time as a timezone-aware datetime."""
        ...

    async def sleep_until(self, deadline: datetime) -> None:
        """Suspend until `now() >= deadline`."""
        ...


class SystemClock:
    """Wall clock. Re-checks after waking so suspended hosts do not fire early."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)

    async def sleep_until(self, deadline: datetime) -> None:
        while True:
            remaining = (deadline - self.now()).total_seconds()
            if remaining <= 0:
                return
            await anyio.sleep(remaining)


class ManualClock:
    """Clock that only moves when told to."""

    def __init__(self, start: datetime | None = None):
        self._now = start or datetime.now(timezone.utc)
        self._sleepers: list[tuple[datetime, anyio.Event]] = []

    def now(self) -> datetime:
        return self._now

    async def sleep_until(self, deadline: datetime) -> None:
        if deadline <= self._now:
            return
        entry = (deadline, anyio.Event())
        self._sleepers.append(entry)
        try:
            await entry[1].wait()
        finally:
            if entry in self._sleepers:
                self._sleepers.remove(entry)

    def set_time(self, when: datetime) -> None:
        if when < self._now:
            raise ValueError("ManualClock cannot move backwards")
        self._now = when
        for deadline, event in list(self._sleepers):
            if deadline <= when:
                self._sleepers.remove((deadline, event))
                event.set()

    def advance(self, seconds: float) -> None:
        self.set_time(self._now + timedelta(seconds=seconds))

    @property
    def pending_deadlines(self) -> list[datetime]:
        return sorted(deadline for deadline, _ in self._sleepers)
