"""
Clock abstractions for deterministic timing.

Components never read wall-clock time or sleep directly; they are handed a
Clock. ``SystemClock`` is used in production, ``ManualClock`` lets tests move
time forward explicitly so TTLs, backoff delays, probe intervals and
auto-hide timers run without real waiting.
"""

from __future__ import annotations

import asyncio
from datetime import UTC, datetime, timedelta
from typing import Protocol


def parse_timestamp(value: str) -> datetime:
    """Parse an ISO 8601 timestamp, reading naive values as UTC."""
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


class Clock(Protocol):
    """A source of time and delays."""

    def now(self) -> datetime:
        """Return the current time as a timezone-aware datetime."""
        ...

    async def sleep(self, seconds: float) -> None:
        """Suspend the calling task for ``seconds``."""
        ...


class SystemClock:
    """Clock backed by the system time and ``asyncio.sleep``."""

    def now(self) -> datetime:
        return datetime.now(UTC)

    async def sleep(self, seconds: float) -> None:
        await asyncio.sleep(max(seconds, 0.0))


class ManualClock:
    """Clock that only moves when told to.

    Sleepers are parked until ``advance`` moves the clock past their wake-up
    time. Waking happens in deadline order.

    Example:
        >>> clock = ManualClock()
        >>> task = asyncio.create_task(clock.sleep(30))
        >>> await clock.advance(30)
        >>> assert task.done()
    """

    def __init__(self, start: datetime | None = None) -> None:
        if start is None:
            start = datetime(2024, 1, 1, tzinfo=UTC)
        elif start.tzinfo is None:
            start = start.replace(tzinfo=UTC)
        self._now = start
        self._sleepers: list[tuple[datetime, int, asyncio.Future[None]]] = []
        self._counter = 0

    def now(self) -> datetime:
        return self._now

    async def sleep(self, seconds: float) -> None:
        if seconds <= 0:
            await asyncio.sleep(0)
            return

        future: asyncio.Future[None] = asyncio.get_running_loop().create_future()
        self._counter += 1
        self._sleepers.append((self._now + timedelta(seconds=seconds), self._counter, future))
        await future

    @property
    def pending_sleepers(self) -> int:
        """Number of tasks currently parked in ``sleep``."""
        return sum(1 for _, _, future in self._sleepers if not future.done())

    async def advance(self, seconds: float) -> None:
        """Move time forward and run every task whose sleep has elapsed.

        Args:
            seconds: How far to move the clock
        """
        target = self._now + timedelta(seconds=seconds)
        # Tasks created just before the call must get to park first.
        await self._settle()

        while True:
            due = sorted(
                (entry for entry in self._sleepers if entry[0] <= target),
                key=lambda entry: (entry[0], entry[1]),
            )
            if not due:
                break
            wake_at, _, future = due[0]
            self._sleepers.remove(due[0])
            self._now = max(self._now, wake_at)
            if not future.done():
                future.set_result(None)
            await self._settle()

        self._now = target
        await self._settle()

    @staticmethod
    async def _settle(rounds: int = 50) -> None:
        # Let woken tasks run until they park again.
        for _ in range(rounds):
            await asyncio.sleep(0)
