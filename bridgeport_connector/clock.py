"""Clock abstraction so governor state can be driven deterministically in tests."""

import asyncio
import time
from datetime import UTC, datetime, timedelta
from typing import Protocol


class Clock(Protocol):
    """Source of time for rate limiting and circuit breaking."""

    def monotonic(self) -> float: ...

    def now(self) -> datetime: ...

    async def sleep(self, seconds: float) -> None: ...


class SystemClock:
    """Wall clock backed by the event loop."""

    def monotonic(self) -> float:
        return time.monotonic()

    def now(self) -> datetime:
        return datetime.now(UTC)

    async def sleep(self, seconds: float) -> None:
        await asyncio.sleep(seconds)


class ManualClock:
    """
    Clock that only moves when told to.

    `sleep` advances the clock instead of waiting, so queued rate-limit
    acquisitions resolve immediately in tests.
    """

    def __init__(self, start: float = 0.0, wall_start: datetime | None = None):
        self._offset = start
        self._wall_start = wall_start or datetime(2024, 1, 1, tzinfo=UTC)
        self.sleeps: list[float] = []

    def monotonic(self) -> float:
        return self._offset

    def now(self) -> datetime:
        return self._wall_start + timedelta(seconds=self._offset)

    def advance(self, seconds: float) -> None:
        self._offset += seconds

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.advance(seconds)
        await asyncio.sleep(0)
