"""
Timer abstraction and attempt schedules for the polling loops.

The assistant run loop, the vector-store readiness loop and the result
poller all suspend through a ``Sleeper`` so tests can drive them without
wall-clock delays.
"""

import asyncio
from dataclasses import dataclass
from typing import Iterator, Optional


class Sleeper:
    """Suspends the current task for a number of seconds."""

    async def sleep(self, seconds: float) -> None:
        raise NotImplementedError


class AsyncioSleeper(Sleeper):
    async def sleep(self, seconds: float) -> None:
        await asyncio.sleep(seconds)


@dataclass(frozen=True)
class PollSchedule:
    """
    Attempt budget and interval for a polling loop.

    With ``backoff_after`` set, the interval grows by ``backoff_factor`` per
    attempt once that many attempts have elapsed, capped at ``max_interval``.
    """

    interval: float
    max_attempts: int
    backoff_after: Optional[int] = None
    backoff_factor: float = 1.25
    max_interval: Optional[float] = None

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.interval < 0:
            raise ValueError("interval must not be negative")

    def delay_after(self, attempt: int) -> float:
        """Delay to wait after the given 1-indexed attempt."""
        if self.backoff_after is None or attempt <= self.backoff_after:
            return self.interval
        delay = self.interval * (self.backoff_factor ** (attempt - self.backoff_after))
        if self.max_interval is not None:
            delay = min(delay, self.max_interval)
        return round(delay, 3)

    def delays(self) -> Iterator[float]:
        """Delays between consecutive attempts (one fewer than attempts)."""
        for attempt in range(1, self.max_attempts):
            yield self.delay_after(attempt)

    @property
    def budget_seconds(self) -> float:
        return sum(self.delays())
