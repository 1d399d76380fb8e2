"""
Sliding-window call counters.

Two policies share the window bookkeeping but not the behaviour at the limit:
- BlockingRateGuard (analysis path) suspends the caller until the window resets.
- RejectingRateGuard (generation path) raises QuotaExceededError immediately.
Each guard is owned by a single component and is not shared across components.
"""
import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Awaitable, Callable

from services.errors import QuotaExceededError

logger = logging.getLogger(__name__)


@dataclass
class RateWindow:
    window_start: float
    count: int = 0


class _SlidingWindowGuard:
    def __init__(
        self,
        limit: int,
        window_seconds: float,
        *,
        name: str = "rate",
        clock: Callable[[], float] = time.monotonic,
    ):
        if limit <= 0:
            raise ValueError("limit must be > 0")
        if window_seconds <= 0:
            raise ValueError("window_seconds must be > 0")
        self.limit = limit
        self.window_seconds = window_seconds
        self.name = name
        self._clock = clock
        self.window = RateWindow(window_start=clock())

    def _roll(self) -> float:
        """Reset the counter when the window has elapsed. Returns seconds left in the window."""
        now = self._clock()
        elapsed = now - self.window.window_start
        if elapsed >= self.window_seconds:
            self.window = RateWindow(window_start=now)
            elapsed = 0.0
        return self.window_seconds - elapsed

    @property
    def remaining(self) -> int:
        self._roll()
        return max(0, self.limit - self.window.count)


class BlockingRateGuard(_SlidingWindowGuard):
    def __init__(self, limit: int, window_seconds: float = 60.0, *, sleep: Callable[[float], Awaitable] = asyncio.sleep, **kwargs):
        super().__init__(limit, window_seconds, **kwargs)
        self._sleep = sleep

    async def acquire(self) -> None:
        # Re-check after waking: concurrent waiters must all see the same fresh window.
        while True:
            left = self._roll()
            if self.window.count < self.limit:
                break
            logger.warning(f"{self.name} limit of {self.limit}/{self.window_seconds:.0f}s reached, waiting {left:.1f}s")
            await self._sleep(left)
        self.window.count += 1


class RejectingRateGuard(_SlidingWindowGuard):
    def acquire(self) -> None:
        left = self._roll()
        if self.window.count >= self.limit:
            raise QuotaExceededError(
                f"{self.name} quota of {self.limit} per {self.window_seconds:.0f}s exhausted; retry in {left:.0f}s",
                retry_after=left,
            )
        self.window.count += 1
