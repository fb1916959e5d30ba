"""
Rate limiting for outbound calls to the remote analysis service.

One limiter instance is shared by every task that talks to the service. It
is injected explicitly rather than looked up from a module global, so tests
can hand it a ``VirtualClock`` and run minutes of simulated traffic instantly.

Uses collections.deque for O(1) operations: timestamps are stored in order,
allowing efficient cleanup from the left side.
"""

import asyncio
import logging
import time
from collections import deque
from typing import Protocol

from ..constants import RATE_LIMIT_WINDOW_SECONDS

logger = logging.getLogger(__name__)


class Clock(Protocol):
    """Time source used by the limiter and the gateway's backoff."""

    def now(self) -> float: ...

    async def sleep(self, seconds: float) -> None: ...


class MonotonicClock:
    """Wall-clock time via ``time.monotonic`` and ``asyncio.sleep``."""

    def now(self) -> float:
        return time.monotonic()

    async def sleep(self, seconds: float) -> None:
        await asyncio.sleep(seconds)


class VirtualClock:
    """Simulated clock: sleeping advances time instantly.

    Still yields to the event loop on every sleep so concurrent tasks
    interleave the way they would in real time.
    """

    def __init__(self, start: float = 0.0) -> None:
        self._now = start
        self.total_slept = 0.0

    def now(self) -> float:
        return self._now

    async def sleep(self, seconds: float) -> None:
        if seconds > 0:
            self._now += seconds
            self.total_slept += seconds
        await asyncio.sleep(0)

    def advance(self, seconds: float) -> None:
        self._now += seconds


class RateLimiter:
    """Async rate limiter with a minimum spacing and a rolling window.

    A caller is admitted once (a) at least ``min_interval`` seconds have
    passed since the previous admission and (b) fewer than
    ``max_per_window`` admissions happened in the last ``window`` seconds.
    The admission decision runs under a lock, so waiters pass one at a time;
    callers that never need the service never touch the limiter.
    """

    def __init__(
        self,
        min_interval: float,
        max_per_window: int,
        window: float = RATE_LIMIT_WINDOW_SECONDS,
        clock: Clock | None = None,
        enabled: bool = True,
    ):
        """Initialize rate limiter.

        Args:
            min_interval: Minimum seconds between two admissions
            max_per_window: Number of admissions allowed per window
            window: Rolling window length in seconds
            clock: Time source, defaults to ``MonotonicClock``
            enabled: When False, ``acquire`` admits immediately
        """
        if max_per_window < 1:
            raise ValueError("max_per_window must be at least 1")
        self.min_interval = max(0.0, min_interval)
        self.max_per_window = max_per_window
        self.window = window
        self.clock: Clock = clock or MonotonicClock()
        self.enabled = enabled
        self._timestamps: deque[float] = deque()
        self._last: float | None = None
        self._lock = asyncio.Lock()

    async def acquire(self) -> float:
        """Wait for a slot and record the admission.

        Returns:
            Seconds spent waiting.
        """
        if not self.enabled:
            return 0.0

        async with self._lock:
            waited = 0.0
            while True:
                now = self.clock.now()
                self._expire(now)

                delay = 0.0
                if self._last is not None:
                    delay = max(delay, self._last + self.min_interval - now)
                if len(self._timestamps) >= self.max_per_window:
                    # Wait until the oldest admission leaves the window
                    delay = max(delay, self._timestamps[0] + self.window - now)

                if delay <= 0:
                    break

                logger.debug(f"Rate limiting: waiting {delay:.1f}s before next request")
                await self.clock.sleep(delay)
                waited += delay

            self._timestamps.append(now)
            self._last = now
            return waited

    def _expire(self, now: float) -> None:
        cutoff = now - self.window
        while self._timestamps and self._timestamps[0] <= cutoff:
            self._timestamps.popleft()

    def requests_in_window(self) -> int:
        """Number of admissions inside the current rolling window."""
        self._expire(self.clock.now())
        return len(self._timestamps)

    @property
    def timestamps(self) -> list[float]:
        """Admission timestamps still inside the window."""
        return list(self._timestamps)
