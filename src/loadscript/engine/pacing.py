"""Pauses between steps and iterations, and request-rate limiting."""

from __future__ import annotations

import asyncio
import random
import time
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from loadscript._internal.types import PauseRange


class TokenBucketRateLimiter:
    """Async token-bucket rate limiter.

    Each ``acquire()`` consumes one token; tokens refill at ``rate`` per
    second up to ``capacity``, which allows short bursts. One limiter is
    shared by every virtual user of a process.

    Attributes:
        rate: Tokens added per second.
        capacity: Maximum token count (burst capacity).
    """

    def __init__(self, rate: float, capacity: float | None = None) -> None:
        """Initialize the rate limiter.

        Args:
            rate: Tokens per second. Must be positive.
            capacity: Maximum tokens. Defaults to ``rate`` (1 second of burst).

        Raises:
            ValueError: If rate is not positive.
        """
        if rate <= 0:
            msg = f"rate must be positive, got {rate}"
            raise ValueError(msg)

        self.rate = rate
        self.capacity = capacity if capacity is not None else max(rate, 1.0)
        self._tokens = self.capacity
        self._last_refill = time.monotonic()
        self._lock = asyncio.Lock()

    async def acquire(self) -> None:
        """Take one token, waiting until one is available."""
        async with self._lock:
            self._refill()
            while self._tokens < 1.0:
                # Holding the lock while waiting keeps waiters in FIFO order
                await asyncio.sleep((1.0 - self._tokens) / self.rate)
                self._refill()
            self._tokens -= 1.0

    def _refill(self) -> None:
        now = time.monotonic()
        self._tokens = min(self.capacity, self._tokens + (now - self._last_refill) * self.rate)
        self._last_refill = now


class PacingController:
    """Suspends one virtual user without blocking the others.

    ``pause`` is cut short by ``interrupt`` (the run's abort signal):
    a sleep inside an iteration ends as soon as the run is aborted.
    ``pause_between_iterations`` is also cut short by ``stop``, since no
    further iteration will start once the run is stopping.
    """

    def __init__(self, stop: asyncio.Event, interrupt: asyncio.Event) -> None:
        self._stop = stop
        self._interrupt = interrupt

    async def pause(self, seconds: float, max_seconds: float | None = None) -> float:
        """Sleep ``seconds``, or a uniform random time up to ``max_seconds``.

        Args:
            seconds: Pause length, or the lower bound of a random range.
            max_seconds: Upper bound of a random range.

        Returns:
            The time actually paused, in seconds.
        """
        return await self._sleep(_pick(seconds, max_seconds), (self._interrupt,))

    async def pause_between_iterations(self, pause_range: PauseRange) -> float:
        """Apply the scenario's pause between two iterations of one user."""
        low, high = pause_range
        if high <= 0:
            return 0.0
        return await self._sleep(_pick(low, high), (self._interrupt, self._stop))

    @staticmethod
    async def _sleep(duration: float, events: tuple[asyncio.Event, ...]) -> float:
        start = time.monotonic()
        if duration <= 0 or any(event.is_set() for event in events):
            return 0.0

        waiters = [asyncio.ensure_future(event.wait()) for event in events]
        try:
            await asyncio.wait(waiters, timeout=duration, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for waiter in waiters:
                waiter.cancel()
        return time.monotonic() - start


def _pick(low: float, high: float | None) -> float:
    if high is None or high <= low:
        return low
    return random.uniform(low, high)  # noqa: S311
