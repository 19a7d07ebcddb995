"""Tests for the pacing controller and the token bucket rate limiter."""

from __future__ import annotations

import asyncio
import time

import pytest

from loadscript.engine.pacing import PacingController, TokenBucketRateLimiter


def _controller() -> tuple[PacingController, asyncio.Event, asyncio.Event]:
    stop, interrupt = asyncio.Event(), asyncio.Event()
    return PacingController(stop, interrupt), stop, interrupt


class TestPause:
    async def test_fixed_pause_waits(self):
        pacing, _, _ = _controller()
        start = time.monotonic()
        paused = await pacing.pause(0.2)
        assert time.monotonic() - start >= 0.19
        assert paused >= 0.19

    async def test_random_pause_within_bounds(self):
        pacing, _, _ = _controller()
        paused = await pacing.pause(0.05, 0.1)
        assert 0.04 <= paused < 0.2

    async def test_zero_pause_returns_immediately(self):
        pacing, _, _ = _controller()
        assert await pacing.pause(0) == 0.0

    async def test_interrupt_cuts_pause_short(self):
        pacing, _, interrupt = _controller()
        asyncio.get_running_loop().call_later(0.05, interrupt.set)
        start = time.monotonic()
        await pacing.pause(5.0)
        assert time.monotonic() - start < 1.0

    async def test_stop_does_not_cut_step_pause(self):
        pacing, stop, _ = _controller()
        stop.set()
        paused = await pacing.pause(0.1)
        assert paused >= 0.09

    async def test_already_interrupted_skips_pause(self):
        pacing, _, interrupt = _controller()
        interrupt.set()
        assert await pacing.pause(5.0) == 0.0

    async def test_other_tasks_keep_running_during_pause(self):
        pacing, _, _ = _controller()
        ticks = 0

        async def _ticker() -> None:
            nonlocal ticks
            for _ in range(5):
                await asyncio.sleep(0.01)
                ticks += 1

        await asyncio.gather(pacing.pause(0.1), _ticker())
        assert ticks == 5


class TestPauseBetweenIterations:
    async def test_no_pause_configured(self):
        pacing, _, _ = _controller()
        assert await pacing.pause_between_iterations((0.0, 0.0)) == 0.0

    async def test_stop_cuts_iteration_pause_short(self):
        pacing, stop, _ = _controller()
        asyncio.get_running_loop().call_later(0.05, stop.set)
        start = time.monotonic()
        await pacing.pause_between_iterations((5.0, 5.0))
        assert time.monotonic() - start < 1.0

    async def test_pause_in_range(self):
        pacing, _, _ = _controller()
        paused = await pacing.pause_between_iterations((0.02, 0.05))
        assert 0.015 <= paused < 0.2


class TestTokenBucketRateLimiter:
    def test_invalid_rate_raises(self):
        with pytest.raises(ValueError, match="positive"):
            TokenBucketRateLimiter(rate=0)

    def test_capacity_defaults_to_rate(self):
        assert TokenBucketRateLimiter(rate=50).capacity == 50
        assert TokenBucketRateLimiter(rate=0.5).capacity == 1.0

    async def test_burst_is_immediate(self):
        limiter = TokenBucketRateLimiter(rate=10)
        start = time.monotonic()
        for _ in range(10):
            await limiter.acquire()
        assert time.monotonic() - start < 0.1

    async def test_waits_when_empty(self):
        limiter = TokenBucketRateLimiter(rate=10, capacity=1)
        await limiter.acquire()
        start = time.monotonic()
        await limiter.acquire()
        assert time.monotonic() - start >= 0.08

    async def test_concurrent_waiters_are_rate_limited(self):
        limiter = TokenBucketRateLimiter(rate=20, capacity=1)
        start = time.monotonic()
        await asyncio.gather(*(limiter.acquire() for _ in range(5)))
        assert time.monotonic() - start >= 0.18
