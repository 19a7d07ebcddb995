"""Tests for sequential step execution and groups."""

from __future__ import annotations

import asyncio
import logging
import time
from typing import TYPE_CHECKING

import pytest

from loadscript import group, request, sleep, status_equals
from loadscript._internal.errors import NetworkError
from loadscript.engine.checks import CheckTally
from loadscript.engine.executor import HttpExecutor
from loadscript.engine.group import IterationContext, NetworkErrorLog, StepStats, run_group, run_steps
from loadscript.engine.pacing import PacingController

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from loadscript.engine.executor import RequestMetric


@pytest.fixture
async def make_ctx() -> AsyncIterator:
    executors: list[HttpExecutor] = []

    async def _make(base_url: str, metrics: list[RequestMetric] | None = None) -> IterationContext:
        callback = metrics.append if metrics is not None else None
        executor = HttpExecutor(base_url=base_url, metric_callback=callback)
        await executor.__aenter__()
        executors.append(executor)
        stop, abort = asyncio.Event(), asyncio.Event()
        return IterationContext(
            executor=executor,
            pacing=PacingController(stop, abort),
            tally=CheckTally(),
            abort=abort,
        )

    yield _make
    for executor in executors:
        await executor.__aexit__(None, None, None)


def _pizza_steps() -> tuple:
    return (
        group("Default group", [
            request("GET", "/", name="Home", checks={"status equals 200": status_equals(200)}),
            request(
                "POST",
                "/api/pizza",
                name="Create pizza",
                json={"maxCaloriesPerSlice": 1000},
                headers={"authorization": "Token abcdef0123456789"},
                checks={"status equals 200": status_equals(200)},
            ),
            request(
                "POST",
                "/api/ratings",
                name="Rate pizza",
                json={"pizza_id": 24596, "stars": 5},
                checks={"status equals 401": status_equals(401)},
            ),
        ]),
        sleep(0.01),
    )


class TestStepStats:
    def test_add(self):
        total = StepStats(steps_run=1, checks_passed=2)
        total.add(StepStats(steps_run=2, steps_failed=1, network_errors=1, checks_failed=1))
        assert total == StepStats(
            steps_run=3, steps_failed=1, steps_skipped=0, network_errors=1, checks_passed=2, checks_failed=1
        )


class TestRunSteps:
    async def test_three_step_group_tallies_each_check(self, echo_server: str, make_ctx):
        metrics: list[RequestMetric] = []
        ctx = await make_ctx(echo_server, metrics)

        stats = await run_steps(_pizza_steps(), ctx)

        assert stats.steps_run == 3
        assert stats.steps_failed == 0
        assert stats.checks_passed == 3
        assert ctx.tally.as_counts() == {"status equals 200": (2, 0), "status equals 401": (1, 0)}
        assert [m.name for m in metrics] == ["Home", "Create pizza", "Rate pizza"]
        assert {m.group for m in metrics} == {"::Default group"}

    async def test_failed_check_does_not_stop_later_steps(self, echo_server: str, make_ctx):
        ctx = await make_ctx(echo_server)
        steps = (
            request("POST", "/api/ratings", checks={"status equals 200": status_equals(200)}),
            request("GET", "/", checks={"home ok": status_equals(200)}),
        )

        stats = await run_steps(steps, ctx)

        assert stats.steps_run == 2
        assert stats.steps_failed == 1
        assert ctx.tally.as_counts() == {"status equals 200": (0, 1), "home ok": (1, 0)}

    async def test_network_error_skips_checks_and_continues(self, closed_port_url: str, make_ctx):
        ctx = await make_ctx(closed_port_url)
        steps = (
            request("GET", "/", checks={"status equals 200": status_equals(200)}),
            request("GET", "/again", checks={"status equals 200": status_equals(200)}),
        )

        stats = await run_steps(steps, ctx)

        assert stats.steps_run == 2
        assert stats.network_errors == 2
        assert stats.steps_failed == 2
        assert ctx.tally.as_counts() == {}

    async def test_abort_skips_remaining_steps(self, echo_server: str, make_ctx):
        ctx = await make_ctx(echo_server)
        ctx.abort.set()

        stats = await run_steps(_pizza_steps(), ctx)

        assert stats.steps_run == 0
        assert stats.steps_skipped == 3

    async def test_abort_during_sleep_ends_iteration(self, echo_server: str, make_ctx):
        ctx = await make_ctx(echo_server)
        steps = (sleep(5), request("GET", "/"))
        asyncio.get_running_loop().call_later(0.05, ctx.abort.set)

        start = time.monotonic()
        stats = await run_steps(steps, ctx)

        assert time.monotonic() - start < 1.0
        assert stats.steps_skipped == 1
        assert stats.interrupted

    async def test_abort_cutting_last_sleep_interrupts(self, echo_server: str, make_ctx):
        ctx = await make_ctx(echo_server)
        steps = (request("GET", "/"), sleep(5))
        asyncio.get_running_loop().call_later(0.2, ctx.abort.set)

        stats = await run_steps(steps, ctx)

        assert stats.steps_run == 1
        assert stats.steps_skipped == 0
        assert stats.pauses_cut == 1
        assert stats.interrupted

    async def test_abort_after_last_step_is_not_an_interruption(self, echo_server: str, make_ctx):
        ctx = await make_ctx(echo_server)
        steps = (request("GET", "/"), sleep(0.01))

        stats = await run_steps(steps, ctx)
        ctx.abort.set()

        assert stats.steps_run == 1
        assert not stats.interrupted

    async def test_request_error_fails_only_its_step(self, echo_server: str, make_ctx):
        metrics: list[RequestMetric] = []
        ctx = await make_ctx(echo_server, metrics)
        steps = (
            request("GET", "/", name="Bad header", headers={"X-Injected": "a\r\nb"}),
            request("GET", "/", name="Home", checks={"home ok": status_equals(200)}),
        )

        stats = await run_steps(steps, ctx)

        assert stats.steps_run == 2
        assert stats.steps_failed == 1
        assert stats.network_errors == 0
        assert ctx.tally.as_counts() == {"home ok": (1, 0)}
        assert [m.name for m in metrics if m.status_code] == ["Home"]

    async def test_nested_group_paths(self, echo_server: str, make_ctx):
        metrics: list[RequestMetric] = []
        ctx = await make_ctx(echo_server, metrics)
        inner = group("Inner", [request("GET", "/", name="b")])
        outer = group("Outer", [request("GET", "/", name="a"), inner])

        await run_group(outer, ctx)

        assert [(m.name, m.group) for m in metrics] == [("a", "::Outer"), ("b", "::Outer::Inner")]

    async def test_sleep_step_pauses(self, echo_server: str, make_ctx):
        ctx = await make_ctx(echo_server)
        start = time.monotonic()
        await run_steps((sleep(0.2),), ctx)
        assert time.monotonic() - start >= 0.19


class _RecordList(logging.Handler):
    def __init__(self) -> None:
        super().__init__(level=logging.DEBUG)
        self.records: list[logging.LogRecord] = []

    def emit(self, record: logging.LogRecord) -> None:
        self.records.append(record)


class TestNetworkErrorLog:
    def test_first_failure_per_name_is_a_warning(self):
        log = NetworkErrorLog()
        error = NetworkError("ClientConnectorError: refused", method="GET", url="http://x/")
        logger = logging.getLogger("loadscript.engine.group")
        handler = _RecordList()
        previous_level = logger.level
        logger.addHandler(handler)
        logger.setLevel(logging.DEBUG)
        try:
            log.report("Home", error)
            log.report("Home", error)
            log.report("Rate pizza", error)
        finally:
            logger.removeHandler(handler)
            logger.setLevel(previous_level)

        levels = [(r.levelno, "Home" in r.getMessage()) for r in handler.records]
        assert levels == [(logging.WARNING, True), (logging.DEBUG, True), (logging.WARNING, False)]
