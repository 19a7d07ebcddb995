"""Sequential execution of scenario steps, groups and sleeps."""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from loadscript._internal.errors import NetworkError
from loadscript._internal.logging import get_logger
from loadscript.dsl.scenario import group_path
from loadscript.dsl.steps import GroupStep, RequestStep, SleepStep
from loadscript.engine.checks import evaluate_checks

if TYPE_CHECKING:
    import asyncio

    from loadscript.dsl.steps import Step
    from loadscript.engine.checks import CheckTally
    from loadscript.engine.executor import HttpExecutor
    from loadscript.engine.pacing import PacingController

logger = get_logger("engine.group")


@dataclass
class StepStats:
    """Per-iteration step counters.

    Attributes:
        steps_run: Request steps issued.
        steps_failed: Request steps with a network error or a failed check.
        steps_skipped: Request steps skipped because the run was aborted.
        network_errors: Requests that raised ``NetworkError``.
        checks_passed: Checks that held.
        checks_failed: Checks that failed or raised.
        pauses_cut: Sleep steps cut short or never started because the
            run was aborted.
    """

    steps_run: int = 0
    steps_failed: int = 0
    steps_skipped: int = 0
    network_errors: int = 0
    checks_passed: int = 0
    checks_failed: int = 0
    pauses_cut: int = 0

    @property
    def interrupted(self) -> bool:
        """Return whether an abort kept any step from running to completion."""
        return self.steps_skipped > 0 or self.pauses_cut > 0

    def add(self, other: StepStats) -> None:
        """Accumulate ``other`` into this instance."""
        self.steps_run += other.steps_run
        self.steps_failed += other.steps_failed
        self.steps_skipped += other.steps_skipped
        self.network_errors += other.network_errors
        self.checks_passed += other.checks_passed
        self.checks_failed += other.checks_failed
        self.pauses_cut += other.pauses_cut


class NetworkErrorLog:
    """Logs the first failed request per name at WARNING, the rest at DEBUG."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._seen: set[str] = set()

    def report(self, name: str, exc: Exception) -> None:
        with self._lock:
            first = name not in self._seen
            self._seen.add(name)
        if first:
            logger.warning("Request %r failed: %s (further failures logged at DEBUG)", name, exc)
        else:
            logger.debug("Request %r failed: %s", name, exc)


@dataclass
class IterationContext:
    """Everything a virtual user needs to run the steps of one iteration.

    Attributes:
        executor: The user's HTTP executor.
        pacing: The user's pacing controller.
        tally: Run-wide check counters.
        abort: Set when remaining steps must be skipped.
        network_errors: Run-wide network error logger.
        user_id: Virtual user id, for log messages.
    """

    executor: HttpExecutor
    pacing: PacingController
    tally: CheckTally
    abort: asyncio.Event
    network_errors: NetworkErrorLog = field(default_factory=NetworkErrorLog)
    user_id: int = 0


async def run_steps(steps: tuple[Step, ...], ctx: IterationContext, *, path: str = "") -> StepStats:
    """Run ``steps`` in order.

    A failed check, a network error or any other error raised while
    sending a request fails only its own step; later steps still run.
    The abort signal is checked before every step, and once set the
    remaining steps are counted as skipped. A sleep that the abort cuts
    short is counted in ``pauses_cut``.

    Args:
        steps: Steps to run.
        ctx: The iteration's context.
        path: Group path of the enclosing group (``""`` at top level).

    Returns:
        Counters for the steps run.
    """
    stats = StepStats()
    for index, step in enumerate(steps):
        if ctx.abort.is_set():
            requests, sleeps = _count_steps(steps[index:])
            stats.steps_skipped += requests
            stats.pauses_cut += sleeps
            break

        if isinstance(step, RequestStep):
            stats.add(await _run_request(step, ctx, path))
        elif isinstance(step, GroupStep):
            stats.add(await run_group(step, ctx, parent=path))
        elif isinstance(step, SleepStep):
            await ctx.pacing.pause(step.min_seconds, step.max_seconds)
            if ctx.abort.is_set():
                stats.pauses_cut += 1
    return stats


async def run_group(group: GroupStep, ctx: IterationContext, *, parent: str = "") -> StepStats:
    """Run the steps of ``group`` under its group path."""
    return await run_steps(group.steps, ctx, path=group_path(parent, group.name))


async def _run_request(step: RequestStep, ctx: IterationContext, path: str) -> StepStats:
    stats = StepStats(steps_run=1)
    try:
        response = await ctx.executor.execute(step.request, group=path)
    except NetworkError as exc:
        ctx.network_errors.report(step.request.metric_name, exc)
        stats.network_errors = 1
        stats.steps_failed = 1
        return stats
    except Exception as exc:
        # Not a transport failure (e.g. aiohttp rejecting the request); fail the step only
        ctx.network_errors.report(step.request.metric_name, exc)
        stats.steps_failed = 1
        return stats

    results = evaluate_checks(response, step.checks, ctx.tally, group=path)
    stats.checks_passed = sum(1 for r in results if r.passed)
    stats.checks_failed = len(results) - stats.checks_passed
    if stats.checks_failed:
        stats.steps_failed = 1
        logger.debug(
            "User %d: %d check(s) failed on %s %s",
            ctx.user_id,
            stats.checks_failed,
            response.method,
            response.url,
        )
    return stats


def _count_steps(steps: tuple[Step, ...]) -> tuple[int, int]:
    """Return ``(requests, sleeps)`` in ``steps``, descending into groups."""
    requests = sleeps = 0
    for step in steps:
        if isinstance(step, GroupStep):
            inner_requests, inner_sleeps = _count_steps(step.steps)
            requests += inner_requests
            sleeps += inner_sleeps
        elif isinstance(step, RequestStep):
            requests += 1
        elif isinstance(step, SleepStep):
            sleeps += 1
    return requests, sleeps
