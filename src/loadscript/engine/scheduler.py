"""Virtual-user scheduler: runs scenario iterations across concurrent users."""

from __future__ import annotations

import asyncio
import threading
import time
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from loadscript._internal.config import LoadScriptConfig
from loadscript._internal.errors import ConfigError
from loadscript._internal.logging import get_logger
from loadscript.dsl.scenario import resolve_base_url
from loadscript.engine.checks import CheckTally
from loadscript.engine.executor import HttpExecutor
from loadscript.engine.group import IterationContext, NetworkErrorLog, StepStats, run_steps
from loadscript.engine.pacing import PacingController

if TYPE_CHECKING:
    from collections.abc import Callable

    from loadscript.dsl.scenario import ScenarioDefinition
    from loadscript.engine.executor import RequestMetric
    from loadscript.engine.pacing import TokenBucketRateLimiter
    from loadscript.metrics.models import CheckStats

logger = get_logger("engine.scheduler")

# Time users get to notice the abort signal before being cancelled
_ABORT_GRACE_SECONDS = 2.0


@dataclass(frozen=True)
class StopCondition:
    """When a run ends.

    With only ``duration``, users iterate until the time is up. With only
    ``iterations``, each user runs that many iterations. With both, the
    first one reached ends the run. With neither, each user runs once.

    Attributes:
        duration: Run duration in seconds.
        iterations: Iterations per virtual user.
    """

    duration: float | None = None
    iterations: int | None = None

    def __post_init__(self) -> None:
        if self.duration is not None and self.duration <= 0:
            msg = f"duration must be positive, got {self.duration}"
            raise ConfigError(msg)
        if self.iterations is not None and self.iterations < 1:
            msg = f"iterations must be >= 1, got {self.iterations}"
            raise ConfigError(msg)

    @property
    def iteration_budget(self) -> int | None:
        """Return the per-user iteration limit, or None when only time-bound."""
        if self.iterations is None and self.duration is None:
            return 1
        return self.iterations

    def describe(self) -> str:
        """Return a human-readable description."""
        parts = []
        if self.duration is not None:
            parts.append(f"{self.duration:g}s")
        budget = self.iteration_budget
        if budget is not None:
            parts.append(f"{budget} iteration{'s' if budget != 1 else ''} per VU")
        return " or ".join(parts)


@dataclass
class SchedulerResult:
    """Run metrics snapshotted when the scheduler stops.

    Attributes:
        vus: Number of virtual users started.
        duration_seconds: Time from start to the last user exiting.
        iterations: Iterations completed across all users.
        interrupted_iterations: Iterations cut short by an abort.
        iterations_by_user: Completed iterations per virtual user id.
        steps: Step counters summed over all iterations.
        checks: Pass/fail counters keyed by check name.
        iteration_duration_avg_ms: Mean completed-iteration duration.
        iteration_duration_min_ms: Shortest completed iteration.
        iteration_duration_max_ms: Longest completed iteration.
    """

    vus: int
    duration_seconds: float
    iterations: int = 0
    interrupted_iterations: int = 0
    iterations_by_user: dict[int, int] = field(default_factory=dict)
    steps: StepStats = field(default_factory=StepStats)
    checks: dict[str, CheckStats] = field(default_factory=dict)
    iteration_duration_avg_ms: float = 0.0
    iteration_duration_min_ms: float = 0.0
    iteration_duration_max_ms: float = 0.0


class _RunCounters:
    """Iteration counters shared by all users of one scheduler."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.completed = 0
        self.interrupted = 0
        self.by_user: dict[int, int] = {}
        self.steps = StepStats()
        self.duration_sum_ms = 0.0
        self.duration_min_ms = 0.0
        self.duration_max_ms = 0.0

    def record(self, user_id: int, stats: StepStats, duration_ms: float, *, interrupted: bool) -> None:
        with self._lock:
            self.steps.add(stats)
            if interrupted:
                self.interrupted += 1
                return
            self.completed += 1
            self.by_user[user_id] = self.by_user.get(user_id, 0) + 1
            self.duration_sum_ms += duration_ms
            if self.completed == 1 or duration_ms < self.duration_min_ms:
                self.duration_min_ms = duration_ms
            self.duration_max_ms = max(self.duration_max_ms, duration_ms)


class VirtualUserScheduler:
    """Runs a scenario on ``vus`` concurrent virtual users.

    Each user is an asyncio task with its own ``HttpExecutor`` (and so its
    own cookie jar), looping over iterations until its budget is used up
    or the run is stopped. Users share only the lock-protected run
    counters and the metric callback.

    Stopping happens in stages. ``request_stop()`` (or the duration
    elapsing) prevents new iterations; in-flight ones get
    ``graceful_stop`` seconds to finish. Then ``abort()`` makes users skip
    their remaining steps and interrupts their pauses; whatever is still
    running shortly after that is cancelled.

    Attributes:
        scenario: The scenario being run.
        vus: Number of virtual users.
        stop_condition: When the run ends.
    """

    def __init__(
        self,
        scenario: ScenarioDefinition,
        vus: int,
        stop_condition: StopCondition,
        *,
        config: LoadScriptConfig | None = None,
        metric_callback: Callable[[RequestMetric], None] | None = None,
        rate_limiter: TokenBucketRateLimiter | None = None,
        worker_id: int = 0,
        user_id_offset: int = 0,
        graceful_stop: float | None = None,
    ) -> None:
        """Initialize the scheduler.

        Args:
            scenario: Validated scenario to run.
            vus: Number of virtual users. Must be >= 1.
            stop_condition: When the run ends.
            config: Executor and shutdown settings. Defaults to built-in values.
            metric_callback: Receives a RequestMetric for every request.
            rate_limiter: Optional limiter shared by all users.
            worker_id: Worker process identifier for metric tagging.
            user_id_offset: First virtual user id (unique ids across workers).
            graceful_stop: Overrides ``config.graceful_stop``.

        Raises:
            ConfigError: If ``vus`` or ``graceful_stop`` is out of range,
                or a relative request URL has no base URL to resolve against.
        """
        if vus < 1:
            msg = f"vus must be >= 1, got {vus}"
            raise ConfigError(msg)

        self.scenario = scenario
        self.vus = vus
        self.stop_condition = stop_condition
        self._config = config or LoadScriptConfig()
        self._graceful_stop = self._config.graceful_stop if graceful_stop is None else graceful_stop
        if self._graceful_stop < 0:
            msg = f"graceful_stop must be non-negative, got {self._graceful_stop}"
            raise ConfigError(msg)
        self._base_url = resolve_base_url(scenario, self._config.default_base_url)
        self._metric_callback = metric_callback
        self._rate_limiter = rate_limiter
        self._worker_id = worker_id
        self._user_id_offset = user_id_offset

        self._stop = asyncio.Event()
        self._abort = asyncio.Event()
        self._active_users = 0
        self._counters = _RunCounters()
        self._tally = CheckTally()
        self._error_log = NetworkErrorLog()

    @property
    def active_users(self) -> int:
        """Return the number of users still running."""
        return self._active_users

    @property
    def iterations_completed(self) -> int:
        """Return iterations completed so far."""
        return self._counters.completed

    @property
    def tally(self) -> CheckTally:
        """Return the live check counters of the current run."""
        return self._tally

    def request_stop(self) -> None:
        """Stop starting new iterations; in-flight ones may finish."""
        if not self._stop.is_set():
            logger.info("Stop requested, letting in-flight iterations finish")
            self._stop.set()

    def abort(self) -> None:
        """Skip remaining steps of in-flight iterations and end pauses."""
        self._stop.set()
        if not self._abort.is_set():
            logger.info("Aborting in-flight iterations")
            self._abort.set()

    async def run(self) -> SchedulerResult:
        """Start all users and wait for the run to end.

        Returns:
            Run counters snapshotted after every user exited.
        """
        self._counters = _RunCounters()
        self._tally = CheckTally()
        self._error_log = NetworkErrorLog()
        budget = self.stop_condition.iteration_budget
        logger.info(
            "Starting %d virtual user(s): scenario=%s, stop=%s",
            self.vus,
            self.scenario.name,
            self.stop_condition.describe(),
        )

        start = time.monotonic()
        users = [
            asyncio.create_task(
                self._run_user(self._user_id_offset + index, budget),
                name=f"virtual-user-{self._user_id_offset + index}",
            )
            for index in range(self.vus)
        ]

        try:
            pending = await self._wait_for_stop(set(users), start)
            await self._drain(pending)
        finally:
            for task in users:
                if not task.done():
                    task.cancel()
            await asyncio.gather(*users, return_exceptions=True)

        counters = self._counters
        result = SchedulerResult(
            vus=self.vus,
            duration_seconds=time.monotonic() - start,
            iterations=counters.completed,
            interrupted_iterations=counters.interrupted,
            iterations_by_user=dict(counters.by_user),
            steps=counters.steps,
            checks=self._tally.snapshot(),
            iteration_duration_avg_ms=(
                counters.duration_sum_ms / counters.completed if counters.completed else 0.0
            ),
            iteration_duration_min_ms=counters.duration_min_ms,
            iteration_duration_max_ms=counters.duration_max_ms,
        )
        logger.info(
            "Scheduler finished: iterations=%d, interrupted=%d, checks=%d passed / %d failed",
            result.iterations,
            result.interrupted_iterations,
            self._tally.passes,
            self._tally.fails,
        )
        return result

    async def _wait_for_stop(self, pending: set[asyncio.Task[None]], start: float) -> set[asyncio.Task[None]]:
        duration = self.stop_condition.duration
        deadline = None if duration is None else start + duration
        stop_waiter = asyncio.ensure_future(self._stop.wait())
        try:
            while pending and not self._stop.is_set():
                timeout = None if deadline is None else deadline - time.monotonic()
                if timeout is not None and timeout <= 0:
                    logger.info("Duration of %gs reached", duration)
                    break
                done, _ = await asyncio.wait(
                    pending | {stop_waiter},
                    timeout=timeout,
                    return_when=asyncio.FIRST_COMPLETED,
                )
                pending -= done
        finally:
            stop_waiter.cancel()
        self._stop.set()
        return pending

    async def _drain(self, pending: set[asyncio.Task[None]]) -> None:
        if not pending:
            return
        _done, pending = await asyncio.wait(pending, timeout=self._graceful_stop)
        if not pending:
            return

        logger.warning(
            "%d virtual user(s) still busy after graceful stop of %gs, aborting",
            len(pending),
            self._graceful_stop,
        )
        self.abort()
        _done, pending = await asyncio.wait(pending, timeout=_ABORT_GRACE_SECONDS)
        for task in pending:
            task.cancel()

    async def _run_user(self, user_id: int, budget: int | None) -> None:
        self._active_users += 1
        pacing = PacingController(self._stop, self._abort)
        try:
            async with HttpExecutor(
                base_url=self._base_url,
                headers=self.scenario.default_headers,
                metric_callback=self._metric_callback,
                worker_id=self._worker_id,
                timeout=self._config.request_timeout,
                pool_size=self._config.connection_pool_size,
                user_agent=self._config.user_agent,
                rate_limiter=self._rate_limiter,
            ) as executor:
                ctx = IterationContext(
                    executor=executor,
                    pacing=pacing,
                    tally=self._tally,
                    abort=self._abort,
                    network_errors=self._error_log,
                    user_id=user_id,
                )
                completed = 0
                while not self._stop.is_set() and (budget is None or completed < budget):
                    if completed:
                        await pacing.pause_between_iterations(self.scenario.iteration_pause)
                        if self._stop.is_set():
                            break

                    started = time.monotonic()
                    stats = await run_steps(self.scenario.steps, ctx)
                    interrupted = stats.interrupted
                    self._counters.record(
                        user_id,
                        stats,
                        (time.monotonic() - started) * 1000,
                        interrupted=interrupted,
                    )
                    if interrupted:
                        break
                    completed += 1
        except Exception:
            logger.exception("Virtual user %d crashed", user_id)
        finally:
            self._active_users -= 1
            logger.debug("Virtual user %d exited", user_id)
