"""Single-process test session: lifecycle, ticks and signal handling."""

from __future__ import annotations

import asyncio
import signal
import sys
import threading
import time
from enum import Enum, auto
from typing import TYPE_CHECKING

from loadscript._internal.config import load_config
from loadscript._internal.errors import EngineError
from loadscript._internal.logging import get_logger
from loadscript.engine.pacing import TokenBucketRateLimiter
from loadscript.engine.scheduler import VirtualUserScheduler
from loadscript.metrics.collector import MetricCollector
from loadscript.metrics.models import RunReport

if TYPE_CHECKING:
    from collections.abc import Callable

    from loadscript._internal.config import LoadScriptConfig
    from loadscript.dsl.scenario import ScenarioDefinition
    from loadscript.engine.scheduler import SchedulerResult, StopCondition
    from loadscript.metrics.models import MetricSnapshot

logger = get_logger("engine.session")


class SessionState(Enum):
    """State machine for a test session."""

    CREATED = auto()
    RUNNING = auto()
    STOPPING = auto()
    COMPLETED = auto()
    FAILED = auto()


def build_report(
    scenario_name: str,
    stop_condition: StopCondition,
    result: SchedulerResult,
    *,
    start_time: float,
    end_time: float,
    snapshots: list[MetricSnapshot],
    final_summary: MetricSnapshot,
) -> RunReport:
    """Combine scheduler counters and request metrics into a RunReport."""
    return RunReport(
        scenario_name=scenario_name,
        start_time=start_time,
        end_time=end_time,
        duration_seconds=end_time - start_time,
        vus=result.vus,
        stop_condition=stop_condition.describe(),
        iterations=result.iterations,
        interrupted_iterations=result.interrupted_iterations,
        iterations_by_user=dict(result.iterations_by_user),
        iteration_duration_min_ms=result.iteration_duration_min_ms,
        iteration_duration_avg_ms=result.iteration_duration_avg_ms,
        iteration_duration_max_ms=result.iteration_duration_max_ms,
        checks=dict(result.checks),
        snapshots=snapshots,
        final_summary=final_summary,
    )


class TestSession:
    """Runs a scenario in the current process and event loop.

    Owns the scheduler, the metric collector and the tick loop that turns
    collected metrics into per-interval snapshots. The first SIGINT or
    SIGTERM requests a graceful stop, the second aborts in-flight
    iterations.

    State machine: CREATED -> RUNNING -> STOPPING -> COMPLETED
                                      -> FAILED (on error)
    """

    __test__ = False

    def __init__(
        self,
        scenario: ScenarioDefinition,
        vus: int,
        stop_condition: StopCondition,
        *,
        config: LoadScriptConfig | None = None,
        tick_interval: float = 1.0,
        rate_limit: float | None = None,
        on_snapshot: Callable[[MetricSnapshot], None] | None = None,
        graceful_stop: float | None = None,
        worker_id: int = 0,
    ) -> None:
        """Initialize a test session.

        Args:
            scenario: The scenario definition to execute.
            vus: Number of virtual users.
            stop_condition: When the run ends.
            config: Engine configuration. Defaults to ``load_config()``.
            tick_interval: Seconds between metric snapshots.
            rate_limit: Optional max requests per second (token bucket).
            on_snapshot: Called with each tick snapshot.
            graceful_stop: Overrides ``config.graceful_stop``.
            worker_id: Worker identifier for metric tagging.

        Raises:
            ConfigError: If the configuration or run options are invalid.
        """
        self._scenario = scenario
        self._stop_condition = stop_condition
        self._tick_interval = tick_interval
        self._on_snapshot = on_snapshot

        self._state = SessionState.CREATED
        self._collector = MetricCollector(worker_id=worker_id)
        self._scheduler = VirtualUserScheduler(
            scenario,
            vus,
            stop_condition,
            config=config or load_config(),
            metric_callback=self._collector.record,
            rate_limiter=TokenBucketRateLimiter(rate=rate_limit) if rate_limit is not None else None,
            worker_id=worker_id,
            graceful_stop=graceful_stop,
        )
        self._signals_received = 0
        self._signal_handlers_installed = False

    @property
    def state(self) -> SessionState:
        """Return the current session state."""
        return self._state

    @property
    def scheduler(self) -> VirtualUserScheduler:
        """Return the session's scheduler."""
        return self._scheduler

    async def run(self) -> RunReport:
        """Execute the session and return its report.

        Raises:
            EngineError: If the run fails for reasons outside the scenario.
        """
        self._state = SessionState.RUNNING
        self._install_signal_handlers()

        start_time = time.monotonic()
        snapshots: list[MetricSnapshot] = []
        scheduler_task = asyncio.create_task(self._scheduler.run(), name="scheduler")

        try:
            while not scheduler_task.done():
                await asyncio.wait({scheduler_task}, timeout=self._tick_interval)
                snapshot = self._collector.flush(
                    elapsed_seconds=time.monotonic() - start_time,
                    active_users=self._scheduler.active_users,
                )
                snapshots.append(snapshot)
                self._emit(snapshot)
            result = scheduler_task.result()
        except Exception as exc:
            self._state = SessionState.FAILED
            logger.exception("Test session failed")
            msg = "Test session failed"
            raise EngineError(msg) from exc
        finally:
            if not scheduler_task.done():
                scheduler_task.cancel()
                await asyncio.gather(scheduler_task, return_exceptions=True)
            self._remove_signal_handlers()

        end_time = time.monotonic()
        duration = end_time - start_time
        # Anything recorded after the last tick
        if self._collector.pending_count:
            snapshots.append(self._collector.flush(elapsed_seconds=duration, active_users=0))
        final_summary = self._collector.get_cumulative_snapshot(elapsed_seconds=duration, active_users=0)

        self._state = SessionState.COMPLETED
        logger.info(
            "Test completed: duration=%.1fs, iterations=%d, requests=%d, p95=%.1fms, error_rate=%.2f%%",
            duration,
            result.iterations,
            final_summary.total_requests,
            final_summary.latency_p95,
            final_summary.error_rate * 100,
        )
        if final_summary.network_errors:
            logger.warning("%d request(s) failed with network errors", final_summary.network_errors)

        return build_report(
            self._scenario.name,
            self._stop_condition,
            result,
            start_time=start_time,
            end_time=end_time,
            snapshots=snapshots,
            final_summary=final_summary,
        )

    def stop(self) -> None:
        """Request a graceful stop of the session."""
        if self._state == SessionState.RUNNING:
            self._state = SessionState.STOPPING
            self._scheduler.request_stop()

    def abort(self) -> None:
        """Abort in-flight iterations."""
        if self._state in (SessionState.RUNNING, SessionState.STOPPING):
            self._state = SessionState.STOPPING
            self._scheduler.abort()

    def _emit(self, snapshot: MetricSnapshot) -> None:
        if self._on_snapshot is None:
            return
        try:
            self._on_snapshot(snapshot)
        except Exception:
            logger.warning("Snapshot callback failed", exc_info=True)

    def _handle_signal(self) -> None:
        self._signals_received += 1
        if self._signals_received == 1:
            logger.info("Signal received, stopping gracefully (send again to abort)")
            self.stop()
        else:
            logger.info("Second signal received, aborting")
            self.abort()

    def _install_signal_handlers(self) -> None:
        # Signal handlers can only be installed from the main thread
        if sys.platform == "win32" or threading.current_thread() is not threading.main_thread():
            return
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, self._handle_signal)
        self._signal_handlers_installed = True

    def _remove_signal_handlers(self) -> None:
        if not self._signal_handlers_installed:
            return
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.remove_signal_handler(sig)
        self._signal_handlers_installed = False
