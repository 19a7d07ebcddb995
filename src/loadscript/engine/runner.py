"""Top-level load test orchestrator."""

from __future__ import annotations

import logging
import os
import signal
import threading
import time
from pathlib import Path
from typing import TYPE_CHECKING

from loadscript._internal.config import load_config
from loadscript._internal.errors import ConfigError, EngineError
from loadscript._internal.logging import get_logger, setup_logging
from loadscript.dsl.loader import load_scenario
from loadscript.dsl.scenario import resolve_base_url
from loadscript.engine.coordinator import Coordinator, split_vus
from loadscript.engine.group import StepStats
from loadscript.engine.scheduler import SchedulerResult, StopCondition
from loadscript.engine.session import TestSession, build_report
from loadscript.engine.worker import run_async
from loadscript.metrics.aggregator import MetricAggregator
from loadscript.metrics.models import CheckStats
from loadscript.metrics.thresholds import evaluate_thresholds

if TYPE_CHECKING:
    from collections.abc import Callable

    from loadscript.engine.protocol import WorkerResult
    from loadscript.metrics.models import MetricSnapshot, RunReport
    from loadscript.metrics.thresholds import Thresholds

logger = get_logger("engine.runner")

# Extra time granted to workers beyond their own graceful stop
_COLLECT_MARGIN_SECONDS = 10.0


def merge_results(results: list[SchedulerResult]) -> SchedulerResult:
    """Combine the scheduler counters of several workers into one."""
    merged = SchedulerResult(vus=0, duration_seconds=0.0, steps=StepStats())
    duration_sum_ms = 0.0
    minimums: list[float] = []
    for result in results:
        merged.vus += result.vus
        merged.duration_seconds = max(merged.duration_seconds, result.duration_seconds)
        merged.iterations += result.iterations
        merged.interrupted_iterations += result.interrupted_iterations
        merged.iterations_by_user.update(result.iterations_by_user)
        merged.steps.add(result.steps)
        for name, stats in result.checks.items():
            total = merged.checks.setdefault(name, CheckStats(name=name))
            total.passes += stats.passes
            total.fails += stats.fails
        duration_sum_ms += result.iteration_duration_avg_ms * result.iterations
        if result.iterations:
            minimums.append(result.iteration_duration_min_ms)
        merged.iteration_duration_max_ms = max(
            merged.iteration_duration_max_ms, result.iteration_duration_max_ms
        )
    if merged.iterations:
        merged.iteration_duration_avg_ms = duration_sum_ms / merged.iterations
        merged.iteration_duration_min_ms = min(minimums)
    return merged


class LoadTestRunner:
    """Loads a scenario file and runs it in one or several processes.

    With one worker the scenario runs in a ``TestSession`` in the current
    process. With more, a ``Coordinator`` spawns worker processes, each
    running its share of the virtual users, and a ``MetricAggregator``
    merges their metrics.

    Attributes:
        scenario_path: Absolute path to the scenario file.
        scenario: The loaded, validated scenario.
        vus: Number of virtual users.
        stop_condition: When the run ends.
        num_workers: Number of worker processes.
    """

    def __init__(
        self,
        scenario_path: str | Path,
        *,
        scenario_name: str | None = None,
        vus: int | None = None,
        duration: float | None = None,
        iterations: int | None = None,
        workers: int = 1,
        tick_interval: float = 1.0,
        rate_limit: float | None = None,
        graceful_stop: float | None = None,
        thresholds: Thresholds | None = None,
        on_snapshot: Callable[[MetricSnapshot], None] | None = None,
        log_level: int = logging.INFO,
        log_json: bool = False,
    ) -> None:
        """Initialize the runner.

        Run options left as None fall back to the scenario's ``options``.
        Giving either ``duration`` or ``iterations`` replaces the scenario's
        stop condition as a whole.

        Args:
            scenario_path: Path to the scenario .py or .json file.
            scenario_name: Scenario to pick when the file defines several.
            vus: Number of virtual users.
            duration: Run duration in seconds.
            iterations: Iterations per virtual user.
            workers: Number of worker processes (capped at CPU count and vus).
            tick_interval: Seconds between metric snapshots.
            rate_limit: Optional global max requests per second.
            graceful_stop: Overrides the configured graceful stop.
            thresholds: Pass/fail bounds evaluated after the run.
            on_snapshot: Optional callback invoked with each MetricSnapshot.
            log_level: Logging level.
            log_json: Whether to log one JSON object per line.

        Raises:
            ConfigError: If the scenario or any option is invalid. Nothing
                has been sent over the network at that point.
        """
        self.scenario_path = str(Path(scenario_path).resolve())
        self._scenario_name = scenario_name
        self.scenario = load_scenario(self.scenario_path, scenario_name)
        self._config = load_config()
        resolve_base_url(self.scenario, self._config.default_base_url)

        options = self.scenario.options
        self.vus = vus if vus is not None else (options.vus or 1)
        if self.vus < 1:
            msg = f"vus must be >= 1, got {self.vus}"
            raise ConfigError(msg)
        if duration is None and iterations is None:
            duration, iterations = options.duration, options.iterations
        self.stop_condition = StopCondition(duration=duration, iterations=iterations)

        if workers < 1:
            msg = f"workers must be >= 1, got {workers}"
            raise ConfigError(msg)
        if tick_interval <= 0:
            msg = f"tick_interval must be positive, got {tick_interval}"
            raise ConfigError(msg)
        if rate_limit is not None and rate_limit <= 0:
            msg = f"rps must be positive, got {rate_limit}"
            raise ConfigError(msg)
        cpu_count = os.cpu_count() or 1
        self.num_workers = max(1, min(workers, cpu_count, self.vus))

        self._tick_interval = tick_interval
        self._rate_limit = rate_limit
        self._graceful_stop = graceful_stop
        self._thresholds = thresholds
        self._on_snapshot = on_snapshot
        self._log_level = log_level
        self._log_json = log_json
        self._signals_received = 0

    def run(self) -> RunReport:
        """Execute the run and return its report.

        Blocks until the stop condition is reached or a signal stops the
        run (first SIGINT/SIGTERM: graceful stop; second: abort).

        Raises:
            EngineError: If the run fails for reasons outside the scenario.
        """
        setup_logging(level=self._log_level, json_format=self._log_json)
        logger.info(
            "Starting load test: scenario=%s, vus=%d, workers=%d, stop=%s",
            self.scenario.name,
            self.vus,
            self.num_workers,
            self.stop_condition.describe(),
        )

        if self.num_workers == 1:
            report = run_async(self._run_in_process())
        else:
            report = self._run_distributed()

        if self._thresholds is not None and not self._thresholds.is_empty:
            report.thresholds = evaluate_thresholds(report, self._thresholds)
            for outcome in report.thresholds:
                if not outcome.passed:
                    logger.warning(
                        "Threshold %s failed: %.4g > %.4g", outcome.name, outcome.actual, outcome.limit
                    )
        return report

    async def _run_in_process(self) -> RunReport:
        session = TestSession(
            self.scenario,
            self.vus,
            self.stop_condition,
            config=self._config,
            tick_interval=self._tick_interval,
            rate_limit=self._rate_limit,
            on_snapshot=self._on_snapshot,
            graceful_stop=self._graceful_stop,
        )
        return await session.run()

    def _run_distributed(self) -> RunReport:
        coordinator = Coordinator(
            self.scenario_path,
            split_vus(self.vus, self.num_workers, self._rate_limit),
            self.stop_condition,
            scenario_name=self._scenario_name,
            graceful_stop=self._graceful_stop,
            log_level=self._log_level,
            log_json=self._log_json,
        )
        aggregator = MetricAggregator(
            coordinator.metric_queues,
            on_snapshot=self._on_snapshot,
            tick_interval=self._tick_interval,
        )
        restore = self._install_signal_handlers(coordinator)

        start_time = time.monotonic()
        try:
            coordinator.start()
            aggregator.set_active_users(self.vus)
            aggregator.start()
            while not coordinator.poll():
                time.sleep(0.1)
        except Exception as exc:
            coordinator.send("abort")
            logger.exception("Load test failed")
            msg = "Load test failed"
            raise EngineError(msg) from exc
        finally:
            graceful_stop = self._config.graceful_stop if self._graceful_stop is None else self._graceful_stop
            worker_results = coordinator.collect(timeout=graceful_stop + _COLLECT_MARGIN_SECONDS)
            aggregator.set_active_users(0)
            aggregator.stop()
            restore()

        end_time = time.monotonic()
        result = self._merge(worker_results)
        final_summary = aggregator.get_final_snapshot(elapsed_seconds=end_time - start_time)
        if final_summary.network_errors:
            logger.warning("%d request(s) failed with network errors", final_summary.network_errors)

        return build_report(
            self.scenario.name,
            self.stop_condition,
            result,
            start_time=start_time,
            end_time=end_time,
            snapshots=aggregator.snapshots,
            final_summary=final_summary,
        )

    @staticmethod
    def _merge(worker_results: list[WorkerResult]) -> SchedulerResult:
        for failed in (r for r in worker_results if not r.success):
            logger.warning("Worker %d failed: %s", failed.worker_id, failed.error_message)
        finished = [r.result for r in worker_results if r.result is not None]
        if not finished:
            reasons = "; ".join(r.error_message or "unknown error" for r in worker_results)
            msg = f"All workers failed: {reasons}"
            raise EngineError(msg)
        return merge_results(finished)

    def _install_signal_handlers(self, coordinator: Coordinator) -> Callable[[], None]:
        """Route SIGINT/SIGTERM to worker commands; return a restore function."""
        if threading.current_thread() is not threading.main_thread():
            return lambda: None

        original_sigint = signal.getsignal(signal.SIGINT)
        original_sigterm = signal.getsignal(signal.SIGTERM)
        self._signals_received = 0

        def _signal_handler(signum: int, _frame: object) -> None:
            self._signals_received += 1
            if self._signals_received == 1:
                logger.info("Signal %d received, stopping gracefully (send again to abort)", signum)
                coordinator.send("stop")
            else:
                logger.info("Signal %d received again, aborting", signum)
                coordinator.send("abort")

        signal.signal(signal.SIGINT, _signal_handler)
        signal.signal(signal.SIGTERM, _signal_handler)

        def _restore() -> None:
            signal.signal(signal.SIGINT, original_sigint)
            signal.signal(signal.SIGTERM, original_sigterm)

        return _restore
