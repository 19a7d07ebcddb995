"""Worker process entry point and the uvloop-backed event loop runner."""

from __future__ import annotations

import asyncio
import contextlib
import queue
import signal
import sys
from typing import TYPE_CHECKING, TypeVar

from loadscript._internal.config import load_config
from loadscript._internal.logging import get_logger, setup_logging
from loadscript.engine.pacing import TokenBucketRateLimiter
from loadscript.engine.protocol import WorkerResult
from loadscript.engine.scheduler import VirtualUserScheduler
from loadscript.metrics.collector import MetricCollector

if TYPE_CHECKING:
    from collections.abc import Coroutine
    from multiprocessing import Queue as MpQueue
    from typing import Any

    from loadscript.dsl.scenario import ScenarioDefinition
    from loadscript.engine.executor import RequestMetric
    from loadscript.engine.protocol import WorkerCommand, WorkerSpec
    from loadscript.engine.scheduler import SchedulerResult, StopCondition

logger = get_logger("engine.worker")

T = TypeVar("T")

_POLL_INTERVAL = 0.1


def run_async(coro: Coroutine[Any, Any, T]) -> T:
    """Run ``coro`` to completion on uvloop when available.

    Falls back to the default asyncio event loop on Windows or if uvloop
    is not installed.
    """
    if sys.platform != "win32":
        try:
            import uvloop
        except ImportError:
            logger.debug("uvloop not available, using default asyncio event loop")
        else:
            return uvloop.run(coro)
    return asyncio.run(coro)


def run_worker_process(
    scenario_path: str,
    scenario_name: str | None,
    spec: WorkerSpec,
    stop_condition: StopCondition,
    command_queue: MpQueue[WorkerCommand],
    metric_queue: MpQueue[list[RequestMetric]],
    result_queue: MpQueue[WorkerResult],
    graceful_stop: float | None = None,
    log_level: int = 20,
    log_json: bool = False,
) -> None:
    """Entry point for a worker subprocess.

    Loads the scenario from file, runs this worker's share of the virtual
    users, ships raw metric batches to the coordinator as they arrive and
    reports its scheduler counters on exit.

    Args:
        scenario_path: Absolute path to the scenario file.
        scenario_name: Scenario to pick from the file, if several.
        spec: This worker's share of the run.
        stop_condition: When the run ends.
        command_queue: Queue receiving WorkerCommand from the coordinator.
        metric_queue: Queue for sending RequestMetric batches.
        result_queue: Queue for sending the WorkerResult on exit.
        graceful_stop: Overrides the configured graceful stop.
        log_level: Logging level.
        log_json: Whether to log one JSON object per line.
    """
    setup_logging(level=log_level, json_format=log_json)
    # Ctrl-C reaches the whole process group; the coordinator decides
    signal.signal(signal.SIGINT, signal.SIG_IGN)

    from loadscript.dsl.loader import load_scenario

    try:
        scenario = load_scenario(scenario_path, scenario_name)
        result = run_async(
            _run_worker_loop(scenario, spec, stop_condition, graceful_stop, command_queue, metric_queue)
        )
    except Exception as exc:
        logger.exception("Worker %d: failed", spec.worker_id)
        result_queue.put(WorkerResult(worker_id=spec.worker_id, success=False, error_message=str(exc)))
    else:
        result_queue.put(WorkerResult(worker_id=spec.worker_id, success=True, result=result))


async def _run_worker_loop(
    scenario: ScenarioDefinition,
    spec: WorkerSpec,
    stop_condition: StopCondition,
    graceful_stop: float | None,
    command_queue: MpQueue[WorkerCommand],
    metric_queue: MpQueue[list[RequestMetric]],
) -> SchedulerResult:
    """Run this worker's virtual users while relaying commands and metrics.

    Args:
        scenario: The loaded scenario.
        spec: This worker's share of the run.
        stop_condition: When the run ends.
        graceful_stop: Overrides the configured graceful stop.
        command_queue: Queue receiving WorkerCommand from the coordinator.
        metric_queue: Queue for sending RequestMetric batches.

    Returns:
        The scheduler's counters.
    """
    collector = MetricCollector(worker_id=spec.worker_id)
    scheduler = VirtualUserScheduler(
        scenario,
        spec.vus,
        stop_condition,
        config=load_config(),
        metric_callback=collector.record,
        rate_limiter=TokenBucketRateLimiter(rate=spec.rate_limit) if spec.rate_limit is not None else None,
        worker_id=spec.worker_id,
        user_id_offset=spec.user_id_offset,
        graceful_stop=graceful_stop,
    )

    run_task = asyncio.create_task(scheduler.run(), name=f"worker-{spec.worker_id}-scheduler")
    try:
        while not run_task.done():
            await asyncio.wait({run_task}, timeout=_POLL_INTERVAL)
            _poll_commands(scheduler, command_queue)
            batch = collector.drain()
            if batch:
                metric_queue.put(batch)
        return run_task.result()
    finally:
        if not run_task.done():
            run_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await run_task
        batch = collector.drain()
        if batch:
            metric_queue.put(batch)


def _poll_commands(scheduler: VirtualUserScheduler, command_queue: MpQueue[WorkerCommand]) -> None:
    while True:
        try:
            command = command_queue.get_nowait()
        except (queue.Empty, EOFError):
            return
        if command.kind == "stop":
            scheduler.request_stop()
        elif command.kind == "abort":
            scheduler.abort()
