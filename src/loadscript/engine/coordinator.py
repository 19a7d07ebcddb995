"""Multi-process worker coordinator."""

from __future__ import annotations

import multiprocessing
import multiprocessing.process
import queue
import time
from typing import TYPE_CHECKING, Literal

from loadscript._internal.logging import get_logger
from loadscript.engine.protocol import WorkerCommand, WorkerResult, WorkerSpec
from loadscript.engine.worker import run_worker_process

if TYPE_CHECKING:
    from multiprocessing import Queue as MpQueue

    from loadscript.engine.executor import RequestMetric
    from loadscript.engine.scheduler import StopCondition

logger = get_logger("engine.coordinator")


def split_vus(vus: int, num_workers: int, rate_limit: float | None = None) -> list[WorkerSpec]:
    """Spread ``vus`` (and the request rate) as evenly as possible over workers.

    The first ``vus % num_workers`` workers get one extra user. Workers
    never outnumber users.
    """
    num_workers = max(1, min(num_workers, vus))
    base, remainder = divmod(vus, num_workers)
    specs: list[WorkerSpec] = []
    offset = 0
    for worker_id in range(num_workers):
        count = base + (1 if worker_id < remainder else 0)
        specs.append(
            WorkerSpec(
                worker_id=worker_id,
                vus=count,
                user_id_offset=offset,
                rate_limit=rate_limit * count / vus if rate_limit is not None else None,
            )
        )
        offset += count
    return specs


class Coordinator:
    """Manages the lifecycle of N worker processes.

    Each worker gets its own command, metric and result queues. Workers
    run their share of the virtual users to completion on their own; the
    coordinator only relays stop and abort requests and collects results.

    Attributes:
        specs: What each worker runs.
        scenario_path: Absolute path to the scenario file.
    """

    def __init__(
        self,
        scenario_path: str,
        specs: list[WorkerSpec],
        stop_condition: StopCondition,
        *,
        scenario_name: str | None = None,
        graceful_stop: float | None = None,
        log_level: int = 20,
        log_json: bool = False,
    ) -> None:
        """Initialize the coordinator.

        Args:
            scenario_path: Absolute path to the scenario file.
            specs: One WorkerSpec per worker process.
            stop_condition: When the run ends.
            scenario_name: Scenario to pick from the file, if several.
            graceful_stop: Overrides the configured graceful stop.
            log_level: Logging level for workers.
            log_json: Whether workers log JSON lines.
        """
        self.scenario_path = scenario_path
        self.specs = specs
        self._stop_condition = stop_condition
        self._scenario_name = scenario_name
        self._graceful_stop = graceful_stop
        self._log_level = log_level
        self._log_json = log_json

        self._ctx = multiprocessing.get_context("spawn")
        self._command_queues: list[MpQueue[WorkerCommand]] = []
        self._metric_queues: list[MpQueue[list[RequestMetric]]] = []
        self._result_queues: list[MpQueue[WorkerResult]] = []
        self._processes: list[multiprocessing.process.BaseProcess] = []
        self._results: dict[int, WorkerResult] = {}

    @property
    def num_workers(self) -> int:
        """Return the number of worker processes."""
        return len(self.specs)

    @property
    def metric_queues(self) -> list[MpQueue[list[RequestMetric]]]:
        """Return the per-worker metric queues for the aggregator."""
        return self._metric_queues

    @property
    def is_alive(self) -> bool:
        """Return True if any worker process is still running."""
        return any(p.is_alive() for p in self._processes)

    def start(self) -> None:
        """Spawn all worker processes."""
        for spec in self.specs:
            cmd_q: MpQueue[WorkerCommand] = self._ctx.Queue()
            metric_q: MpQueue[list[RequestMetric]] = self._ctx.Queue()
            result_q: MpQueue[WorkerResult] = self._ctx.Queue()

            self._command_queues.append(cmd_q)
            self._metric_queues.append(metric_q)
            self._result_queues.append(result_q)

            process = self._ctx.Process(
                target=run_worker_process,
                args=(
                    self.scenario_path,
                    self._scenario_name,
                    spec,
                    self._stop_condition,
                    cmd_q,
                    metric_q,
                    result_q,
                    self._graceful_stop,
                    self._log_level,
                    self._log_json,
                ),
                name=f"loadscript-worker-{spec.worker_id}",
                daemon=False,
            )
            self._processes.append(process)

        for p in self._processes:
            p.start()
            logger.debug("Started worker process: pid=%d, name=%s", p.pid or 0, p.name)

        logger.info("Started %d worker processes", self.num_workers)

    def send(self, kind: Literal["stop", "abort"]) -> None:
        """Send a ``"stop"`` or ``"abort"`` command to every worker."""
        command = WorkerCommand(kind=kind)
        for cmd_q in self._command_queues:
            cmd_q.put(command)

    def poll(self) -> bool:
        """Pick up results that have arrived without blocking.

        Returns:
            True once every worker has reported or exited.
        """
        for spec, result_q, process in zip(self.specs, self._result_queues, self._processes):
            if spec.worker_id in self._results:
                continue
            try:
                self._results[spec.worker_id] = result_q.get_nowait()
            except queue.Empty:
                if process.is_alive() or process.exitcode is None:
                    continue
                try:
                    self._results[spec.worker_id] = result_q.get(timeout=0.5)
                except queue.Empty:
                    self._results[spec.worker_id] = WorkerResult(
                        worker_id=spec.worker_id,
                        success=False,
                        error_message=f"Worker exited with code {process.exitcode} without a result",
                    )
        return len(self._results) == self.num_workers

    def collect(self, timeout: float) -> list[WorkerResult]:
        """Wait for the remaining results, then for the processes to exit.

        Results are read before joining, since a process does not exit
        while its queues still hold unread data.

        Args:
            timeout: Maximum seconds to wait for missing results.

        Returns:
            One WorkerResult per worker, in worker order.
        """
        deadline = time.monotonic() + timeout
        while not self.poll() and time.monotonic() < deadline:
            time.sleep(0.05)

        for spec in self.specs:
            if spec.worker_id not in self._results:
                logger.warning("No result from worker %d", spec.worker_id)
                self._results[spec.worker_id] = WorkerResult(
                    worker_id=spec.worker_id, success=False, error_message="No result received"
                )

        for p in self._processes:
            p.join(timeout=2.0)
            if p.is_alive():
                logger.warning("Worker %s did not exit in time, terminating", p.name)
                p.terminate()
                p.join(timeout=2.0)

        for q_list in (self._command_queues, self._result_queues):
            for q in q_list:
                q.close()

        logger.info("All %d workers stopped", self.num_workers)
        return [self._results[spec.worker_id] for spec in self.specs]
