"""Messages exchanged between the coordinator and worker processes."""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Literal

if TYPE_CHECKING:
    from loadscript.engine.scheduler import SchedulerResult


@dataclass(frozen=True)
class WorkerCommand:
    """Command sent from the coordinator to a worker process.

    Attributes:
        kind: ``"stop"`` ends the run gracefully, ``"abort"`` also skips
            the remaining steps of in-flight iterations.
    """

    kind: Literal["stop", "abort"]


@dataclass(frozen=True)
class WorkerSpec:
    """What one worker process runs.

    Attributes:
        worker_id: Worker identifier, used to tag metrics.
        vus: Virtual users this worker starts.
        user_id_offset: Id of the worker's first virtual user.
        rate_limit: This worker's share of the request rate, if limited.
    """

    worker_id: int
    vus: int
    user_id_offset: int
    rate_limit: float | None = None


@dataclass(frozen=True)
class WorkerResult:
    """Result sent from a worker process back to the coordinator on exit.

    Attributes:
        worker_id: Identifier of the worker that produced this result.
        success: Whether the worker exited cleanly.
        result: The worker's scheduler counters, when it got to run.
        error_message: Error description if the worker failed.
    """

    worker_id: int
    success: bool
    result: SchedulerResult | None = None
    error_message: str | None = None
