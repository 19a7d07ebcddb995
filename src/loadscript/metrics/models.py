"""Metric and report dataclasses for loadscript."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING

# RequestMetric lives in engine/executor.py; re-exported for consumers
# that only deal with metrics.
from loadscript.engine.executor import RequestMetric

if TYPE_CHECKING:
    from loadscript.metrics.thresholds import ThresholdResult

__all__ = [
    "CheckStats",
    "EndpointMetrics",
    "MetricSnapshot",
    "RequestMetric",
    "RunReport",
]


@dataclass
class CheckStats:
    """Pass/fail counters for one check name.

    Attributes:
        name: Check name as declared in the scenario.
        passes: Number of evaluations that held.
        fails: Number of evaluations that failed or raised.
    """

    name: str
    passes: int = 0
    fails: int = 0

    @property
    def total(self) -> int:
        """Return the number of evaluations."""
        return self.passes + self.fails

    @property
    def pass_rate(self) -> float:
        """Return the fraction of evaluations that passed (0.0 when none ran)."""
        return self.passes / self.total if self.total else 0.0


@dataclass
class EndpointMetrics:
    """Aggregated metrics for one logical request name.

    Attributes:
        name: Logical request name (defaults to the URL).
        request_count: Requests issued under this name.
        error_count: Failed requests (network error or status >= 400).
        network_errors: Requests that never produced a response.
        error_rate: Fraction of requests that failed (0.0 to 1.0).
        requests_per_second: Request rate over the interval.
        latency_min: Minimum response time in milliseconds.
        latency_max: Maximum response time in milliseconds.
        latency_avg: Mean response time in milliseconds.
        latency_p50: 50th percentile response time in milliseconds.
        latency_p90: 90th percentile response time in milliseconds.
        latency_p95: 95th percentile response time in milliseconds.
        latency_p99: 99th percentile response time in milliseconds.
    """

    name: str
    request_count: int = 0
    error_count: int = 0
    network_errors: int = 0
    error_rate: float = 0.0
    requests_per_second: float = 0.0
    latency_min: float = 0.0
    latency_max: float = 0.0
    latency_avg: float = 0.0
    latency_p50: float = 0.0
    latency_p90: float = 0.0
    latency_p95: float = 0.0
    latency_p99: float = 0.0


@dataclass
class MetricSnapshot:
    """Request metrics over an interval (one tick) or the whole run.

    Attributes:
        timestamp: Monotonic timestamp of the snapshot.
        elapsed_seconds: Seconds since the run started.
        active_users: Virtual users running at snapshot time.
        total_requests: Requests completed in the interval.
        requests_per_second: Overall request rate in the interval.
        latency_min: Minimum latency in milliseconds.
        latency_max: Maximum latency in milliseconds.
        latency_avg: Mean latency in milliseconds.
        latency_p50: 50th percentile latency (ms).
        latency_p90: 90th percentile latency (ms).
        latency_p95: 95th percentile latency (ms).
        latency_p99: 99th percentile latency (ms).
        total_errors: Failed requests (network error or status >= 400).
        network_errors: Requests that never produced a response.
        error_rate: Fraction of requests that failed (0.0 to 1.0).
        errors_by_status: Failed-request counts by HTTP status code.
        errors_by_type: Network-error counts by exception type name.
        endpoints: Per-request-name metrics.
    """

    timestamp: float
    elapsed_seconds: float
    active_users: int
    total_requests: int = 0
    requests_per_second: float = 0.0
    latency_min: float = 0.0
    latency_max: float = 0.0
    latency_avg: float = 0.0
    latency_p50: float = 0.0
    latency_p90: float = 0.0
    latency_p95: float = 0.0
    latency_p99: float = 0.0
    total_errors: int = 0
    network_errors: int = 0
    error_rate: float = 0.0
    errors_by_status: dict[int, int] = field(default_factory=dict)
    errors_by_type: dict[str, int] = field(default_factory=dict)
    endpoints: dict[str, EndpointMetrics] = field(default_factory=dict)


@dataclass
class RunReport:
    """Complete result of a scenario run.

    Attributes:
        scenario_name: Name of the scenario that ran.
        start_time: Monotonic time when the run started.
        end_time: Monotonic time when the run completed.
        duration_seconds: Wall-clock duration of the run.
        vus: Number of virtual users.
        stop_condition: Human-readable stop condition.
        iterations: Completed iterations across all users.
        interrupted_iterations: Iterations cut short by an abort.
        iterations_by_user: Completed iterations per virtual user id.
        iteration_duration_min_ms: Shortest iteration duration.
        iteration_duration_avg_ms: Mean iteration duration.
        iteration_duration_max_ms: Longest iteration duration.
        checks: Pass/fail counters keyed by check name.
        snapshots: Per-tick request metrics.
        final_summary: Request metrics over the whole run.
        thresholds: Threshold outcomes, when thresholds were configured.
    """

    scenario_name: str
    start_time: float
    end_time: float
    duration_seconds: float
    vus: int
    stop_condition: str
    iterations: int = 0
    interrupted_iterations: int = 0
    iterations_by_user: dict[int, int] = field(default_factory=dict)
    iteration_duration_min_ms: float = 0.0
    iteration_duration_avg_ms: float = 0.0
    iteration_duration_max_ms: float = 0.0
    checks: dict[str, CheckStats] = field(default_factory=dict)
    snapshots: list[MetricSnapshot] = field(default_factory=list)
    final_summary: MetricSnapshot | None = None
    thresholds: list[ThresholdResult] = field(default_factory=list)

    @property
    def checks_passed(self) -> int:
        """Return passes summed over all checks."""
        return sum(c.passes for c in self.checks.values())

    @property
    def checks_failed(self) -> int:
        """Return fails summed over all checks."""
        return sum(c.fails for c in self.checks.values())

    @property
    def check_failure_rate(self) -> float:
        """Return the fraction of check evaluations that failed."""
        total = self.checks_passed + self.checks_failed
        return self.checks_failed / total if total else 0.0

    @property
    def thresholds_passed(self) -> bool:
        """Return True when no configured threshold failed."""
        return all(t.passed for t in self.thresholds)
