"""In-memory metric collection for a single process."""

from __future__ import annotations

import threading
import time
from collections import defaultdict
from typing import TYPE_CHECKING

import numpy as np

from loadscript._internal.logging import get_logger
from loadscript.metrics.models import EndpointMetrics, MetricSnapshot

if TYPE_CHECKING:
    from loadscript.engine.executor import RequestMetric

logger = get_logger("metrics.collector")

_PERCENTILES = (50.0, 90.0, 95.0, 99.0)


def _latency_stats(latencies: list[float]) -> tuple[float, float, float, float, float, float, float]:
    """Compute latency statistics.

    Args:
        latencies: Latency values in milliseconds.

    Returns:
        Tuple of (min, max, avg, p50, p90, p95, p99), all zero when empty.
    """
    if not latencies:
        return (0.0, 0.0, 0.0, 0.0, 0.0, 0.0, 0.0)

    arr = np.array(latencies, dtype=np.float64)
    p50, p90, p95, p99 = np.percentile(arr, _PERCENTILES)
    return (
        float(np.min(arr)),
        float(np.max(arr)),
        float(np.mean(arr)),
        float(p50),
        float(p90),
        float(p95),
        float(p99),
    )


def is_failed(metric: RequestMetric) -> bool:
    """Return True for a network error or an HTTP status >= 400."""
    return metric.error is not None or metric.status_code >= 400


def error_type(metric: RequestMetric) -> str:
    """Return the exception type name of a network error metric."""
    return (metric.error or "").split(":")[0].strip()


def build_snapshot(
    metrics: list[RequestMetric],
    elapsed_seconds: float,
    active_users: int,
    interval: float,
) -> MetricSnapshot:
    """Aggregate raw request metrics into a MetricSnapshot.

    Args:
        metrics: Metrics to aggregate.
        elapsed_seconds: Elapsed seconds value for the snapshot.
        active_users: Active user count for the snapshot.
        interval: Time span the metrics cover, for request rates.

    Returns:
        Aggregated MetricSnapshot.
    """
    interval = max(interval, 0.001)
    if not metrics:
        return MetricSnapshot(
            timestamp=time.monotonic(),
            elapsed_seconds=elapsed_seconds,
            active_users=active_users,
        )

    by_endpoint: dict[str, list[RequestMetric]] = defaultdict(list)
    errors_by_status: dict[int, int] = defaultdict(int)
    errors_by_type: dict[str, int] = defaultdict(int)
    total_errors = 0
    network_errors = 0

    for metric in metrics:
        by_endpoint[metric.name].append(metric)
        if not is_failed(metric):
            continue
        total_errors += 1
        if metric.is_network_error:
            network_errors += 1
            errors_by_type[error_type(metric)] += 1
        else:
            errors_by_status[metric.status_code] += 1

    endpoints: dict[str, EndpointMetrics] = {}
    for name, ep_metrics in by_endpoint.items():
        ep_count = len(ep_metrics)
        ep_errors = sum(1 for m in ep_metrics if is_failed(m))
        ep_min, ep_max, ep_avg, ep_p50, ep_p90, ep_p95, ep_p99 = _latency_stats(
            [m.latency_ms for m in ep_metrics]
        )
        endpoints[name] = EndpointMetrics(
            name=name,
            request_count=ep_count,
            error_count=ep_errors,
            network_errors=sum(1 for m in ep_metrics if m.is_network_error),
            error_rate=ep_errors / ep_count,
            requests_per_second=ep_count / interval,
            latency_min=ep_min,
            latency_max=ep_max,
            latency_avg=ep_avg,
            latency_p50=ep_p50,
            latency_p90=ep_p90,
            latency_p95=ep_p95,
            latency_p99=ep_p99,
        )

    lat_min, lat_max, lat_avg, lat_p50, lat_p90, lat_p95, lat_p99 = _latency_stats(
        [m.latency_ms for m in metrics]
    )
    total_requests = len(metrics)

    return MetricSnapshot(
        timestamp=time.monotonic(),
        elapsed_seconds=elapsed_seconds,
        active_users=active_users,
        total_requests=total_requests,
        requests_per_second=total_requests / interval,
        latency_min=lat_min,
        latency_max=lat_max,
        latency_avg=lat_avg,
        latency_p50=lat_p50,
        latency_p90=lat_p90,
        latency_p95=lat_p95,
        latency_p99=lat_p99,
        total_errors=total_errors,
        network_errors=network_errors,
        error_rate=total_errors / total_requests,
        errors_by_status=dict(errors_by_status),
        errors_by_type=dict(errors_by_type),
        endpoints=endpoints,
    )


class MetricCollector:
    """Collects RequestMetric objects emitted by the HTTP executors.

    ``record`` is the executor's ``metric_callback``. ``flush`` turns
    what arrived since the last flush into a per-tick snapshot; ``drain``
    hands the raw metrics over instead (worker processes ship them to the
    coordinator).

    Attributes:
        worker_id: Worker process identifier.
    """

    def __init__(self, worker_id: int = 0) -> None:
        """Initialize the collector.

        Args:
            worker_id: Worker process identifier.
        """
        self.worker_id = worker_id
        self._lock = threading.Lock()
        self._buffer: list[RequestMetric] = []
        self._all_metrics: list[RequestMetric] = []
        self._last_flush_time = time.monotonic()

    @property
    def pending_count(self) -> int:
        """Return the number of metrics not yet flushed or drained."""
        with self._lock:
            return len(self._buffer)

    def record(self, metric: RequestMetric) -> None:
        """Append a metric to the buffer.

        Args:
            metric: The request metric to record.
        """
        with self._lock:
            self._buffer.append(metric)

    def drain(self) -> list[RequestMetric]:
        """Remove and return all buffered metrics without aggregating them."""
        with self._lock:
            drained, self._buffer = self._buffer, []
        return drained

    def flush(self, elapsed_seconds: float, active_users: int) -> MetricSnapshot:
        """Drain the buffer and aggregate it into a snapshot.

        Args:
            elapsed_seconds: Seconds elapsed since the run started.
            active_users: Current number of running virtual users.

        Returns:
            A MetricSnapshot of the metrics recorded since the last flush.
        """
        drained = self.drain()
        self._all_metrics.extend(drained)

        now = time.monotonic()
        interval = now - self._last_flush_time
        self._last_flush_time = now

        return build_snapshot(drained, elapsed_seconds, active_users, interval)

    def get_cumulative_snapshot(self, elapsed_seconds: float, active_users: int) -> MetricSnapshot:
        """Return a snapshot of every metric flushed since creation.

        Args:
            elapsed_seconds: Total elapsed seconds.
            active_users: Current active virtual user count.

        Returns:
            A cumulative MetricSnapshot.
        """
        return build_snapshot(self._all_metrics, elapsed_seconds, active_users, elapsed_seconds)

    def reset(self) -> None:
        """Clear all internal state."""
        with self._lock:
            self._buffer.clear()
        self._all_metrics.clear()
        self._last_flush_time = time.monotonic()
