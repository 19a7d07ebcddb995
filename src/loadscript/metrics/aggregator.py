"""Cross-worker metric aggregation via a background thread.

``MetricAggregator`` drains the per-worker metric queues at every tick,
feeds latencies into HDR histograms (which, unlike raw sample lists, can
be merged cheaply across processes) and emits one ``MetricSnapshot`` per
tick.
"""

from __future__ import annotations

import queue
import threading
import time
from collections import defaultdict
from typing import TYPE_CHECKING

from hdrh.histogram import HdrHistogram  # type: ignore[import-untyped]

from loadscript._internal.logging import get_logger
from loadscript.metrics.collector import error_type, is_failed
from loadscript.metrics.models import EndpointMetrics, MetricSnapshot

if TYPE_CHECKING:
    from collections.abc import Callable
    from multiprocessing import Queue as MpQueue

    from loadscript.engine.executor import RequestMetric

logger = get_logger("metrics.aggregator")

# Range: 1 microsecond to 10 minutes (in microseconds)
_LOWEST_TRACKABLE_US = 1
_HIGHEST_TRACKABLE_US = 600_000_000
_SIGNIFICANT_DIGITS = 3


class LatencyHistogram:
    """HDR histogram of latencies, in milliseconds.

    Values are stored as integer microseconds, clamped to the trackable
    range.
    """

    def __init__(self) -> None:
        self._histogram = HdrHistogram(_LOWEST_TRACKABLE_US, _HIGHEST_TRACKABLE_US, _SIGNIFICANT_DIGITS)

    @property
    def count(self) -> int:
        """Return the number of recorded values."""
        return int(self._histogram.total_count)

    def record(self, latency_ms: float) -> None:
        """Record one latency in milliseconds."""
        value_us = max(_LOWEST_TRACKABLE_US, min(int(latency_ms * 1000), _HIGHEST_TRACKABLE_US))
        self._histogram.record_value(value_us)

    def percentile(self, percentile: float) -> float:
        """Return the latency at ``percentile`` (0-100), or 0.0 when empty."""
        if not self.count:
            return 0.0
        return float(self._histogram.get_value_at_percentile(percentile)) / 1000.0

    def min(self) -> float:
        """Return the smallest latency, or 0.0 when empty."""
        return float(self._histogram.get_min_value()) / 1000.0 if self.count else 0.0

    def max(self) -> float:
        """Return the largest latency, or 0.0 when empty."""
        return float(self._histogram.get_max_value()) / 1000.0 if self.count else 0.0

    def mean(self) -> float:
        """Return the mean latency, or 0.0 when empty."""
        return float(self._histogram.get_mean_value()) / 1000.0 if self.count else 0.0

    def add(self, other: LatencyHistogram) -> None:
        """Merge ``other`` into this histogram."""
        self._histogram.add(other._histogram)


class _Window:
    """Histograms and counters over one aggregation window."""

    def __init__(self) -> None:
        self.overall = LatencyHistogram()
        self.endpoints: dict[str, LatencyHistogram] = {}
        self.requests = 0
        self.errors = 0
        self.network_errors = 0
        self.errors_by_status: dict[int, int] = defaultdict(int)
        self.errors_by_type: dict[str, int] = defaultdict(int)
        self.endpoint_requests: dict[str, int] = defaultdict(int)
        self.endpoint_errors: dict[str, int] = defaultdict(int)
        self.endpoint_network_errors: dict[str, int] = defaultdict(int)

    def add(self, metric: RequestMetric) -> None:
        name = metric.name
        self.overall.record(metric.latency_ms)
        self.endpoints.setdefault(name, LatencyHistogram()).record(metric.latency_ms)
        self.requests += 1
        self.endpoint_requests[name] += 1

        if not is_failed(metric):
            return
        self.errors += 1
        self.endpoint_errors[name] += 1
        if metric.is_network_error:
            self.network_errors += 1
            self.endpoint_network_errors[name] += 1
            self.errors_by_type[error_type(metric)] += 1
        else:
            self.errors_by_status[metric.status_code] += 1

    def snapshot(self, elapsed_seconds: float, active_users: int, interval: float) -> MetricSnapshot:
        interval = max(interval, 0.001)
        endpoints = {
            name: EndpointMetrics(
                name=name,
                request_count=self.endpoint_requests[name],
                error_count=self.endpoint_errors[name],
                network_errors=self.endpoint_network_errors[name],
                error_rate=self.endpoint_errors[name] / self.endpoint_requests[name],
                requests_per_second=self.endpoint_requests[name] / interval,
                latency_min=hist.min(),
                latency_max=hist.max(),
                latency_avg=hist.mean(),
                latency_p50=hist.percentile(50.0),
                latency_p90=hist.percentile(90.0),
                latency_p95=hist.percentile(95.0),
                latency_p99=hist.percentile(99.0),
            )
            for name, hist in self.endpoints.items()
        }
        return MetricSnapshot(
            timestamp=time.monotonic(),
            elapsed_seconds=elapsed_seconds,
            active_users=active_users,
            total_requests=self.requests,
            requests_per_second=self.requests / interval,
            latency_min=self.overall.min(),
            latency_max=self.overall.max(),
            latency_avg=self.overall.mean(),
            latency_p50=self.overall.percentile(50.0),
            latency_p90=self.overall.percentile(90.0),
            latency_p95=self.overall.percentile(95.0),
            latency_p99=self.overall.percentile(99.0),
            total_errors=self.errors,
            network_errors=self.network_errors,
            error_rate=self.errors / self.requests if self.requests else 0.0,
            errors_by_status=dict(self.errors_by_status),
            errors_by_type=dict(self.errors_by_type),
            endpoints=endpoints,
        )


class MetricAggregator:
    """Aggregates metrics from multiple worker processes.

    Two windows are kept: the per-tick one is reset after each snapshot,
    the cumulative one backs the final summary.

    Attributes:
        tick_interval: Seconds between aggregation ticks.
    """

    def __init__(
        self,
        metric_queues: list[MpQueue[list[RequestMetric]]],
        *,
        on_snapshot: Callable[[MetricSnapshot], None] | None = None,
        tick_interval: float = 1.0,
    ) -> None:
        """Initialize the aggregator.

        Args:
            metric_queues: Per-worker queues to drain metrics from.
            on_snapshot: Optional callback invoked with each tick snapshot.
            tick_interval: Seconds between aggregation ticks.
        """
        self._metric_queues = metric_queues
        self._on_snapshot = on_snapshot
        self.tick_interval = tick_interval

        self._lock = threading.Lock()
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None
        self._start_time = time.monotonic()
        self._active_users = 0

        self._tick = _Window()
        self._cumulative = _Window()
        self._snapshots: list[MetricSnapshot] = []

    @property
    def snapshots(self) -> list[MetricSnapshot]:
        """Return a copy of the tick snapshots emitted so far."""
        with self._lock:
            return list(self._snapshots)

    def set_active_users(self, count: int) -> None:
        """Update the active user count reported in snapshots."""
        self._active_users = count

    def start(self) -> None:
        """Start the aggregator background thread."""
        self._start_time = time.monotonic()
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run_loop, name="loadscript-aggregator", daemon=True)
        self._thread.start()
        logger.debug("Aggregator thread started")

    def stop(self) -> None:
        """Stop the thread after a last drain of the queues."""
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout=5.0)
            self._thread = None
        self.drain()
        logger.debug("Aggregator thread stopped")

    def process_batch(self, batch: list[RequestMetric]) -> None:
        """Add a batch of metrics to both windows."""
        with self._lock:
            for metric in batch:
                self._tick.add(metric)
                self._cumulative.add(metric)

    def drain(self) -> None:
        """Process every batch currently waiting in the worker queues."""
        for q in self._metric_queues:
            while True:
                try:
                    batch: list[RequestMetric] = q.get_nowait()
                except (queue.Empty, EOFError, ValueError, OSError):
                    # ValueError/OSError: queue closed during shutdown
                    break
                self.process_batch(batch)

    def tick(self) -> MetricSnapshot:
        """Emit a snapshot of the current window and start a new one."""
        elapsed = time.monotonic() - self._start_time
        with self._lock:
            snapshot = self._tick.snapshot(elapsed, self._active_users, self.tick_interval)
            self._tick = _Window()
            self._snapshots.append(snapshot)

        if self._on_snapshot is not None:
            try:
                self._on_snapshot(snapshot)
            except Exception:
                logger.warning("Snapshot callback failed", exc_info=True)
        return snapshot

    def get_final_snapshot(self, elapsed_seconds: float) -> MetricSnapshot:
        """Build a snapshot over everything recorded since start.

        Args:
            elapsed_seconds: Total run duration in seconds.

        Returns:
            Cumulative MetricSnapshot.
        """
        with self._lock:
            return self._cumulative.snapshot(elapsed_seconds, 0, elapsed_seconds)

    def _run_loop(self) -> None:
        while not self._stop_event.wait(timeout=self.tick_interval):
            self.drain()
            self.tick()
