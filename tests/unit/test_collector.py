"""Tests for the MetricCollector."""

from __future__ import annotations

import time

import pytest

from loadscript.metrics.collector import MetricCollector, build_snapshot, error_type, is_failed
from loadscript.metrics.models import RequestMetric


def _make_metric(
    name: str = "Test",
    latency_ms: float = 10.0,
    status_code: int = 200,
    error: str | None = None,
) -> RequestMetric:
    """Create a RequestMetric with sensible defaults."""
    return RequestMetric(
        timestamp=time.monotonic(),
        name=name,
        method="GET",
        url="http://localhost/test",
        status_code=status_code,
        latency_ms=latency_ms,
        content_length=0,
        error=error,
        worker_id=0,
    )


class TestClassification:
    def test_is_failed(self):
        assert not is_failed(_make_metric(status_code=200))
        assert not is_failed(_make_metric(status_code=302))
        assert is_failed(_make_metric(status_code=401))
        assert is_failed(_make_metric(status_code=0, error="ClientConnectorError: refused"))

    def test_error_type(self):
        metric = _make_metric(status_code=0, error="TimeoutError: request timed out")
        assert error_type(metric) == "TimeoutError"


class TestMetricCollectorRecord:
    """Tests for the record method."""

    def test_record_appends_to_buffer(self) -> None:
        collector = MetricCollector()
        collector.record(_make_metric())
        assert collector.pending_count == 1

    def test_pending_count_starts_at_zero(self) -> None:
        assert MetricCollector().pending_count == 0

    def test_drain_returns_raw_metrics(self) -> None:
        collector = MetricCollector()
        metrics = [_make_metric(name=str(i)) for i in range(3)]
        for metric in metrics:
            collector.record(metric)
        assert collector.drain() == metrics
        assert collector.pending_count == 0
        assert collector.drain() == []


class TestMetricCollectorFlush:
    """Tests for the flush method."""

    def test_flush_drains_buffer(self) -> None:
        collector = MetricCollector()
        collector.record(_make_metric())
        collector.record(_make_metric())
        collector.flush(elapsed_seconds=1.0, active_users=1)
        assert collector.pending_count == 0

    def test_flush_empty_gives_zero_snapshot(self) -> None:
        snapshot = MetricCollector().flush(elapsed_seconds=1.0, active_users=3)
        assert snapshot.total_requests == 0
        assert snapshot.active_users == 3
        assert snapshot.error_rate == 0.0

    def test_flush_computes_latency_stats(self) -> None:
        collector = MetricCollector()
        for latency in range(1, 101):
            collector.record(_make_metric(latency_ms=float(latency)))

        snapshot = collector.flush(elapsed_seconds=1.0, active_users=1)

        assert snapshot.total_requests == 100
        assert snapshot.latency_min == 1.0
        assert snapshot.latency_max == 100.0
        assert snapshot.latency_avg == pytest.approx(50.5)
        assert snapshot.latency_p50 == pytest.approx(50.5)
        assert snapshot.latency_p95 == pytest.approx(95.05)

    def test_flush_counts_errors(self) -> None:
        collector = MetricCollector()
        collector.record(_make_metric(name="Home"))
        collector.record(_make_metric(name="Rate pizza", status_code=401))
        collector.record(_make_metric(name="Rate pizza", status_code=0, error="ClientConnectorError: x"))

        snapshot = collector.flush(elapsed_seconds=1.0, active_users=1)

        assert snapshot.total_errors == 2
        assert snapshot.network_errors == 1
        assert snapshot.error_rate == pytest.approx(2 / 3)
        assert snapshot.errors_by_status == {401: 1}
        assert snapshot.errors_by_type == {"ClientConnectorError": 1}
        assert snapshot.endpoints["Rate pizza"].error_count == 2
        assert snapshot.endpoints["Rate pizza"].network_errors == 1
        assert snapshot.endpoints["Home"].error_rate == 0.0

    def test_cumulative_snapshot_covers_all_flushes(self) -> None:
        collector = MetricCollector()
        collector.record(_make_metric())
        collector.flush(elapsed_seconds=1.0, active_users=1)
        collector.record(_make_metric())
        collector.record(_make_metric())
        collector.flush(elapsed_seconds=2.0, active_users=1)

        cumulative = collector.get_cumulative_snapshot(elapsed_seconds=2.0, active_users=0)

        assert cumulative.total_requests == 3
        assert cumulative.requests_per_second == pytest.approx(1.5)

    def test_reset_clears_everything(self) -> None:
        collector = MetricCollector()
        collector.record(_make_metric())
        collector.flush(elapsed_seconds=1.0, active_users=1)
        collector.record(_make_metric())
        collector.reset()
        assert collector.pending_count == 0
        assert collector.get_cumulative_snapshot(1.0, 0).total_requests == 0


class TestBuildSnapshot:
    def test_requests_per_second_uses_interval(self):
        snapshot = build_snapshot([_make_metric() for _ in range(10)], 5.0, 2, interval=2.0)
        assert snapshot.requests_per_second == pytest.approx(5.0)
        assert snapshot.endpoints["Test"].requests_per_second == pytest.approx(5.0)
