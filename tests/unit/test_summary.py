"""Tests for summary rendering and persistence."""

from __future__ import annotations

import csv
import json
from io import StringIO
from pathlib import Path

import pytest
from rich.console import Console

from loadscript._internal.errors import ConfigError
from loadscript.metrics.models import CheckStats, EndpointMetrics, MetricSnapshot, RunReport
from loadscript.metrics.thresholds import ThresholdResult
from loadscript.report.summary import load_report, render_summary, report_to_dict, save_report


def _snapshot(requests: int = 30) -> MetricSnapshot:
    return MetricSnapshot(
        timestamp=12.0,
        elapsed_seconds=10.0,
        active_users=0,
        total_requests=requests,
        requests_per_second=requests / 10,
        latency_p95=42.0,
        total_errors=10,
        error_rate=10 / requests,
        errors_by_status={401: 10},
        endpoints={
            "Home": EndpointMetrics(name="Home", request_count=20, latency_p95=40.0),
            "Rate pizza": EndpointMetrics(
                name="Rate pizza", request_count=10, error_count=10, error_rate=1.0
            ),
        },
    )


def _report() -> RunReport:
    return RunReport(
        scenario_name="QuickPizza",
        start_time=2.0,
        end_time=12.0,
        duration_seconds=10.0,
        vus=2,
        stop_condition="5 iterations per VU",
        iterations=10,
        iterations_by_user={0: 5, 1: 5},
        iteration_duration_min_ms=1001.0,
        iteration_duration_avg_ms=1012.5,
        iteration_duration_max_ms=1030.0,
        checks={
            "status equals 200": CheckStats("status equals 200", passes=20, fails=0),
            "status equals 401": CheckStats("status equals 401", passes=9, fails=1),
        },
        snapshots=[_snapshot(15), _snapshot(15)],
        final_summary=_snapshot(),
        thresholds=[ThresholdResult(name="p95_ms", limit=100.0, actual=42.0, passed=True)],
    )


class TestJson:
    def test_round_trip(self, tmp_path: Path):
        report = _report()
        (path,) = save_report(report, tmp_path / "out", "json")

        assert path.name == "summary.json"
        loaded = load_report(path)
        assert loaded == report

    def test_load_from_directory(self, tmp_path: Path):
        save_report(_report(), tmp_path, "json")
        assert load_report(tmp_path).scenario_name == "QuickPizza"

    def test_dict_has_totals(self):
        data = report_to_dict(_report())
        assert data["checks_passed"] == 29
        assert data["checks_failed"] == 1
        assert data["thresholds_passed"] is True
        json.dumps(data)

    def test_missing_file_raises(self, tmp_path: Path):
        with pytest.raises(ConfigError, match="not found"):
            load_report(tmp_path / "summary.json")

    def test_invalid_json_raises(self, tmp_path: Path):
        path = tmp_path / "summary.json"
        path.write_text("{broken")
        with pytest.raises(ConfigError, match="Invalid JSON"):
            load_report(path)

    def test_malformed_report_raises(self, tmp_path: Path):
        path = tmp_path / "summary.json"
        path.write_text(json.dumps({"scenario_name": "x"}))
        with pytest.raises(ConfigError, match="Malformed"):
            load_report(path)


class TestCsv:
    def test_writes_endpoints_and_checks(self, tmp_path: Path):
        paths = save_report(_report(), tmp_path, "csv")
        assert [p.name for p in paths] == ["endpoints.csv", "checks.csv"]

        with paths[0].open(newline="") as fh:
            endpoints = list(csv.DictReader(fh))
        assert [row["name"] for row in endpoints] == ["Home", "Rate pizza"]
        assert endpoints[1]["error_count"] == "10"

        with paths[1].open(newline="") as fh:
            checks = list(csv.DictReader(fh))
        assert checks[1] == {"name": "status equals 401", "passes": "9", "fails": "1", "pass_rate": "0.9000"}

    def test_unknown_format_raises(self, tmp_path: Path):
        with pytest.raises(ConfigError, match="Unknown report format"):
            save_report(_report(), tmp_path, "xml")


class TestRenderSummary:
    def test_renders_checks_requests_and_thresholds(self):
        buffer = StringIO()
        render_summary(_report(), Console(file=buffer, width=160, color_system=None))
        output = buffer.getvalue()

        assert "status equals 401" in output
        assert "Rate pizza" in output
        assert "QuickPizza" in output
        assert "29 passed / 1 failed" in output
        assert "p95_ms" in output
        assert "1001.0ms / 1012.5ms / 1030.0ms" in output

    def test_check_names_are_not_markup(self):
        report = _report()
        report.checks = {"[bold]odd[/bold]": CheckStats("[bold]odd[/bold]", passes=1)}
        buffer = StringIO()
        render_summary(report, Console(file=buffer, width=160, color_system=None))
        assert "[bold]odd[/bold]" in buffer.getvalue()
