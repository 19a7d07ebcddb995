"""End-of-run summary: Rich rendering and JSON/CSV persistence."""

from __future__ import annotations

import csv
import json
from dataclasses import asdict
from pathlib import Path
from typing import TYPE_CHECKING, Any

from rich.table import Table
from rich.text import Text

from loadscript._internal.errors import ConfigError
from loadscript.metrics.models import CheckStats, EndpointMetrics, MetricSnapshot, RunReport
from loadscript.metrics.thresholds import ThresholdResult

if TYPE_CHECKING:
    from rich.console import Console

REPORT_FORMATS = ("json", "csv")

_ENDPOINT_COLUMNS = (
    "name",
    "request_count",
    "error_count",
    "network_errors",
    "error_rate",
    "requests_per_second",
    "latency_min",
    "latency_avg",
    "latency_max",
    "latency_p50",
    "latency_p90",
    "latency_p95",
    "latency_p99",
)


def report_to_dict(report: RunReport) -> dict[str, Any]:
    """Return a JSON-serializable form of ``report``."""
    data = asdict(report)
    data["checks_passed"] = report.checks_passed
    data["checks_failed"] = report.checks_failed
    data["thresholds_passed"] = report.thresholds_passed
    return data


def report_from_dict(data: dict[str, Any]) -> RunReport:
    """Rebuild a RunReport from :func:`report_to_dict` output (after a JSON round trip).

    Raises:
        ConfigError: If required fields are missing or malformed.
    """
    try:
        final = data.get("final_summary")
        return RunReport(
            scenario_name=data["scenario_name"],
            start_time=float(data["start_time"]),
            end_time=float(data["end_time"]),
            duration_seconds=float(data["duration_seconds"]),
            vus=int(data["vus"]),
            stop_condition=data["stop_condition"],
            iterations=int(data.get("iterations", 0)),
            interrupted_iterations=int(data.get("interrupted_iterations", 0)),
            iterations_by_user={int(k): int(v) for k, v in data.get("iterations_by_user", {}).items()},
            iteration_duration_min_ms=float(data.get("iteration_duration_min_ms", 0.0)),
            iteration_duration_avg_ms=float(data.get("iteration_duration_avg_ms", 0.0)),
            iteration_duration_max_ms=float(data.get("iteration_duration_max_ms", 0.0)),
            checks={name: CheckStats(**stats) for name, stats in data.get("checks", {}).items()},
            snapshots=[_snapshot_from_dict(s) for s in data.get("snapshots", [])],
            final_summary=_snapshot_from_dict(final) if final else None,
            thresholds=[ThresholdResult(**t) for t in data.get("thresholds", [])],
        )
    except (KeyError, TypeError, ValueError) as exc:
        msg = f"Malformed results data: {exc}"
        raise ConfigError(msg) from exc


def _snapshot_from_dict(data: dict[str, Any]) -> MetricSnapshot:
    fields = dict(data)
    fields["errors_by_status"] = {int(k): v for k, v in fields.get("errors_by_status", {}).items()}
    fields["endpoints"] = {name: EndpointMetrics(**ep) for name, ep in fields.get("endpoints", {}).items()}
    return MetricSnapshot(**fields)


def save_report(report: RunReport, output_dir: str | Path, fmt: str = "json") -> list[Path]:
    """Write ``report`` into ``output_dir``.

    ``json`` writes ``summary.json`` (everything, reloadable with
    :func:`load_report`); ``csv`` writes ``endpoints.csv`` and
    ``checks.csv``.

    Args:
        report: The finished run.
        output_dir: Directory to write into; created if missing.
        fmt: ``"json"`` or ``"csv"``.

    Returns:
        Paths of the files written.

    Raises:
        ConfigError: On an unknown format.
    """
    if fmt not in REPORT_FORMATS:
        msg = f"Unknown report format {fmt!r}. Choose from: {', '.join(REPORT_FORMATS)}"
        raise ConfigError(msg)

    directory = Path(output_dir)
    directory.mkdir(parents=True, exist_ok=True)

    if fmt == "json":
        path = directory / "summary.json"
        path.write_text(json.dumps(report_to_dict(report), indent=2), encoding="utf-8")
        return [path]

    endpoints_path = directory / "endpoints.csv"
    with endpoints_path.open("w", newline="", encoding="utf-8") as fh:
        writer = csv.writer(fh)
        writer.writerow(_ENDPOINT_COLUMNS)
        endpoints = report.final_summary.endpoints if report.final_summary else {}
        for endpoint in endpoints.values():
            writer.writerow([getattr(endpoint, column) for column in _ENDPOINT_COLUMNS])

    checks_path = directory / "checks.csv"
    with checks_path.open("w", newline="", encoding="utf-8") as fh:
        writer = csv.writer(fh)
        writer.writerow(("name", "passes", "fails", "pass_rate"))
        for stats in report.checks.values():
            writer.writerow((stats.name, stats.passes, stats.fails, f"{stats.pass_rate:.4f}"))

    return [endpoints_path, checks_path]


def load_report(path: str | Path) -> RunReport:
    """Load a report saved as JSON by :func:`save_report`.

    Args:
        path: A ``summary.json`` file, or the directory containing one.

    Raises:
        ConfigError: If the file is missing or not a valid report.
    """
    file_path = Path(path)
    if file_path.is_dir():
        file_path = file_path / "summary.json"
    if not file_path.is_file():
        msg = f"Results file not found: {file_path}"
        raise ConfigError(msg)
    try:
        data = json.loads(file_path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as exc:
        msg = f"Invalid JSON in results file {file_path}: {exc}"
        raise ConfigError(msg) from exc
    if not isinstance(data, dict):
        msg = f"Results file {file_path} does not hold a JSON object"
        raise ConfigError(msg)
    return report_from_dict(data)


def render_summary(report: RunReport, console: Console) -> None:
    """Print the end-of-run summary tables.

    Args:
        report: The finished run.
        console: Rich console to print to.
    """
    if report.checks:
        checks = Table(title="Checks", show_header=True, header_style="bold cyan", expand=True)
        checks.add_column("Check")
        checks.add_column("Passes", justify="right")
        checks.add_column("Fails", justify="right")
        checks.add_column("Pass %", justify="right")
        for stats in report.checks.values():
            style = "green" if stats.fails == 0 else "red"
            checks.add_row(
                Text(stats.name, style=style),
                str(stats.passes),
                str(stats.fails),
                f"{stats.pass_rate * 100:.2f}%",
            )
        console.print(checks)

    summary = report.final_summary
    if summary and summary.endpoints:
        endpoints = Table(title="Requests", show_header=True, header_style="bold cyan", expand=True)
        endpoints.add_column("Request")
        endpoints.add_column("Count", justify="right")
        endpoints.add_column("Min", justify="right")
        endpoints.add_column("Avg", justify="right")
        endpoints.add_column("Max", justify="right")
        endpoints.add_column("p90", justify="right")
        endpoints.add_column("p95", justify="right")
        endpoints.add_column("Errors", justify="right")
        endpoints.add_column("Net errors", justify="right")
        for ep in summary.endpoints.values():
            endpoints.add_row(
                ep.name,
                str(ep.request_count),
                f"{ep.latency_min:.1f}ms",
                f"{ep.latency_avg:.1f}ms",
                f"{ep.latency_max:.1f}ms",
                f"{ep.latency_p90:.1f}ms",
                f"{ep.latency_p95:.1f}ms",
                str(ep.error_count),
                str(ep.network_errors),
            )
        console.print(endpoints)

    table = Table(title="Run Summary", show_header=True, header_style="bold green", expand=True)
    table.add_column("Metric", style="bold")
    table.add_column("Value", justify="right")
    table.add_row("Scenario", report.scenario_name)
    table.add_row("Stop condition", report.stop_condition)
    table.add_row("Virtual users", str(report.vus))
    table.add_row("Duration", f"{report.duration_seconds:.1f}s")
    table.add_row("Iterations", str(report.iterations))
    if report.interrupted_iterations:
        table.add_row("Interrupted iterations", str(report.interrupted_iterations))
    table.add_row(
        "Iteration duration (min / avg / max)",
        f"{report.iteration_duration_min_ms:.1f}ms / {report.iteration_duration_avg_ms:.1f}ms"
        f" / {report.iteration_duration_max_ms:.1f}ms",
    )
    table.add_row("Checks", f"{report.checks_passed} passed / {report.checks_failed} failed")
    if summary:
        table.add_row("Requests", str(summary.total_requests))
        table.add_row("Requests/sec", f"{summary.requests_per_second:.1f}")
        table.add_row(
            "p50 / p95 / p99",
            f"{summary.latency_p50:.1f} / {summary.latency_p95:.1f} / {summary.latency_p99:.1f}ms",
        )
        table.add_row("Failed requests", f"{summary.total_errors} ({summary.error_rate * 100:.2f}%)")
        table.add_row("Network errors", str(summary.network_errors))
    console.print(table)

    if report.thresholds:
        thresholds = Table(title="Thresholds", show_header=True, header_style="bold cyan", expand=True)
        thresholds.add_column("Threshold")
        thresholds.add_column("Limit", justify="right")
        thresholds.add_column("Actual", justify="right")
        thresholds.add_column("Result", justify="right")
        for outcome in report.thresholds:
            thresholds.add_row(
                outcome.name,
                f"{outcome.limit:.4g}",
                f"{outcome.actual:.4g}",
                "[green]pass[/green]" if outcome.passed else "[red]FAIL[/red]",
            )
        console.print(thresholds)
