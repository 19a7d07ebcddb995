"""``loadscript run``: execute a scenario with live terminal output."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import TYPE_CHECKING

import typer
from rich.console import Console
from rich.live import Live
from rich.panel import Panel
from rich.table import Table

from loadscript._internal.errors import LoadScriptError
from loadscript.engine.runner import LoadTestRunner
from loadscript.metrics.thresholds import Thresholds
from loadscript.report.summary import REPORT_FORMATS, render_summary, save_report

if TYPE_CHECKING:
    from loadscript.metrics.models import MetricSnapshot

console = Console(stderr=True)


def _make_live_table(snapshot: MetricSnapshot | None) -> Table:
    """Build a Rich table of the latest tick.

    Args:
        snapshot: Latest metric snapshot, or None if no data yet.

    Returns:
        Formatted Rich Table.
    """
    table = Table(show_header=True, header_style="bold cyan", expand=True)
    table.add_column("Metric", style="bold")
    table.add_column("Value", justify="right")

    if snapshot is None:
        table.add_row("Status", "Starting...")
        return table

    table.add_row("Elapsed", f"{snapshot.elapsed_seconds:.0f}s")
    table.add_row("Active VUs", str(snapshot.active_users))
    table.add_row("Requests/sec", f"{snapshot.requests_per_second:.1f}")
    table.add_row("Requests (tick)", str(snapshot.total_requests))
    table.add_row("p50 Latency", f"{snapshot.latency_p50:.1f}ms")
    table.add_row("p95 Latency", f"{snapshot.latency_p95:.1f}ms")
    table.add_row("Failed requests", str(snapshot.total_errors))
    table.add_row("Network errors", str(snapshot.network_errors))
    return table


def run_cmd(
    scenario_file: Path = typer.Argument(
        ...,
        help="Path to the scenario .py or .json file.",
        exists=True,
        file_okay=True,
        dir_okay=False,
        readable=True,
    ),
    name: str | None = typer.Option(
        None,
        "--name",
        "-n",
        help="Scenario to run when the file defines several.",
    ),
    vus: int | None = typer.Option(
        None,
        "--vus",
        "-u",
        help="Concurrent virtual users (default: scenario option, else 1).",
        min=1,
    ),
    duration: float | None = typer.Option(
        None,
        "--duration",
        "-d",
        help="Run duration in seconds.",
        min=0.001,
    ),
    iterations: int | None = typer.Option(
        None,
        "--iterations",
        "-i",
        help="Iterations per virtual user.",
        min=1,
    ),
    workers: int = typer.Option(
        1,
        "--workers",
        "-w",
        help="Worker processes (capped at CPU count and VUs).",
        min=1,
    ),
    rps: float | None = typer.Option(
        None,
        "--rps",
        help="Maximum requests per second across all VUs.",
    ),
    tick_interval: float = typer.Option(
        1.0,
        "--tick-interval",
        help="Seconds between live metric snapshots.",
        min=0.05,
    ),
    graceful_stop: float | None = typer.Option(
        None,
        "--graceful-stop",
        help="Seconds in-flight iterations get to finish (default: LOADSCRIPT_GRACEFUL_STOP).",
        min=0.0,
    ),
    output: Path | None = typer.Option(
        None,
        "--output",
        "-o",
        help="Directory to save the summary into.",
    ),
    fmt: str = typer.Option(
        "json",
        "--format",
        "-f",
        help="Summary file format: json or csv.",
    ),
    max_check_failure_rate: float | None = typer.Option(
        None,
        "--max-check-failure-rate",
        help="Exit non-zero if the check failure rate exceeds this (e.g., 0.01).",
    ),
    max_error_rate: float | None = typer.Option(
        None,
        "--max-error-rate",
        help="Exit non-zero if the failed request rate exceeds this (e.g., 0.05).",
    ),
    max_p95: float | None = typer.Option(
        None,
        "--max-p95",
        help="Exit non-zero if the overall p95 latency exceeds this many milliseconds.",
    ),
    verbose: bool = typer.Option(
        False,
        "--verbose",
        "-v",
        help="Enable verbose (DEBUG) logging.",
    ),
    log_json: bool = typer.Option(
        False,
        "--log-json",
        help="Log one JSON object per line.",
    ),
) -> None:
    """Execute a scenario with live terminal output."""
    if fmt not in REPORT_FORMATS:
        msg = f"Unknown format {fmt!r}. Choose from: {', '.join(REPORT_FORMATS)}"
        raise typer.BadParameter(msg)

    live = Live(_make_live_table(None), console=console, refresh_per_second=2, transient=True)

    def _on_snapshot(snapshot: MetricSnapshot) -> None:
        live.update(_make_live_table(snapshot))

    try:
        thresholds = Thresholds(
            max_check_failure_rate=max_check_failure_rate,
            max_error_rate=max_error_rate,
            max_p95_ms=max_p95,
        )
        test_runner = LoadTestRunner(
            scenario_file,
            scenario_name=name,
            vus=vus,
            duration=duration,
            iterations=iterations,
            workers=workers,
            tick_interval=tick_interval,
            rate_limit=rps,
            graceful_stop=graceful_stop,
            thresholds=thresholds,
            on_snapshot=_on_snapshot,
            log_level=logging.DEBUG if verbose else logging.INFO,
            log_json=log_json,
        )
    except LoadScriptError as exc:
        console.print(f"[red]Error:[/red] {exc}")
        raise typer.Exit(code=1) from exc

    console.print(
        Panel(
            f"[bold]Scenario:[/bold] {test_runner.scenario.name} ({scenario_file.name})\n"
            f"[bold]VUs:[/bold]      {test_runner.vus}\n"
            f"[bold]Stop:[/bold]     {test_runner.stop_condition.describe()}\n"
            f"[bold]Workers:[/bold]  {test_runner.num_workers}",
            title="loadscript",
            border_style="cyan",
        )
    )

    try:
        with live:
            report = test_runner.run()
    except LoadScriptError as exc:
        console.print(f"[red]Run failed:[/red] {exc}")
        raise typer.Exit(code=1) from exc

    render_summary(report, console)

    if output is not None:
        for path in save_report(report, output, fmt):
            console.print(f"[green]Saved:[/green] {path}")

    if not report.thresholds_passed:
        failed = ", ".join(t.name for t in report.thresholds if not t.passed)
        console.print(f"[red]FAIL:[/red] thresholds crossed: {failed}")
        raise typer.Exit(code=1)

    console.print("[green]Run completed.[/green]")
