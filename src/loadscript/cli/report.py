"""``loadscript report``: re-render a saved run summary."""

from __future__ import annotations

from pathlib import Path

import typer
from rich.console import Console

from loadscript._internal.errors import LoadScriptError
from loadscript.report.summary import REPORT_FORMATS, load_report, render_summary, save_report

console = Console(stderr=True)


def report_cmd(
    results_file: Path = typer.Argument(
        ...,
        help="A summary.json saved by 'loadscript run --output', or its directory.",
        exists=True,
        readable=True,
    ),
    output: Path | None = typer.Option(
        None,
        "--output",
        "-o",
        help="Directory to re-export the summary into.",
    ),
    fmt: str = typer.Option(
        "csv",
        "--format",
        "-f",
        help="Export format when --output is given: json or csv.",
    ),
) -> None:
    """Print a saved run summary, optionally exporting it in another format."""
    if fmt not in REPORT_FORMATS:
        msg = f"Unknown format {fmt!r}. Choose from: {', '.join(REPORT_FORMATS)}"
        raise typer.BadParameter(msg)

    try:
        report = load_report(results_file)
    except LoadScriptError as exc:
        console.print(f"[red]Error:[/red] {exc}")
        raise typer.Exit(code=1) from exc

    render_summary(report, console)

    if output is not None:
        for path in save_report(report, output, fmt):
            console.print(f"[green]Saved:[/green] {path}")
