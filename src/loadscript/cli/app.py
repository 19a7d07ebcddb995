"""Main Typer application, the entry point for the ``loadscript`` CLI."""

from __future__ import annotations

import typer

from loadscript import __version__
from loadscript.cli.init_cmd import init_cmd
from loadscript.cli.report import report_cmd
from loadscript.cli.run import run_cmd
from loadscript.cli.validate import validate_cmd

app = typer.Typer(
    name="loadscript",
    help="Run scripted HTTP scenarios across concurrent virtual users.",
    no_args_is_help=True,
    rich_markup_mode="rich",
)

app.command("run", help="Run a scenario.")(run_cmd)
app.command("validate", help="Validate a scenario file without sending traffic.")(validate_cmd)
app.command("init", help="Scaffold a new scenario file.")(init_cmd)
app.command("report", help="Print a saved run summary.")(report_cmd)


def _version_callback(value: bool) -> None:
    """Print version and exit.

    Args:
        value: True if --version was passed.
    """
    if value:
        typer.echo(f"loadscript {__version__}")
        raise typer.Exit


@app.callback()
def main(
    version: bool = typer.Option(
        False,
        "--version",
        "-V",
        help="Show version and exit.",
        callback=_version_callback,
        is_eager=True,
    ),
) -> None:
    """loadscript: run scripted HTTP scenarios across concurrent virtual users."""
