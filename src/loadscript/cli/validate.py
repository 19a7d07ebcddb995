"""``loadscript validate``: load and check a scenario without sending traffic."""

from __future__ import annotations

from pathlib import Path
from typing import TYPE_CHECKING

import typer
from rich.console import Console
from rich.tree import Tree

from loadscript._internal.config import load_config
from loadscript._internal.errors import LoadScriptError
from loadscript.dsl.loader import load_scenario
from loadscript.dsl.scenario import resolve_base_url
from loadscript.dsl.steps import GroupStep, RequestStep, SleepStep

if TYPE_CHECKING:
    from loadscript.dsl.steps import Step

console = Console(stderr=True)


def _add_steps(tree: Tree, steps: tuple[Step, ...]) -> None:
    for step in steps:
        if isinstance(step, GroupStep):
            _add_steps(tree.add(f"[bold]group[/bold] {step.name}"), step.steps)
        elif isinstance(step, SleepStep):
            if step.is_fixed:
                tree.add(f"[dim]sleep {step.min_seconds:g}s[/dim]")
            else:
                tree.add(f"[dim]sleep {step.min_seconds:g}-{step.max_seconds:g}s[/dim]")
        elif isinstance(step, RequestStep):
            node = tree.add(f"[cyan]{step.request.method.value}[/cyan] {step.request.url}")
            for check in step.checks:
                node.add(f"check: {check.name}")


def validate_cmd(
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
        help="Scenario to validate when the file defines several.",
    ),
) -> None:
    """Load a scenario, validate it, and print its steps."""
    try:
        scenario = load_scenario(scenario_file, name)
        base_url = resolve_base_url(scenario, load_config().default_base_url)
    except LoadScriptError as exc:
        console.print(f"[red]Invalid scenario:[/red] {exc}")
        raise typer.Exit(code=1) from exc

    tree = Tree(f"[bold green]{scenario.name}[/bold green] {base_url}".rstrip())
    _add_steps(tree, scenario.steps)
    console.print(tree)
    console.print(f"[green]Scenario is valid:[/green] {scenario.request_count} request(s) per iteration")
