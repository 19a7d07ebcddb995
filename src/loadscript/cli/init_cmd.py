"""``loadscript init``: scaffold a new scenario file from a template."""

from __future__ import annotations

import json
from pathlib import Path
from string import Template

import typer
from rich.console import Console

console = Console(stderr=True)

_SCENARIO_TEMPLATE = Template('''\
"""Scenario: $name.

Run with:
    loadscript run $filename --vus 10 --duration 30
"""

from __future__ import annotations

from loadscript import group, request, scenario, sleep, status_equals

$variable = scenario(
    name="$name",
    base_url="http://localhost:8080",
    steps=[
        group("Default group", [
            request("GET", "/", name="Root", checks={
                "status equals 200": status_equals(200),
            }),
        ]),
        sleep(1),
    ],
)
''')


def _json_template(name: str) -> str:
    document = {
        "name": name,
        "base_url": "http://localhost:8080",
        "steps": [
            {
                "group": "Default group",
                "steps": [
                    {
                        "request": {"method": "GET", "url": "/", "name": "Root"},
                        "checks": {"status equals 200": {"status": 200}},
                    }
                ],
            },
            {"sleep": 1},
        ],
    }
    return json.dumps(document, indent=2) + "\n"


def init_cmd(
    name: str = typer.Argument(
        "my_scenario",
        help="Name for the scenario (used as filename).",
    ),
    as_json: bool = typer.Option(
        False,
        "--json",
        help="Write a JSON scenario instead of a Python one.",
    ),
) -> None:
    """Scaffold a new scenario file in the current directory."""
    # Sanitise the name for use as a Python identifier
    safe_name = "".join(c if c.isalnum() or c == "_" else "_" for c in name).lower()
    if not safe_name or safe_name[0].isdigit():
        safe_name = "scenario_" + safe_name

    filename = f"{safe_name}.json" if as_json else f"{safe_name}.py"
    display_name = name.replace("_", " ").replace("-", " ").title()

    target = Path.cwd() / filename
    if target.exists():
        console.print(f"[red]File already exists:[/red] {filename}")
        raise typer.Exit(code=1)

    if as_json:
        content = _json_template(display_name)
    else:
        content = _SCENARIO_TEMPLATE.substitute(name=display_name, filename=filename, variable=safe_name)
    target.write_text(content, encoding="utf-8")
    console.print(f"[green]Created scenario:[/green] {filename}")
