"""Scenario file loading: Python modules via importlib, or JSON documents."""

from __future__ import annotations

import importlib.util
import json
import sys
from pathlib import Path
from typing import TYPE_CHECKING, Any

from loadscript._internal.errors import ScenarioError
from loadscript.dsl.builders import group, request, scenario, sleep
from loadscript.dsl.checks import check_from_spec
from loadscript.dsl.scenario import ScenarioDefinition, validate_scenario

if TYPE_CHECKING:
    from loadscript.dsl.steps import Step

_SUPPORTED_SUFFIXES = (".py", ".json")


def load_scenario(file_path: str | Path, name: str | None = None) -> ScenarioDefinition:
    """Load and validate a scenario from a ``.py`` or ``.json`` file.

    Python files are imported and their module globals scanned for
    ``ScenarioDefinition`` instances. JSON files are parsed with
    :func:`scenario_from_dict`.

    Args:
        file_path: Path to the scenario file.
        name: Scenario to pick when a Python file defines several.
            Defaults to the first one found.

    Returns:
        The validated ScenarioDefinition.

    Raises:
        ScenarioError: If the file does not exist, cannot be parsed, or
            contains no (or no matching) scenario.
    """
    path = Path(file_path)

    if not path.exists():
        msg = f"Scenario file not found: {path}"
        raise ScenarioError(msg)

    if path.suffix not in _SUPPORTED_SUFFIXES:
        msg = f"Scenario file must be a .py or .json file, got: {path}"
        raise ScenarioError(msg)

    if path.suffix == ".json":
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as exc:
            msg = f"Invalid JSON in scenario file {path}: {exc}"
            raise ScenarioError(msg) from exc
        definition = scenario_from_dict(data)
        if name is not None and definition.name != name:
            msg = f"Scenario {name!r} not found in {path} (found {definition.name!r})"
            raise ScenarioError(msg)
        return definition

    return validate_scenario(_load_python_scenario(path, name))


def _load_python_scenario(path: Path, name: str | None) -> ScenarioDefinition:
    module_name = f"loadscript_scenario_{path.stem}"

    spec = importlib.util.spec_from_file_location(module_name, path)
    if spec is None or spec.loader is None:
        msg = f"Could not create module spec for: {path}"
        raise ScenarioError(msg)

    module = importlib.util.module_from_spec(spec)
    sys.modules[module_name] = module

    try:
        spec.loader.exec_module(module)
    except ScenarioError:
        sys.modules.pop(module_name, None)
        raise
    except Exception as exc:
        sys.modules.pop(module_name, None)
        msg = f"Failed to import scenario file {path}: {exc}"
        raise ScenarioError(msg) from exc

    definitions = [obj for obj in vars(module).values() if isinstance(obj, ScenarioDefinition)]

    if not definitions:
        sys.modules.pop(module_name, None)
        msg = (
            f"No scenario found in {path}. "
            f"Assign the result of loadscript.scenario(...) to a module-level name."
        )
        raise ScenarioError(msg)

    if name is None:
        return definitions[0]

    for definition in definitions:
        if definition.name == name:
            return definition

    found = ", ".join(repr(d.name) for d in definitions)
    msg = f"Scenario {name!r} not found in {path}. Available: {found}"
    raise ScenarioError(msg)


# =============================================================================
# JSON scenarios
# =============================================================================


def scenario_from_dict(data: Any) -> ScenarioDefinition:
    """Build a validated scenario from its JSON document form.

    Layout::

        {
          "name": "QuickPizza",
          "base_url": "https://quickpizza.grafana.com",
          "headers": {"Accept": "application/json"},
          "iteration_pause": [0, 0],
          "options": {"vus": 1, "duration": 30, "iterations": null},
          "steps": [
            {"group": "Default group", "steps": [
              {"request": {"method": "GET", "url": "/"},
               "checks": {"status equals 200": {"status": 200}}}
            ]},
            {"sleep": 1}
          ]
        }

    Args:
        data: Decoded JSON document.

    Returns:
        The validated ScenarioDefinition.

    Raises:
        ScenarioError: If the document is malformed.
    """
    if not isinstance(data, dict):
        msg = "Scenario document must be a JSON object"
        raise ScenarioError(msg)

    unknown = set(data) - {"name", "base_url", "headers", "iteration_pause", "options", "steps"}
    if unknown:
        msg = f"Unknown scenario keys: {sorted(unknown)}"
        raise ScenarioError(msg)

    if not isinstance(data.get("steps"), list):
        msg = "Scenario document needs a 'steps' list"
        raise ScenarioError(msg)

    options = data.get("options") or {}
    if not isinstance(options, dict) or set(options) - {"vus", "duration", "iterations"}:
        msg = f"'options' accepts only vus, duration and iterations, got: {options!r}"
        raise ScenarioError(msg)

    return scenario(
        name=_expect(data.get("name"), str, "name"),
        steps=[_step_from_dict(item, f"steps[{i}]") for i, item in enumerate(data["steps"])],
        base_url=_expect(data.get("base_url", ""), str, "base_url"),
        default_headers=_expect(data.get("headers", {}), dict, "headers"),
        iteration_pause=_pause_range(data.get("iteration_pause", 0), "iteration_pause"),
        vus=_optional(options.get("vus"), int, "options.vus"),
        duration=_optional(options.get("duration"), (int, float), "options.duration"),
        iterations=_optional(options.get("iterations"), int, "options.iterations"),
    )


def _step_from_dict(item: Any, where: str) -> Step:
    if not isinstance(item, dict):
        msg = f"{where}: each step must be an object"
        raise ScenarioError(msg)

    if "group" in item:
        steps = item.get("steps")
        if not isinstance(steps, list):
            msg = f"{where}: group needs a 'steps' list"
            raise ScenarioError(msg)
        return group(
            _expect(item["group"], str, f"{where}.group"),
            [_step_from_dict(sub, f"{where}.steps[{i}]") for i, sub in enumerate(steps)],
        )

    if "sleep" in item:
        low, high = _pause_range(item["sleep"], f"{where}.sleep")
        return sleep(low, high)

    if "request" in item:
        spec = _expect(item["request"], dict, f"{where}.request")
        checks = _expect(item.get("checks", {}), dict, f"{where}.checks")
        body = spec.get("body")
        if body is not None and not isinstance(body, str):
            msg = f"{where}.request.body: expected a string, use 'json' for structured bodies"
            raise ScenarioError(msg)
        timeout = spec.get("timeout")
        if timeout is not None and not isinstance(timeout, (int, float)):
            msg = f"{where}.request.timeout: expected a number, got {timeout!r}"
            raise ScenarioError(msg)
        name = spec.get("name")
        if name is not None and not isinstance(name, str):
            msg = f"{where}.request.name: expected a string, got {name!r}"
            raise ScenarioError(msg)
        return request(
            _expect(spec.get("method", "GET"), str, f"{where}.request.method"),
            _expect(spec.get("url"), str, f"{where}.request.url"),
            body=body,
            json=spec.get("json"),
            headers=_expect(spec.get("headers", {}), dict, f"{where}.request.headers"),
            cookies=_expect(spec.get("cookies", {}), dict, f"{where}.request.cookies"),
            checks={check_name: check_from_spec(check) for check_name, check in checks.items()},
            name=name,
            timeout=timeout,
        )

    msg = f"{where}: step must have one of 'request', 'group' or 'sleep'"
    raise ScenarioError(msg)


def _expect(value: Any, kind: type, where: str) -> Any:
    if not isinstance(value, kind):
        msg = f"{where}: expected {kind.__name__}, got {value!r}"
        raise ScenarioError(msg)
    return value


def _optional(value: Any, kind: type | tuple[type, ...], where: str) -> Any:
    if value is not None and (isinstance(value, bool) or not isinstance(value, kind)):
        msg = f"{where}: expected a number, got {value!r}"
        raise ScenarioError(msg)
    return value


def _pause_range(value: Any, where: str) -> tuple[float, float]:
    if isinstance(value, (int, float)):
        return float(value), float(value)
    if (
        isinstance(value, list)
        and len(value) == 2
        and all(isinstance(v, (int, float)) for v in value)
    ):
        return float(value[0]), float(value[1])
    msg = f"{where}: expected a number or [min, max], got {value!r}"
    raise ScenarioError(msg)
