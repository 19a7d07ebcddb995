"""loadscript: run scripted HTTP scenarios across concurrent virtual users."""

from __future__ import annotations

from loadscript.dsl.builders import group, request, scenario, sleep
from loadscript.dsl.checks import (
    body_contains,
    duration_below,
    header_equals,
    json_field_equals,
    status_equals,
    status_in,
)
from loadscript.dsl.scenario import ScenarioDefinition
from loadscript.engine.executor import Response

__version__ = "0.1.0"

__all__ = [
    "Response",
    "ScenarioDefinition",
    "body_contains",
    "duration_below",
    "group",
    "header_equals",
    "json_field_equals",
    "request",
    "scenario",
    "sleep",
    "status_equals",
    "status_in",
]
