"""Builder functions for writing scenarios as Python code.

Example::

    from loadscript import group, request, scenario, sleep, status_equals

    quickpizza = scenario(
        name="QuickPizza",
        steps=[
            group("Default group", [
                request("GET", "https://quickpizza.grafana.com/",
                        checks={"status equals 200": status_equals(200)}),
            ]),
            sleep(1),
        ],
    )
"""

from __future__ import annotations

import json as jsonlib
from typing import TYPE_CHECKING, Any

from loadscript._internal.errors import ScenarioError
from loadscript.dsl.scenario import ScenarioDefinition, ScenarioOptions, validate_scenario
from loadscript.dsl.steps import Check, GroupStep, HttpMethod, Request, RequestStep, SleepStep

if TYPE_CHECKING:
    from collections.abc import Iterable, Mapping

    from loadscript.dsl.steps import Predicate, Step


def _parse_method(method: str | HttpMethod) -> HttpMethod:
    try:
        return HttpMethod(str(method).upper())
    except ValueError:
        allowed = ", ".join(m.value for m in HttpMethod)
        msg = f"Unsupported HTTP method {method!r}. Choose from: {allowed}"
        raise ScenarioError(msg) from None


def _has_header(headers: Mapping[str, str], name: str) -> bool:
    lowered = name.lower()
    return any(isinstance(key, str) and key.lower() == lowered for key in headers)


def request(
    method: str | HttpMethod,
    url: str,
    *,
    body: bytes | str | None = None,
    json: Any = None,
    headers: Mapping[str, str] | None = None,
    cookies: Mapping[str, str] | None = None,
    checks: Mapping[str, Predicate] | None = None,
    name: str | None = None,
    timeout: float | None = None,
) -> RequestStep:
    """Declare an HTTP request step.

    Args:
        method: HTTP method, case-insensitive.
        url: Absolute URL or a path relative to the scenario base URL.
        body: Raw body; ``str`` is UTF-8 encoded.
        json: JSON-serializable body. Sets ``Content-Type`` unless given.
            Mutually exclusive with ``body``.
        headers: Request headers.
        cookies: Cookies for this request.
        checks: Mapping of check name to predicate, evaluated in order.
        name: Logical name for metric grouping. Defaults to the URL.
        timeout: Per-request timeout in seconds.

    Returns:
        The request step.

    Raises:
        ScenarioError: On an unknown method, both ``body`` and ``json``
            given, or a non-serializable ``json`` value.
    """
    if body is not None and json is not None:
        msg = "Pass either body or json to request(), not both"
        raise ScenarioError(msg)

    request_headers = dict(headers or {})
    payload: bytes | None
    if json is not None:
        try:
            payload = jsonlib.dumps(json).encode("utf-8")
        except (TypeError, ValueError) as exc:
            msg = f"Request json body is not serializable: {exc}"
            raise ScenarioError(msg) from exc
        if not _has_header(request_headers, "Content-Type"):
            request_headers["Content-Type"] = "application/json"
    elif isinstance(body, str):
        payload = body.encode("utf-8")
    else:
        payload = body

    return RequestStep(
        request=Request(
            method=_parse_method(method),
            url=url,
            body=payload,
            headers=request_headers,
            cookies=dict(cookies or {}),
            name=name,
            timeout=timeout,
        ),
        checks=tuple(Check(name=check_name, predicate=fn) for check_name, fn in (checks or {}).items()),
    )


def group(name: str, steps: Iterable[Step]) -> GroupStep:
    """Declare a named group of steps."""
    return GroupStep(name=name, steps=tuple(steps))


def sleep(seconds: float, max_seconds: float | None = None) -> SleepStep:
    """Declare a pause.

    ``sleep(1)`` pauses one second; ``sleep(0.5, 1.5)`` pauses a uniform
    random time between the two bounds.
    """
    return SleepStep(
        min_seconds=float(seconds),
        max_seconds=float(seconds if max_seconds is None else max_seconds),
    )


def scenario(
    *,
    name: str,
    steps: Iterable[Step],
    base_url: str = "",
    default_headers: Mapping[str, str] | None = None,
    iteration_pause: tuple[float, float] = (0.0, 0.0),
    vus: int | None = None,
    duration: float | None = None,
    iterations: int | None = None,
) -> ScenarioDefinition:
    """Build and validate a scenario.

    Args:
        name: Human-readable scenario name.
        steps: Ordered steps of one iteration.
        base_url: Base URL for relative request URLs.
        default_headers: Headers applied to every request.
        iteration_pause: Random pause range between iterations.
        vus: Suggested virtual-user count.
        duration: Suggested run duration in seconds.
        iterations: Suggested iterations per virtual user.

    Returns:
        The validated ScenarioDefinition.

    Raises:
        ScenarioError: If the scenario is malformed.
    """
    definition = ScenarioDefinition(
        name=name,
        steps=tuple(steps),
        base_url=base_url.rstrip("/"),
        default_headers=dict(default_headers or {}),
        iteration_pause=(float(iteration_pause[0]), float(iteration_pause[1])),
        options=ScenarioOptions(vus=vus, duration=duration, iterations=iterations),
    )
    return validate_scenario(definition)
