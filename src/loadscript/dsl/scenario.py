"""Scenario definition and static validation."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING
from urllib.parse import urlsplit

from loadscript._internal.errors import ScenarioError
from loadscript.dsl.steps import GroupStep, HttpMethod, RequestStep, SleepStep

_FORBIDDEN_CHARS = frozenset("\r\n\x00")

if TYPE_CHECKING:
    from collections.abc import Iterator, Mapping

    from loadscript._internal.types import Headers, PauseRange
    from loadscript.dsl.steps import Step


@dataclass(frozen=True)
class ScenarioOptions:
    """Run options a scenario file may suggest.

    Command-line flags take precedence over these values.

    Attributes:
        vus: Number of concurrent virtual users.
        duration: Run duration in seconds.
        iterations: Iterations per virtual user.
    """

    vus: int | None = None
    duration: float | None = None
    iterations: int | None = None


@dataclass(frozen=True)
class ScenarioDefinition:
    """Complete, immutable definition of a scenario.

    Attributes:
        name: Human-readable scenario name.
        steps: Ordered steps making up one iteration.
        base_url: Base URL that relative request URLs are resolved against.
        default_headers: Headers applied to every request.
        iteration_pause: Random pause range (min, max) in seconds between
            two iterations of the same virtual user.
        options: Suggested run options.
    """

    name: str
    steps: tuple[Step, ...]
    base_url: str = ""
    default_headers: Headers = field(default_factory=dict)
    iteration_pause: PauseRange = (0.0, 0.0)
    options: ScenarioOptions = field(default_factory=ScenarioOptions)

    def iter_request_steps(self) -> Iterator[tuple[str, RequestStep]]:
        """Yield ``(group_path, step)`` for every request step, depth-first."""
        yield from _walk_requests(self.steps, "")

    @property
    def request_count(self) -> int:
        """Return the number of requests one iteration issues."""
        return sum(1 for _ in self.iter_request_steps())


def group_path(parent: str, name: str) -> str:
    """Join a group name onto its parent path using ``::`` separators."""
    return f"{parent}::{name}"


def _walk_requests(steps: tuple[Step, ...], path: str) -> Iterator[tuple[str, RequestStep]]:
    for step in steps:
        if isinstance(step, RequestStep):
            yield path, step
        elif isinstance(step, GroupStep):
            yield from _walk_requests(step.steps, group_path(path, step.name))


def validate_scenario(definition: ScenarioDefinition) -> ScenarioDefinition:
    """Check a scenario for structural errors before any traffic is sent.

    Args:
        definition: The scenario to validate.

    Returns:
        The same definition, for chaining.

    Raises:
        ScenarioError: On the first problem found.
    """
    if not definition.name or not definition.name.strip():
        msg = "Scenario name must be a non-empty string"
        raise ScenarioError(msg)

    if definition.base_url:
        _require_absolute(definition.base_url, f"Scenario {definition.name!r} base_url")

    _validate_fields(definition.default_headers, f"Scenario {definition.name!r} default header")

    low, high = definition.iteration_pause
    if low < 0 or high < low:
        msg = f"iteration_pause must satisfy 0 <= min <= max, got {definition.iteration_pause}"
        raise ScenarioError(msg)

    options = definition.options
    if options.vus is not None and options.vus < 1:
        msg = f"options.vus must be >= 1, got {options.vus}"
        raise ScenarioError(msg)
    if options.duration is not None and options.duration <= 0:
        msg = f"options.duration must be positive, got {options.duration}"
        raise ScenarioError(msg)
    if options.iterations is not None and options.iterations < 1:
        msg = f"options.iterations must be >= 1, got {options.iterations}"
        raise ScenarioError(msg)

    if not definition.steps:
        msg = f"Scenario {definition.name!r} has no steps"
        raise ScenarioError(msg)

    _validate_steps(definition.steps, where=definition.name)
    return definition


def _validate_steps(steps: tuple[Step, ...], where: str) -> None:
    for index, step in enumerate(steps):
        location = f"{where} step {index + 1}"
        if isinstance(step, RequestStep):
            _validate_request_step(step, location)
        elif isinstance(step, GroupStep):
            if not step.name or not step.name.strip():
                msg = f"{location}: group name must be a non-empty string"
                raise ScenarioError(msg)
            if not step.steps:
                msg = f"{location}: group {step.name!r} has no steps"
                raise ScenarioError(msg)
            _validate_steps(step.steps, where=f"{location} ({step.name})")
        elif isinstance(step, SleepStep):
            if step.min_seconds < 0 or step.max_seconds < step.min_seconds:
                msg = (
                    f"{location}: sleep must satisfy 0 <= min <= max, "
                    f"got ({step.min_seconds}, {step.max_seconds})"
                )
                raise ScenarioError(msg)
        else:
            msg = f"{location}: unsupported step type {type(step).__name__}"
            raise ScenarioError(msg)


def _validate_request_step(step: RequestStep, location: str) -> None:
    request = step.request
    if not isinstance(request.method, HttpMethod):
        msg = f"{location}: method must be an HttpMethod, got {request.method!r}"
        raise ScenarioError(msg)

    if not request.url:
        msg = f"{location}: request URL must not be empty"
        raise ScenarioError(msg)

    if urlsplit(request.url).scheme:
        _require_absolute(request.url, f"{location}: URL")

    if request.timeout is not None and request.timeout <= 0:
        msg = f"{location}: timeout must be positive, got {request.timeout}"
        raise ScenarioError(msg)

    _validate_fields(request.headers, f"{location}: header")
    _validate_fields(request.cookies, f"{location}: cookie")

    seen: set[str] = set()
    for check in step.checks:
        if not check.name:
            msg = f"{location}: check names must be non-empty"
            raise ScenarioError(msg)
        if check.name in seen:
            msg = f"{location}: duplicate check name {check.name!r}"
            raise ScenarioError(msg)
        seen.add(check.name)
        if not callable(check.predicate):
            msg = f"{location}: check {check.name!r} predicate is not callable"
            raise ScenarioError(msg)


def _validate_fields(fields: Mapping[str, str], what: str) -> None:
    """Reject header or cookie entries aiohttp would refuse to send."""
    for key, value in fields.items():
        if not isinstance(key, str) or not key:
            msg = f"{what} names must be non-empty strings, got {key!r}"
            raise ScenarioError(msg)
        if not isinstance(value, str):
            msg = f"{what} {key!r} must be a string, got {type(value).__name__}"
            raise ScenarioError(msg)
        if _FORBIDDEN_CHARS.intersection(key + value):
            msg = f"{what} {key!r} must not contain CR, LF or NUL characters"
            raise ScenarioError(msg)


def _require_absolute(url: str, what: str) -> None:
    parts = urlsplit(url)
    if parts.scheme not in ("http", "https") or not parts.netloc:
        msg = f"{what} must be an absolute http(s) URL, got {url!r}"
        raise ScenarioError(msg)


def resolve_base_url(definition: ScenarioDefinition, fallback: str = "") -> str:
    """Return the base URL requests of ``definition`` resolve against.

    The scenario's own ``base_url`` wins over ``fallback`` (usually
    ``LOADSCRIPT_BASE_URL``).

    Raises:
        ScenarioError: If a request URL is relative and neither base URL
            is set, or ``fallback`` is not an absolute http(s) URL.
    """
    base_url = definition.base_url or fallback.rstrip("/")
    if base_url and not definition.base_url:
        _require_absolute(base_url, "LOADSCRIPT_BASE_URL")
    if not base_url:
        for _path, step in definition.iter_request_steps():
            if not urlsplit(step.request.url).scheme:
                msg = (
                    f"Relative URL {step.request.url!r} in scenario {definition.name!r} "
                    f"needs a base_url (set it in the scenario or via LOADSCRIPT_BASE_URL)"
                )
                raise ScenarioError(msg)
    return base_url
