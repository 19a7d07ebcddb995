"""Ready-made check predicates and their declarative (JSON) form."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from loadscript._internal.errors import CheckFailure, ScenarioError

if TYPE_CHECKING:
    from collections.abc import Iterable, Mapping

    from loadscript.dsl.steps import Predicate
    from loadscript.engine.executor import Response

_MISSING = object()


def _named(predicate: Predicate, label: str) -> Predicate:
    predicate.__name__ = label
    predicate.__qualname__ = label
    return predicate


def status_equals(expected: int) -> Predicate:
    """Pass when the response status is exactly ``expected``."""

    def _check(response: Response) -> bool:
        return response.status == expected

    return _named(_check, f"status_equals({expected})")


def status_in(expected: Iterable[int]) -> Predicate:
    """Pass when the response status is one of ``expected``."""
    allowed = frozenset(expected)

    def _check(response: Response) -> bool:
        return response.status in allowed

    return _named(_check, f"status_in({sorted(allowed)})")


def body_contains(fragment: str) -> Predicate:
    """Pass when the decoded response body contains ``fragment``."""

    def _check(response: Response) -> bool:
        return fragment in response.text()

    return _named(_check, f"body_contains({fragment!r})")


def header_equals(name: str, value: str) -> Predicate:
    """Pass when response header ``name`` (case-insensitive) equals ``value``."""

    def _check(response: Response) -> bool:
        return response.headers.get(name) == value

    return _named(_check, f"header_equals({name!r}, {value!r})")


def duration_below(max_ms: float) -> Predicate:
    """Pass when the request completed in under ``max_ms`` milliseconds."""

    def _check(response: Response) -> bool:
        return response.elapsed_ms < max_ms

    return _named(_check, f"duration_below({max_ms})")


def _lookup(document: Any, path: str) -> Any:
    """Follow a dotted path (``"items.0.id"``) through dicts and lists."""
    current = document
    for part in path.split("."):
        if isinstance(current, dict):
            current = current.get(part, _MISSING)
        elif isinstance(current, list) and part.lstrip("-").isdigit():
            index = int(part)
            current = current[index] if -len(current) <= index < len(current) else _MISSING
        else:
            current = _MISSING
        if current is _MISSING:
            msg = f"JSON path {path!r} not found in response body"
            raise CheckFailure(msg)
    return current


def json_field_equals(path: str, expected: Any) -> Predicate:
    """Pass when the JSON body value at dotted ``path`` equals ``expected``.

    Raises ``CheckFailure`` (recorded as a failed check) when the body is
    not JSON or the path does not exist.
    """

    def _check(response: Response) -> bool:
        try:
            document = response.json()
        except ValueError as exc:
            msg = f"response body is not JSON: {exc}"
            raise CheckFailure(msg) from exc
        return bool(_lookup(document, path) == expected)

    return _named(_check, f"json_field_equals({path!r}, {expected!r})")


def check_from_spec(spec: Mapping[str, Any]) -> Predicate:
    """Build a predicate from its declarative form.

    Supported forms (exactly one key each)::

        {"status": 200}
        {"status_in": [200, 201]}
        {"body_contains": "pizza"}
        {"header": {"name": "Content-Type", "value": "application/json"}}
        {"json": {"path": "pizza.name", "equals": "Margherita"}}
        {"max_duration_ms": 500}

    Args:
        spec: Mapping with a single predicate key.

    Returns:
        The matching predicate.

    Raises:
        ScenarioError: If the form is unknown or its argument is malformed.
    """
    if not isinstance(spec, dict) or len(spec) != 1:
        msg = f"A check must be an object with exactly one key, got: {spec!r}"
        raise ScenarioError(msg)

    ((kind, arg),) = spec.items()

    if kind == "status":
        if not isinstance(arg, int):
            msg = f"'status' check expects an integer, got: {arg!r}"
            raise ScenarioError(msg)
        return status_equals(arg)

    if kind == "status_in":
        if not isinstance(arg, list) or not all(isinstance(code, int) for code in arg):
            msg = f"'status_in' check expects a list of integers, got: {arg!r}"
            raise ScenarioError(msg)
        return status_in(arg)

    if kind == "body_contains":
        if not isinstance(arg, str):
            msg = f"'body_contains' check expects a string, got: {arg!r}"
            raise ScenarioError(msg)
        return body_contains(arg)

    if kind == "header":
        if not isinstance(arg, dict) or set(arg) != {"name", "value"}:
            msg = f"'header' check expects {{'name': ..., 'value': ...}}, got: {arg!r}"
            raise ScenarioError(msg)
        return header_equals(str(arg["name"]), str(arg["value"]))

    if kind == "json":
        if not isinstance(arg, dict) or set(arg) != {"path", "equals"}:
            msg = f"'json' check expects {{'path': ..., 'equals': ...}}, got: {arg!r}"
            raise ScenarioError(msg)
        return json_field_equals(str(arg["path"]), arg["equals"])

    if kind == "max_duration_ms":
        if not isinstance(arg, (int, float)) or arg <= 0:
            msg = f"'max_duration_ms' check expects a positive number, got: {arg!r}"
            raise ScenarioError(msg)
        return duration_below(float(arg))

    msg = (
        f"Unknown check type {kind!r}. Choose from: status, status_in, "
        f"body_contains, header, json, max_duration_ms"
    )
    raise ScenarioError(msg)
