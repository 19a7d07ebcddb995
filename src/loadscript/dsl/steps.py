"""Typed step descriptors that make up a scenario.

A scenario is an ordered tuple of steps, built once at startup and never
re-interpreted per iteration:

- ``RequestStep``: one HTTP request plus the checks run on its response.
- ``GroupStep``: a named, ordered sub-sequence of steps (reporting scope).
- ``SleepStep``: a fixed or random pause.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Union

if TYPE_CHECKING:
    from loadscript.engine.executor import Response


class HttpMethod(str, Enum):
    """HTTP methods accepted in request steps."""

    GET = "GET"
    POST = "POST"
    PUT = "PUT"
    PATCH = "PATCH"
    DELETE = "DELETE"
    HEAD = "HEAD"
    OPTIONS = "OPTIONS"


Predicate = Callable[["Response"], bool]


@dataclass(frozen=True)
class Request:
    """An HTTP request as declared in a scenario.

    Attributes:
        method: HTTP method.
        url: Absolute URL, or a path resolved against the scenario base URL.
        body: Raw request body, if any.
        headers: Request headers, merged over the scenario defaults.
        cookies: Cookies sent with this request only.
        name: Logical name for metric grouping. Defaults to the URL.
        timeout: Per-request timeout in seconds, overriding the default.
    """

    method: HttpMethod
    url: str
    body: bytes | None = None
    headers: dict[str, str] = field(default_factory=dict)
    cookies: dict[str, str] = field(default_factory=dict)
    name: str | None = None
    timeout: float | None = None

    @property
    def metric_name(self) -> str:
        """Return the name request metrics are grouped under."""
        return self.name or self.url


@dataclass(frozen=True)
class Check:
    """A named boolean assertion over a response."""

    name: str
    predicate: Predicate


@dataclass(frozen=True)
class RequestStep:
    """Issue ``request`` and evaluate ``checks`` against its response."""

    request: Request
    checks: tuple[Check, ...] = ()


@dataclass(frozen=True)
class GroupStep:
    """Run ``steps`` in order under the label ``name``."""

    name: str
    steps: tuple[Step, ...] = ()


@dataclass(frozen=True)
class SleepStep:
    """Pause for a uniform random duration in ``[min_seconds, max_seconds]``."""

    min_seconds: float
    max_seconds: float

    @property
    def is_fixed(self) -> bool:
        """Return True when the pause always lasts the same time."""
        return self.min_seconds == self.max_seconds


Step = Union[RequestStep, GroupStep, SleepStep]  # noqa: UP007
