"""Exception hierarchy for loadscript."""

from __future__ import annotations


class LoadScriptError(Exception):
    """Base exception for all loadscript errors.

    Catching ``LoadScriptError`` catches every error the engine raises on
    purpose; anything else escaping the engine is a bug.
    """


class ConfigError(LoadScriptError):
    """Raised when configuration is invalid or missing.

    Always raised at startup, before any request is sent.

    Examples:
        - An environment variable has an invalid value.
        - A CLI option is out of its acceptable range.
    """


class ScenarioError(ConfigError):
    """Raised when a scenario definition is malformed.

    Examples:
        - A request step has an unsupported HTTP method or an empty URL.
        - A check is not callable, or a group has no steps.
        - A scenario file cannot be loaded or parsed.
    """


class NetworkError(LoadScriptError):
    """Raised by the HTTP executor when a request fails at transport level.

    Connection refused, timeouts and DNS failures raise this. An HTTP
    error status (4xx/5xx) is a normal response, not a ``NetworkError``.

    Attributes:
        method: HTTP method of the failed request.
        url: Full URL of the failed request.
    """

    def __init__(self, message: str, *, method: str = "", url: str = "") -> None:
        super().__init__(message)
        self.method = method
        self.url = url


class CheckFailure(LoadScriptError):
    """A check predicate did not hold.

    The engine never lets this escape: the check evaluator records it as
    a failed check and moves on. Predicates may raise it to attach a
    descriptive message to the failure.
    """


class EngineError(LoadScriptError):
    """Raised when a test run fails for reasons outside the scenario."""
