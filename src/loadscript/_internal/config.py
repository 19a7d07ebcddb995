"""Configuration loading for loadscript."""

from __future__ import annotations

import os
from dataclasses import dataclass

from loadscript._internal.errors import ConfigError

_DEFAULT_USER_AGENT = "loadscript/0.1.0"


@dataclass(frozen=True)
class LoadScriptConfig:
    """Global loadscript configuration.

    Attributes:
        default_base_url: Base URL used to resolve relative request URLs
            when the scenario does not set one.
        connection_pool_size: Maximum connections per virtual user session.
        request_timeout: Default request timeout in seconds.
        graceful_stop: Seconds in-flight iterations get to finish after
            the stop condition is reached.
        user_agent: Default ``User-Agent`` header.
    """

    default_base_url: str = ""
    connection_pool_size: int = 100
    request_timeout: float = 60.0
    graceful_stop: float = 30.0
    user_agent: str = _DEFAULT_USER_AGENT


def _read_int(name: str, default: str, minimum: int) -> int:
    raw = os.environ.get(name, default)
    try:
        value = int(raw)
    except ValueError:
        msg = f"{name} must be an integer, got: {raw!r}"
        raise ConfigError(msg) from None
    if value < minimum:
        msg = f"{name} must be >= {minimum}, got: {value}"
        raise ConfigError(msg)
    return value


def _read_float(name: str, default: str, *, allow_zero: bool) -> float:
    raw = os.environ.get(name, default)
    try:
        value = float(raw)
    except ValueError:
        msg = f"{name} must be a number, got: {raw!r}"
        raise ConfigError(msg) from None
    if value < 0 or (value == 0 and not allow_zero):
        qualifier = "non-negative" if allow_zero else "positive"
        msg = f"{name} must be {qualifier}, got: {value}"
        raise ConfigError(msg)
    return value


def load_config() -> LoadScriptConfig:
    """Load configuration from environment variables with defaults.

    Environment variables:
        LOADSCRIPT_BASE_URL: Default base URL.
        LOADSCRIPT_POOL_SIZE: Connection pool size (default: 100).
        LOADSCRIPT_TIMEOUT: Request timeout in seconds (default: 60.0).
        LOADSCRIPT_GRACEFUL_STOP: Drain window in seconds (default: 30.0).
        LOADSCRIPT_USER_AGENT: Default User-Agent header.

    Returns:
        Populated LoadScriptConfig instance.

    Raises:
        ConfigError: If an environment variable has an invalid value.
    """
    return LoadScriptConfig(
        default_base_url=os.environ.get("LOADSCRIPT_BASE_URL", ""),
        connection_pool_size=_read_int("LOADSCRIPT_POOL_SIZE", "100", minimum=1),
        request_timeout=_read_float("LOADSCRIPT_TIMEOUT", "60.0", allow_zero=False),
        graceful_stop=_read_float("LOADSCRIPT_GRACEFUL_STOP", "30.0", allow_zero=True),
        user_agent=os.environ.get("LOADSCRIPT_USER_AGENT", _DEFAULT_USER_AGENT),
    )
