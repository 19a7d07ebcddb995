"""Pass/fail thresholds evaluated after a run."""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

from loadscript._internal.errors import ConfigError

if TYPE_CHECKING:
    from loadscript.metrics.models import RunReport


@dataclass(frozen=True)
class Thresholds:
    """Upper bounds a finished run must stay within.

    ``None`` disables a threshold. Thresholds never stop a run; they only
    decide its exit status.

    Attributes:
        max_check_failure_rate: Largest acceptable fraction of failed checks.
        max_error_rate: Largest acceptable fraction of failed requests.
        max_p95_ms: Largest acceptable overall p95 latency in milliseconds.
    """

    max_check_failure_rate: float | None = None
    max_error_rate: float | None = None
    max_p95_ms: float | None = None

    def __post_init__(self) -> None:
        for name in ("max_check_failure_rate", "max_error_rate"):
            value = getattr(self, name)
            if value is not None and not 0.0 <= value <= 1.0:
                msg = f"{name} must be between 0 and 1, got {value}"
                raise ConfigError(msg)
        if self.max_p95_ms is not None and self.max_p95_ms <= 0:
            msg = f"max_p95_ms must be positive, got {self.max_p95_ms}"
            raise ConfigError(msg)

    @property
    def is_empty(self) -> bool:
        """Return True when no threshold is set."""
        return self.max_check_failure_rate is None and self.max_error_rate is None and self.max_p95_ms is None


@dataclass(frozen=True)
class ThresholdResult:
    """Outcome of one threshold.

    Attributes:
        name: Threshold name.
        limit: Configured bound.
        actual: Value observed in the run.
        passed: Whether ``actual <= limit``.
    """

    name: str
    limit: float
    actual: float
    passed: bool


def evaluate_thresholds(report: RunReport, thresholds: Thresholds) -> list[ThresholdResult]:
    """Compare a finished run against ``thresholds``.

    Args:
        report: The finished run.
        thresholds: Bounds to check.

    Returns:
        One result per configured threshold, in a fixed order.
    """
    summary = report.final_summary
    observed: list[tuple[str, float | None, float]] = [
        ("check_failure_rate", thresholds.max_check_failure_rate, report.check_failure_rate),
        ("error_rate", thresholds.max_error_rate, summary.error_rate if summary else 0.0),
        ("p95_ms", thresholds.max_p95_ms, summary.latency_p95 if summary else 0.0),
    ]
    return [
        ThresholdResult(name=name, limit=limit, actual=actual, passed=actual <= limit)
        for name, limit, actual in observed
        if limit is not None
    ]
