"""Check evaluation and thread-safe pass/fail accounting."""

from __future__ import annotations

import threading
from dataclasses import dataclass
from typing import TYPE_CHECKING

from loadscript._internal.logging import get_logger
from loadscript.metrics.models import CheckStats

if TYPE_CHECKING:
    from collections.abc import Iterable, Mapping

    from loadscript.dsl.steps import Check
    from loadscript.engine.executor import Response

logger = get_logger("engine.checks")


@dataclass(frozen=True)
class CheckResult:
    """Outcome of evaluating one check against one response.

    Attributes:
        name: Check name.
        passed: Whether the predicate held.
        group: Group path the check ran under.
        error: Message of the exception the predicate raised, if any.
    """

    name: str
    passed: bool
    group: str = ""
    error: str | None = None


class CheckTally:
    """Pass/fail counters keyed by check name.

    Shared by every virtual user of a run; all mutation happens under a
    lock so counts stay exact whichever thread or task records them.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._counts: dict[str, list[int]] = {}

    def record(self, name: str, *, passed: bool) -> None:
        """Count one evaluation of check ``name``."""
        with self._lock:
            counts = self._counts.setdefault(name, [0, 0])
            counts[0 if passed else 1] += 1

    def merge(self, counts: Mapping[str, tuple[int, int]]) -> None:
        """Add ``{name: (passes, fails)}`` counts, e.g. from a worker process."""
        with self._lock:
            for name, (passes, fails) in counts.items():
                current = self._counts.setdefault(name, [0, 0])
                current[0] += passes
                current[1] += fails

    def as_counts(self) -> dict[str, tuple[int, int]]:
        """Return a picklable ``{name: (passes, fails)}`` copy."""
        with self._lock:
            return {name: (c[0], c[1]) for name, c in self._counts.items()}

    def snapshot(self) -> dict[str, CheckStats]:
        """Return a point-in-time copy of the counters."""
        return {
            name: CheckStats(name=name, passes=passes, fails=fails)
            for name, (passes, fails) in self.as_counts().items()
        }

    @property
    def passes(self) -> int:
        """Return passes summed over all checks."""
        with self._lock:
            return sum(c[0] for c in self._counts.values())

    @property
    def fails(self) -> int:
        """Return fails summed over all checks."""
        with self._lock:
            return sum(c[1] for c in self._counts.values())


def evaluate_checks(
    response: Response,
    checks: Iterable[Check],
    tally: CheckTally | None = None,
    *,
    group: str = "",
) -> list[CheckResult]:
    """Evaluate every check against ``response``, in declaration order.

    Each check is independent: a falsy result or any exception raised by
    the predicate (``CheckFailure`` included) is a fail, and evaluation
    moves on to the next check. Nothing is raised to the caller.

    Args:
        response: The response to check.
        checks: Checks to evaluate.
        tally: Counters to record outcomes into, if given.
        group: Group path recorded on each result.

    Returns:
        One CheckResult per check.
    """
    results: list[CheckResult] = []
    for check in checks:
        error: str | None = None
        try:
            passed = bool(check.predicate(response))
        except Exception as exc:
            passed = False
            error = str(exc) or type(exc).__name__
            logger.debug("Check %r raised on %s %s: %s", check.name, response.method, response.url, error)

        if tally is not None:
            tally.record(check.name, passed=passed)
        results.append(CheckResult(name=check.name, passed=passed, group=group, error=error))
    return results
