"""Tests for splitting a run across workers and merging their results."""

from __future__ import annotations

import pytest

from loadscript.engine.coordinator import split_vus
from loadscript.engine.group import StepStats
from loadscript.engine.runner import merge_results
from loadscript.engine.scheduler import SchedulerResult
from loadscript.metrics.models import CheckStats


class TestSplitVus:
    def test_even_split(self):
        specs = split_vus(10, 2)
        assert [(s.worker_id, s.vus, s.user_id_offset) for s in specs] == [(0, 5, 0), (1, 5, 5)]

    def test_remainder_goes_to_first_workers(self):
        specs = split_vus(10, 3)
        assert [s.vus for s in specs] == [4, 3, 3]
        assert [s.user_id_offset for s in specs] == [0, 4, 7]

    def test_workers_never_outnumber_users(self):
        assert len(split_vus(2, 8)) == 2

    def test_rate_limit_is_split_by_share(self):
        specs = split_vus(4, 2, rate_limit=100.0)
        assert [s.rate_limit for s in specs] == [50.0, 50.0]
        specs = split_vus(3, 2, rate_limit=90.0)
        assert [s.rate_limit for s in specs] == pytest.approx([60.0, 30.0])

    def test_no_rate_limit(self):
        assert all(s.rate_limit is None for s in split_vus(4, 2))


class TestMergeResults:
    def test_sums_counters_and_checks(self):
        first = SchedulerResult(
            vus=2,
            duration_seconds=3.0,
            iterations=4,
            iterations_by_user={0: 2, 1: 2},
            steps=StepStats(steps_run=12, checks_passed=8, checks_failed=4),
            checks={"status equals 200": CheckStats("status equals 200", passes=8, fails=4)},
            iteration_duration_avg_ms=100.0,
            iteration_duration_min_ms=90.0,
            iteration_duration_max_ms=110.0,
        )
        second = SchedulerResult(
            vus=1,
            duration_seconds=3.5,
            iterations=2,
            interrupted_iterations=1,
            iterations_by_user={2: 2},
            steps=StepStats(steps_run=7, checks_passed=4, checks_failed=2, steps_skipped=2),
            checks={
                "status equals 200": CheckStats("status equals 200", passes=4, fails=2),
                "status equals 401": CheckStats("status equals 401", passes=2),
            },
            iteration_duration_avg_ms=200.0,
            iteration_duration_min_ms=150.0,
            iteration_duration_max_ms=250.0,
        )

        merged = merge_results([first, second])

        assert merged.vus == 3
        assert merged.duration_seconds == 3.5
        assert merged.iterations == 6
        assert merged.interrupted_iterations == 1
        assert merged.iterations_by_user == {0: 2, 1: 2, 2: 2}
        assert merged.steps.steps_run == 19
        assert merged.steps.steps_skipped == 2
        assert merged.checks["status equals 200"].passes == 12
        assert merged.checks["status equals 200"].fails == 6
        assert merged.checks["status equals 401"].passes == 2
        assert merged.iteration_duration_avg_ms == pytest.approx((100 * 4 + 200 * 2) / 6)
        assert merged.iteration_duration_min_ms == 90.0
        assert merged.iteration_duration_max_ms == 250.0

    def test_inputs_are_not_mutated(self):
        checks = {"ok": CheckStats("ok", passes=1)}
        result = SchedulerResult(vus=1, duration_seconds=1.0, iterations=1, checks=checks)
        merge_results([result, result])
        assert checks["ok"].passes == 1
