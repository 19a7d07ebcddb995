"""Tests for check predicates and the check evaluator."""

from __future__ import annotations

import threading

import pytest

from loadscript import (
    body_contains,
    duration_below,
    header_equals,
    json_field_equals,
    status_equals,
    status_in,
)
from loadscript._internal.errors import CheckFailure, ScenarioError
from loadscript.dsl.checks import check_from_spec
from loadscript.dsl.steps import Check
from loadscript.engine.checks import CheckResult, CheckTally, evaluate_checks
from loadscript.engine.executor import Response


def _response(
    status: int = 200,
    body: bytes = b"",
    headers: dict[str, str] | None = None,
    elapsed_ms: float = 12.0,
) -> Response:
    return Response(
        method="GET",
        url="http://localhost/",
        status=status,
        headers=headers or {},
        body=body,
        elapsed_ms=elapsed_ms,
    )


class TestPredicates:
    """Tests for the ready-made predicates."""

    def test_status_equals(self):
        assert status_equals(200)(_response(200))
        assert not status_equals(200)(_response(401))

    def test_status_in(self):
        assert status_in([200, 201])(_response(201))
        assert not status_in([200, 201])(_response(500))

    def test_body_contains(self):
        assert body_contains("pizza")(_response(body=b"<h1>pizza</h1>"))
        assert not body_contains("pizza")(_response(body=b"pasta"))

    def test_header_equals(self):
        response = _response(headers={"Content-Type": "application/json"})
        assert header_equals("Content-Type", "application/json")(response)
        assert not header_equals("Content-Type", "text/html")(response)

    def test_duration_below(self):
        assert duration_below(50)(_response(elapsed_ms=12.0))
        assert not duration_below(10)(_response(elapsed_ms=12.0))

    def test_json_field_equals(self):
        response = _response(body=b'{"pizza": {"name": "Margherita", "toppings": ["basil"]}}')
        assert json_field_equals("pizza.name", "Margherita")(response)
        assert json_field_equals("pizza.toppings.0", "basil")(response)
        assert not json_field_equals("pizza.name", "Diavola")(response)

    def test_json_field_missing_path_raises_check_failure(self):
        with pytest.raises(CheckFailure, match="not found"):
            json_field_equals("pizza.id", 1)(_response(body=b'{"pizza": {}}'))

    def test_json_field_non_json_body_raises_check_failure(self):
        with pytest.raises(CheckFailure, match="not JSON"):
            json_field_equals("pizza", 1)(_response(body=b"<html>"))

    def test_predicates_have_readable_names(self):
        assert status_equals(200).__name__ == "status_equals(200)"


class TestCheckFromSpec:
    """Tests for the declarative check form."""

    @pytest.mark.parametrize(
        ("spec", "response", "expected"),
        [
            ({"status": 200}, _response(200), True),
            ({"status_in": [200, 204]}, _response(204), True),
            ({"body_contains": "ok"}, _response(body=b"not ok"), True),
            ({"header": {"name": "X-Id", "value": "1"}}, _response(headers={"X-Id": "2"}), False),
            ({"json": {"path": "a", "equals": 1}}, _response(body=b'{"a": 1}'), True),
            ({"max_duration_ms": 5}, _response(elapsed_ms=12.0), False),
        ],
    )
    def test_supported_forms(self, spec, response, expected):
        assert check_from_spec(spec)(response) is expected

    @pytest.mark.parametrize(
        "spec",
        [
            {},
            {"status": 200, "body_contains": "x"},
            {"status": "200"},
            {"status_in": [200, "201"]},
            {"header": {"name": "X"}},
            {"json": {"path": "a"}},
            {"max_duration_ms": 0},
            {"regex": ".*"},
        ],
    )
    def test_malformed_forms_raise(self, spec):
        with pytest.raises(ScenarioError):
            check_from_spec(spec)


class TestCheckTally:
    """Tests for CheckTally."""

    def test_record_counts_by_name(self):
        tally = CheckTally()
        tally.record("status equals 200", passed=True)
        tally.record("status equals 200", passed=False)
        tally.record("status equals 401", passed=True)

        snapshot = tally.snapshot()
        assert snapshot["status equals 200"].passes == 1
        assert snapshot["status equals 200"].fails == 1
        assert snapshot["status equals 401"].passes == 1
        assert (tally.passes, tally.fails) == (2, 1)

    def test_merge_adds_counts(self):
        tally = CheckTally()
        tally.record("a", passed=True)
        tally.merge({"a": (2, 3), "b": (1, 0)})
        assert tally.as_counts() == {"a": (3, 3), "b": (1, 0)}

    def test_snapshot_is_a_copy(self):
        tally = CheckTally()
        tally.record("a", passed=True)
        snapshot = tally.snapshot()
        tally.record("a", passed=True)
        assert snapshot["a"].passes == 1

    def test_concurrent_records_are_exact(self):
        tally = CheckTally()

        def _hammer() -> None:
            for i in range(5000):
                tally.record("shared", passed=i % 2 == 0)

        threads = [threading.Thread(target=_hammer) for _ in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert tally.as_counts() == {"shared": (20000, 20000)}


class TestEvaluateChecks:
    """Tests for evaluate_checks()."""

    def test_pass_and_fail_are_recorded(self):
        tally = CheckTally()
        checks = [Check("status equals 200", status_equals(200)), Check("body", body_contains("x"))]
        results = evaluate_checks(_response(200, b"y"), checks, tally, group="::Default group")

        assert results == [
            CheckResult("status equals 200", passed=True, group="::Default group"),
            CheckResult("body", passed=False, group="::Default group"),
        ]
        assert tally.as_counts() == {"status equals 200": (1, 0), "body": (0, 1)}

    def test_unauthorised_response_fails_status_check(self):
        tally = CheckTally()
        evaluate_checks(_response(401), [Check("status equals 200", status_equals(200))], tally)
        assert tally.as_counts() == {"status equals 200": (0, 1)}

    def test_raising_predicate_is_a_fail_and_later_checks_still_run(self):
        def _boom(response: Response) -> bool:
            msg = "kaboom"
            raise RuntimeError(msg)

        tally = CheckTally()
        results = evaluate_checks(
            _response(200),
            [Check("explodes", _boom), Check("status equals 200", status_equals(200))],
            tally,
        )

        assert results[0].passed is False
        assert results[0].error == "kaboom"
        assert results[1].passed is True
        assert tally.as_counts() == {"explodes": (0, 1), "status equals 200": (1, 0)}

    def test_truthy_values_count_as_pass(self):
        results = evaluate_checks(_response(), [Check("truthy", lambda r: "yes")])
        assert results[0].passed is True

    def test_no_checks(self):
        assert evaluate_checks(_response(), []) == []
