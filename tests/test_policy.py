from __future__ import annotations

"""Tests for Retry/Catch policy evaluation."""

import asyncio

import pytest

from stateflow.errors import ActivityApplicationError, ActivityTimeout, DataError
from stateflow.policy import compute_delay, execute_with_policy, find_rule
from stateflow.states import CatchRule, RetryRule


def failing_action(*errors, result="ok"):
    """Action that raises each error in turn, then returns ``result``."""

    remaining = list(errors)
    calls = []

    async def action():
        calls.append(len(calls) + 1)
        if remaining:
            raise remaining.pop(0)
        return result

    return action, calls


def test_retry_then_success_waits_with_backoff(sleep) -> None:
    action, calls = failing_action(ActivityTimeout(), ActivityTimeout())
    rule = RetryRule(error_equals=("States.Timeout",), interval_seconds=1, max_attempts=3, backoff_rate=2)

    outcome = asyncio.run(execute_with_policy(action, [rule], sleep=sleep))

    assert outcome.value == "ok"
    assert outcome.attempts == 3
    assert len(calls) == 3
    assert sleep.delays == [1, 2]


def test_exhausted_retries_fall_through_to_catch(sleep) -> None:
    action, calls = failing_action(*[ActivityApplicationError("Flaky")] * 5)
    retry = RetryRule(error_equals=("Flaky",), interval_seconds=1, max_attempts=2)
    catch = CatchRule(error_equals=("States.ALL",), next="Recover", result_path="$.error")

    outcome = asyncio.run(execute_with_policy(action, [retry], [catch], sleep=sleep))

    assert len(calls) == 2
    assert outcome.caught is not None
    assert outcome.caught.next == "Recover"
    assert outcome.caught.output() == {"Error": "Flaky", "Cause": ""}


def test_unmatched_error_propagates_unchanged(sleep) -> None:
    error = ActivityApplicationError("BadInput", "nope")
    action, calls = failing_action(error)
    retry = RetryRule(error_equals=("States.Timeout",))

    with pytest.raises(ActivityApplicationError) as excinfo:
        asyncio.run(execute_with_policy(action, [retry], sleep=sleep))

    assert excinfo.value is error
    assert len(calls) == 1


def test_first_matching_rule_wins() -> None:
    rules = [
        RetryRule(error_equals=("States.TaskFailed",), max_attempts=1),
        RetryRule(error_equals=("States.ALL",), max_attempts=5),
    ]
    index, rule = find_rule(rules, "States.TaskFailed")
    assert index == 0 and rule is rules[0]
    assert find_rule(rules, "Other")[0] == 1
    assert find_rule([], "Other") == (-1, None)


def test_max_attempts_zero_means_no_retry(sleep) -> None:
    action, calls = failing_action(DataError("bad"))
    retry = RetryRule(error_equals=("States.ALL",), max_attempts=0)

    with pytest.raises(DataError):
        asyncio.run(execute_with_policy(action, [retry], sleep=sleep))
    assert len(calls) == 1


def test_wildcard_and_timeout_aliases_match() -> None:
    assert RetryRule(error_equals=("*",)).matches("Anything")
    assert CatchRule(error_equals=("Timeout",), next="X").matches("States.Timeout")


def test_compute_delay_is_capped() -> None:
    rule = RetryRule(error_equals=("States.ALL",), interval_seconds=2, backoff_rate=3, max_delay_seconds=10)
    assert compute_delay(rule, 0) == 2
    assert compute_delay(rule, 1) == 6
    assert compute_delay(rule, 2) == 10
    assert compute_delay(rule, 1, max_interval_seconds=5) == 5


def test_hooks_observe_failures_and_retries(sleep) -> None:
    failures = []
    retries = []

    async def on_failure(error, attempt):
        failures.append((error.error, attempt))

    async def on_retry(rule, error, attempt, delay):
        retries.append((attempt, delay))

    action, _ = failing_action(ActivityTimeout())
    rule = RetryRule(error_equals=("States.Timeout",), interval_seconds=0.5)
    asyncio.run(
        execute_with_policy(
            action, [rule], sleep=sleep, on_failure=on_failure, on_retry=on_retry
        )
    )

    assert failures == [("States.Timeout", 1)]
    assert retries == [(1, 0.5)]
