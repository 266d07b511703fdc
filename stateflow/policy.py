from __future__ import annotations

"""Retry and Catch policy evaluation.

Usage::

    outcome = await execute_with_policy(call_activity, state.retry, state.catch)
    if outcome.caught:
        ...  # route to outcome.caught.rule.next
    else:
        result = outcome.value

Rules are scanned in declaration order and the first rule whose
``ErrorEquals`` matches wins. Retries are always exhausted before any Catch
rule is considered.
"""

import asyncio
import logging
from collections import defaultdict
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Generic, Optional, Sequence, TypeVar

from stateflow.errors import StateError
from stateflow.states import CatchRule, RetryRule

logger = logging.getLogger("stateflow.policy")

T = TypeVar("T")
Rule = TypeVar("Rule", RetryRule, CatchRule)

SleepFunc = Callable[[float], Awaitable[None]]
FailureHook = Callable[[StateError, int], Awaitable[None]]
RetryHook = Callable[[RetryRule, StateError, int, float], Awaitable[None]]


@dataclass(frozen=True, slots=True)
class CaughtError:
    """An error routed to a Catch rule instead of propagating."""

    rule: CatchRule
    error: StateError

    @property
    def next(self) -> str:
        return self.rule.next

    def output(self) -> Dict[str, Any]:
        return self.error.to_output()


@dataclass(frozen=True, slots=True)
class PolicyOutcome(Generic[T]):
    """Either the action's value or the caught error."""

    value: Optional[T] = None
    caught: Optional[CaughtError] = None
    attempts: int = 1


def find_rule(rules: Sequence[Rule], error: str) -> tuple[int, Optional[Rule]]:
    """Return the index and rule of the first match, or ``(-1, None)``."""

    for index, rule in enumerate(rules):
        if rule.matches(error):
            return index, rule
    return -1, None


def compute_delay(
    rule: RetryRule,
    retries_so_far: int,
    max_interval_seconds: Optional[float] = None,
) -> float:
    """Backoff before the next retry: ``interval * backoff_rate ** retries_so_far``."""

    delay = rule.interval_seconds * (rule.backoff_rate ** retries_so_far)
    if rule.max_delay_seconds is not None:
        delay = min(delay, rule.max_delay_seconds)
    if max_interval_seconds is not None:
        delay = min(delay, max_interval_seconds)
    return delay


async def execute_with_policy(
    action: Callable[[], Awaitable[T]],
    retriers: Sequence[RetryRule] = (),
    catchers: Sequence[CatchRule] = (),
    *,
    sleep: SleepFunc = asyncio.sleep,
    max_interval_seconds: Optional[float] = None,
    on_failure: Optional[FailureHook] = None,
    on_retry: Optional[RetryHook] = None,
) -> PolicyOutcome[T]:
    """Run ``action`` under Retry/Catch rules.

    ``MaxAttempts`` bounds the invocations attributed to a rule: with a single
    matching rule and an action that always fails, the action runs exactly
    ``MaxAttempts`` times (once when it is 0 or 1) before the error is offered
    to the catchers. Errors matching neither list are re-raised unchanged.
    """

    retries: Dict[int, int] = defaultdict(int)
    attempt = 0
    while True:
        attempt += 1
        try:
            value = await action()
        except StateError as exc:
            if on_failure:
                await on_failure(exc, attempt)

            index, retrier = find_rule(retriers, exc.error)
            if retrier is not None and retries[index] + 1 < retrier.max_attempts:
                delay = compute_delay(retrier, retries[index], max_interval_seconds)
                retries[index] += 1
                logger.debug(
                    "Retrying after %s (attempt %d, waiting %.3fs)", exc.error, attempt, delay
                )
                if on_retry:
                    await on_retry(retrier, exc, attempt, delay)
                await sleep(delay)
                continue

            _, catcher = find_rule(catchers, exc.error)
            if catcher is not None:
                logger.debug("Caught %s, continuing at %s", exc.error, catcher.next)
                return PolicyOutcome(caught=CaughtError(rule=catcher, error=exc), attempts=attempt)
            raise
        return PolicyOutcome(value=value, attempts=attempt)


__all__ = [
    "CaughtError",
    "PolicyOutcome",
    "compute_delay",
    "execute_with_policy",
    "find_rule",
]
