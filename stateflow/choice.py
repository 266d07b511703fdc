from __future__ import annotations

"""Choice rule evaluation."""

import operator
import re
from datetime import datetime, timezone
from functools import lru_cache
from typing import Any, Callable, Dict

from stateflow.errors import NoMatchingChoice
from stateflow.paths import get_value, has_value
from stateflow.states import AndRule, ChoiceRule, ChoiceState, Comparison, NotRule, OrRule

_ORDERING: Dict[str, Callable[[Any, Any], bool]] = {
    "Equals": operator.eq,
    "LessThan": operator.lt,
    "GreaterThan": operator.gt,
    "LessThanEquals": operator.le,
    "GreaterThanEquals": operator.ge,
}

STRING_OPERATORS = {f"String{suffix}": fn for suffix, fn in _ORDERING.items()}
NUMERIC_OPERATORS = {f"Numeric{suffix}": fn for suffix, fn in _ORDERING.items()}
TIMESTAMP_OPERATORS = {f"Timestamp{suffix}": fn for suffix, fn in _ORDERING.items()}

TYPE_TESTS = frozenset(
    {"IsNull", "IsPresent", "IsNumeric", "IsString", "IsBoolean", "IsTimestamp"}
)

VALUE_OPERATORS = frozenset(
    set(STRING_OPERATORS)
    | set(NUMERIC_OPERATORS)
    | set(TIMESTAMP_OPERATORS)
    | {"BooleanEquals", "StringMatches"}
)
"""Operators that compare the variable against an operand (each has a ``...Path`` form)."""

PATH_OPERATORS = frozenset(f"{name}Path" for name in VALUE_OPERATORS - {"StringMatches"})

COMPARISON_OPERATORS = VALUE_OPERATORS | PATH_OPERATORS | TYPE_TESTS


def parse_timestamp(value: Any) -> datetime | None:
    """Parse an ISO 8601 timestamp; naive values are taken as UTC."""

    if not isinstance(value, str):
        return None
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


@lru_cache(maxsize=256)
def _wildcard(pattern: str) -> re.Pattern[str]:
    parts: list[str] = []
    index = 0
    while index < len(pattern):
        char = pattern[index]
        if char == "\\" and index + 1 < len(pattern):
            parts.append(re.escape(pattern[index + 1]))
            index += 2
            continue
        parts.append(".*" if char == "*" else re.escape(char))
        index += 1
    return re.compile("".join(parts), re.DOTALL)


def _type_test(name: str, value: Any) -> bool:
    if name == "IsNull":
        return value is None
    if name == "IsNumeric":
        return _is_number(value)
    if name == "IsString":
        return isinstance(value, str)
    if name == "IsBoolean":
        return isinstance(value, bool)
    if name == "IsTimestamp":
        return parse_timestamp(value) is not None
    raise ValueError(f"Unknown type test '{name}'")


def _compare(name: str, value: Any, operand: Any) -> bool:
    if name in STRING_OPERATORS:
        return isinstance(value, str) and isinstance(operand, str) and STRING_OPERATORS[name](value, operand)
    if name in NUMERIC_OPERATORS:
        return _is_number(value) and _is_number(operand) and NUMERIC_OPERATORS[name](value, operand)
    if name in TIMESTAMP_OPERATORS:
        left, right = parse_timestamp(value), parse_timestamp(operand)
        return left is not None and right is not None and TIMESTAMP_OPERATORS[name](left, right)
    if name == "BooleanEquals":
        return isinstance(value, bool) and isinstance(operand, bool) and value == operand
    if name == "StringMatches":
        return isinstance(value, str) and isinstance(operand, str) and bool(_wildcard(operand).fullmatch(value))
    raise ValueError(f"Unknown comparison operator '{name}'")


def _evaluate_comparison(rule: Comparison, document: Any) -> bool:
    if rule.operator == "IsPresent":
        return has_value(document, rule.variable) == rule.operand

    # Absent variables are data errors, not silent mismatches.
    value = get_value(document, rule.variable)
    if rule.operator in TYPE_TESTS:
        return _type_test(rule.operator, value) == rule.operand

    if rule.operand_is_path:
        return _compare(rule.operator.removesuffix("Path"), value, get_value(document, rule.operand))
    return _compare(rule.operator, value, rule.operand)


def evaluate(rule: ChoiceRule, document: Any) -> bool:
    """Evaluate a Choice rule against the state input."""

    if isinstance(rule, Comparison):
        return _evaluate_comparison(rule, document)
    if isinstance(rule, AndRule):
        return all(evaluate(child, document) for child in rule.rules)
    if isinstance(rule, OrRule):
        return any(evaluate(child, document) for child in rule.rules)
    if isinstance(rule, NotRule):
        return not evaluate(rule.rule, document)
    raise TypeError(f"Unsupported choice rule {rule!r}")


def select_next(state: ChoiceState, document: Any) -> str:
    """Return the state chosen by the first matching rule, else the default."""

    for branch in state.choices:
        if evaluate(branch.rule, document):
            return branch.next
    if state.default is not None:
        return state.default
    raise NoMatchingChoice(f"No choice rule matched in state '{state.name}' and no Default is set.")


__all__ = [
    "COMPARISON_OPERATORS",
    "NUMERIC_OPERATORS",
    "PATH_OPERATORS",
    "STRING_OPERATORS",
    "TIMESTAMP_OPERATORS",
    "TYPE_TESTS",
    "VALUE_OPERATORS",
    "evaluate",
    "parse_timestamp",
    "select_next",
]
