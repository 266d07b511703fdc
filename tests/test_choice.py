from __future__ import annotations

"""Tests for Choice rule evaluation."""

import pytest

from stateflow.choice import evaluate, select_next
from stateflow.errors import DataError, NoMatchingChoice
from stateflow.states import AndRule, ChoiceBranch, ChoiceState, Comparison, NotRule, OrRule


def compare(variable: str, operator: str, operand) -> Comparison:
    return Comparison(
        variable=variable,
        operator=operator,
        operand=operand,
        operand_is_path=operator.endswith("Path"),
    )


@pytest.mark.parametrize(
    "operator, operand, value, expected",
    [
        ("NumericGreaterThan", 10, 11, True),
        ("NumericLessThanEquals", 10, 10, True),
        ("NumericEquals", 1, True, False),
        ("StringEquals", "gold", "gold", True),
        ("StringLessThan", "b", "a", True),
        ("StringMatches", "log-*.txt", "log-2024.txt", True),
        ("StringMatches", r"a\*b", "a*b", True),
        ("StringMatches", r"a\*b", "axxb", False),
        ("BooleanEquals", True, False, False),
        ("TimestampGreaterThan", "2024-01-01T00:00:00Z", "2024-06-01T00:00:00+00:00", True),
        ("IsNull", True, None, True),
        ("IsNumeric", False, "7", True),
        ("IsTimestamp", True, "2024-01-01T00:00:00Z", True),
        ("StringEquals", "10", 10, False),
    ],
)
def test_comparison_operators(operator, operand, value, expected) -> None:
    assert evaluate(compare("$.v", operator, operand), {"v": value}) is expected


def test_path_operand_compares_two_fields() -> None:
    rule = compare("$.price", "NumericLessThanPath", "$.budget")
    assert evaluate(rule, {"price": 5, "budget": 10})
    assert not evaluate(rule, {"price": 15, "budget": 10})


def test_boolean_combinators() -> None:
    rule = AndRule(
        rules=(
            compare("$.tier", "StringEquals", "gold"),
            OrRule(rules=(compare("$.total", "NumericGreaterThan", 100), compare("$.vip", "BooleanEquals", True))),
            NotRule(rule=compare("$.blocked", "BooleanEquals", True)),
        )
    )
    assert evaluate(rule, {"tier": "gold", "total": 50, "vip": True, "blocked": False})
    assert not evaluate(rule, {"tier": "gold", "total": 50, "vip": False, "blocked": False})


def test_is_present_handles_absent_variables() -> None:
    assert evaluate(compare("$.x", "IsPresent", False), {})
    assert evaluate(compare("$.x", "IsPresent", True), {"x": None})


def test_absent_variable_is_a_data_error() -> None:
    with pytest.raises(DataError):
        evaluate(compare("$.missing", "NumericEquals", 1), {})


def test_select_next_uses_first_match_then_default() -> None:
    state = ChoiceState(
        name="Route",
        choices=(
            ChoiceBranch(rule=compare("$.n", "NumericGreaterThan", 10), next="Big"),
            ChoiceBranch(rule=compare("$.n", "NumericGreaterThan", 5), next="Medium"),
        ),
        default="Small",
    )
    assert select_next(state, {"n": 20}) == "Big"
    assert select_next(state, {"n": 7}) == "Medium"
    assert select_next(state, {"n": 1}) == "Small"


def test_select_next_without_default_raises() -> None:
    state = ChoiceState(
        name="Route",
        choices=(ChoiceBranch(rule=compare("$.n", "NumericEquals", 1), next="One"),),
    )
    with pytest.raises(NoMatchingChoice) as excinfo:
        select_next(state, {"n": 2})
    assert excinfo.value.error == "States.NoChoiceMatched"
