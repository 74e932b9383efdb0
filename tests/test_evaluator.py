"""
Tests for the Condition Evaluator.

Conditions are evaluated against a ResponseStore, the same way a running
session evaluates them.
"""

import math
from urllib.parse import quote

import pytest
from questengine.errors import ExpressionError
from questengine.evaluator import ConditionEvaluator
from questengine.state import ResponseStore


def make_evaluator(responses=None, **kwargs) -> ConditionEvaluator:
    store = ResponseStore()
    store.load_initial_state(responses or {})
    return ConditionEvaluator(store.find_response_value, **kwargs)


class TestLegacyConditions:

    def test_nested_and_or(self):
        """and(equals(A,1),or(equals(B,2),equals(B,3))) holds with A=1, B=3."""
        evaluator = make_evaluator({"A": "1", "B": "3"})
        assert evaluator.evaluate_condition("and(equals(A,1),or(equals(B,2),equals(B,3)))")

    def test_nested_and_or_false(self):
        """The same condition fails when B matches neither value."""
        evaluator = make_evaluator({"A": "1", "B": "4"})
        assert not evaluator.evaluate_condition("and(equals(A,1),or(equals(B,2),equals(B,3)))")

    def test_legacy_and_returns_operand(self):
        """Legacy and(x,y) yields y when x is truthy."""
        evaluator = make_evaluator({"A": "1", "B": "3"})
        assert evaluator.evaluate("and(A,B)") == "3"

    def test_legacy_comparison(self):
        """lessThan coerces stored text to a number."""
        evaluator = make_evaluator({"Q1": "1"})
        assert evaluator.evaluate_condition("lessThan(Q1,5)")

    def test_is_defined_falls_back(self):
        """isDefined(missing, 5) gives 5."""
        evaluator = make_evaluator({})
        assert evaluator.evaluate("isDefined(Q9,5)") == 5

    def test_missing_answer_is_empty(self):
        """An unanswered id compares as empty text."""
        evaluator = make_evaluator({})
        assert not evaluator.evaluate_condition("equals(Q9,1)")

    def test_argument_with_foreign_characters(self):
        """Text such as a@b is resolved like any bare argument, with no error."""
        reported = []
        evaluator = make_evaluator(
            {"A_mail": "x@y"}, error_logger=lambda message, text: reported.append(text)
        )
        assert evaluator.evaluate_condition("doesNotEqual(A_mail,a@b)") is True
        assert evaluator.evaluate_condition("equals(Q9,a@b)") is True
        assert reported == []


class TestModernConditions:

    def test_comparison_with_stored_text(self):
        """Q1 == 1 matches the stored "1"."""
        evaluator = make_evaluator({"Q1": "1"})
        assert evaluator.evaluate_condition("Q1 == 1")
        assert not evaluator.evaluate_condition("Q1 != 1")

    def test_exists_and_not(self):
        """exists() combines with not/!."""
        evaluator = make_evaluator({"Q1": "x"})
        assert not evaluator.evaluate_condition('!exists("Q1")')
        assert evaluator.evaluate_condition('not exists("Q9")')

    def test_value_or_default(self):
        """valueOrDefault falls back to the literal default."""
        evaluator = make_evaluator({})
        assert evaluator.evaluate('valueOrDefault("Q9", 125)') == 125

    def test_string_comparison_is_lexical(self):
        """Two non-numeric strings compare as text."""
        evaluator = make_evaluator({})
        assert evaluator.evaluate_condition('"b" > "a"')

    def test_year_month_arithmetic(self):
        """yearMonth values support month arithmetic."""
        evaluator = make_evaluator({})
        assert evaluator.evaluate('yearMonth("2023-11") + 3') == "2024-02"
        assert evaluator.evaluate('yearMonth("2024-02") - yearMonth("2023-11")') == 3


class TestArithmetic:

    def test_precedence(self):
        """1 + 2 * 3 evaluates to 7."""
        assert make_evaluator().evaluate("1 + 2 * 3") == 7

    def test_division_and_modulo(self):
        """/ is true division; % is the remainder."""
        evaluator = make_evaluator()
        assert evaluator.evaluate("10 / 4") == 2.5
        assert evaluator.evaluate("7 % 4") == 3

    def test_division_by_zero(self):
        """Division by zero gives infinity, 0/0 gives NaN."""
        evaluator = make_evaluator()
        assert evaluator.evaluate("1 / 0") == math.inf
        assert math.isnan(evaluator.evaluate("0 / 0"))


class TestErrors:

    def test_unknown_function_raises(self):
        """evaluate() raises for an unknown function."""
        with pytest.raises(ExpressionError):
            make_evaluator().evaluate("bogus(1)")

    def test_condition_is_false_on_error(self):
        """evaluate_condition() reports the error and answers False."""
        reported = []
        evaluator = make_evaluator(error_logger=lambda message, text: reported.append(text))
        assert evaluator.evaluate_condition("bogus(1)") is False
        assert reported == ["bogus(1)"]

    def test_value_default_on_error(self):
        """evaluate_value() returns the default for broken text."""
        assert make_evaluator().evaluate_value("Q1 ==", default=5) == 5

    def test_empty_condition_is_false(self):
        """Empty or missing conditions are False."""
        evaluator = make_evaluator()
        assert evaluator.evaluate_condition("") is False
        assert evaluator.evaluate_condition(None) is False


def test_encoded_condition():
    """URI-encoded condition text is decoded before parsing."""
    evaluator = make_evaluator({"Q1": "1"})
    assert evaluator.evaluate_condition(quote("equals(Q1,1)", safe=""))


def test_resolve_name_chain():
    """Bare names resolve through the documented chain."""
    evaluator = make_evaluator({"Q1": "yes"})
    assert evaluator.resolve_name("null") is None
    assert evaluator.resolve_name("12") == "12"
    assert evaluator.resolve_name("true") is True
    assert evaluator.resolve_name("#loop") == "#loop"
    assert evaluator.resolve_name("Q1") == "yes"
    assert evaluator.resolve_name("Q9") == ""
