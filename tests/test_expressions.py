"""
Tests for the expression AST and the condition parser.

These tests verify:
    - Expression objects are immutable value objects
    - Operator precedence
    - Modern vs legacy call detection
    - Legacy arguments keep their raw text
    - Syntax errors are reported as ExpressionSyntaxError
"""

import pytest
from questengine.errors import ExpressionSyntaxError
from questengine.expression_parser import parse_expression, tokenize
from questengine.expressions import (
    Expression,
    BinaryExpression,
    BinaryOperator,
    VariableReference,
    Literal,
    UnaryExpression,
    UnaryOperator,
    FunctionCall,
    LegacyCall,
)


class TestExpressionNodes:
    """Test the AST node objects."""

    def test_variable_reference_immutable(self):
        """Variable references should be immutable."""
        var_ref = VariableReference("Q1")
        with pytest.raises(AttributeError):
            var_ref.name = "Changed"

    def test_nodes_compare_by_value(self):
        """Two trees built the same way are equal."""
        a = BinaryExpression(BinaryOperator.EQUALS, VariableReference("Q1"), Literal(1))
        b = BinaryExpression(BinaryOperator.EQUALS, VariableReference("Q1"), Literal(1))
        assert a == b

    def test_calls_are_expressions(self):
        """Function calls of both syntaxes are expressions."""
        assert isinstance(FunctionCall("exists", (Literal("Q1"),)), Expression)
        assert isinstance(LegacyCall("equals", (VariableReference("Q1"), Literal(1))), Expression)


class TestTokenizer:

    def test_token_kinds(self):
        """Names, operators and numbers are told apart."""
        tokens = tokenize("Q1 >= 10")
        assert [t.kind for t in tokens] == ["name", "op", "number"]
        assert [t.text for t in tokens] == ["Q1", ">=", "10"]

    def test_loop_marker_is_a_name(self):
        """#loop tokenizes as a single name."""
        assert [t.text for t in tokenize("#loop")] == ["#loop"]

    def test_unexpected_character_is_raw(self):
        """Characters outside the grammar become raw tokens."""
        tokens = tokenize("Q1 $ 2")
        assert [t.kind for t in tokens] == ["name", "raw", "number"]

    def test_raw_token_outside_legacy_call(self):
        """A raw token in a modern expression is a syntax error."""
        with pytest.raises(ExpressionSyntaxError):
            parse_expression("Q1 $ 2")
        with pytest.raises(ExpressionSyntaxError):
            parse_expression("@")


class TestPrecedence:

    def test_comparison(self):
        """Q1 == 1 parses to a single comparison."""
        assert parse_expression("Q1 == 1") == BinaryExpression(
            BinaryOperator.EQUALS, VariableReference("Q1"), Literal(1)
        )

    def test_multiplication_binds_tighter_than_addition(self):
        """1 + 2 * 3 groups as 1 + (2 * 3)."""
        assert parse_expression("1 + 2 * 3") == BinaryExpression(
            BinaryOperator.ADD,
            Literal(1),
            BinaryExpression(BinaryOperator.MULTIPLY, Literal(2), Literal(3)),
        )

    def test_and_binds_tighter_than_or(self):
        """a or b and c groups as a or (b and c)."""
        expr = parse_expression("a or b and c")
        assert expr.operator == BinaryOperator.OR
        assert expr.right == BinaryExpression(
            BinaryOperator.AND, VariableReference("b"), VariableReference("c")
        )

    def test_symbolic_operators(self):
        """&& and || are aliases of and/or."""
        assert parse_expression("a || b && c") == parse_expression("a or b and c")

    def test_parentheses_override(self):
        """(1 + 2) * 3 groups the addition first."""
        expr = parse_expression("(1 + 2) * 3")
        assert expr.operator == BinaryOperator.MULTIPLY
        assert expr.left.operator == BinaryOperator.ADD

    def test_negative_number_folds(self):
        """A negated number literal is a negative literal."""
        assert parse_expression("-8") == Literal(-8)

    def test_not(self):
        """not and ! both produce a NOT node."""
        expected = UnaryExpression(UnaryOperator.NOT, VariableReference("x"))
        assert parse_expression("not x") == expected
        assert parse_expression("!x") == expected

    def test_keyword_literals(self):
        """true/false/null are literals, not names."""
        assert parse_expression("true") == Literal(True)
        assert parse_expression("null") == Literal(None)


class TestCalls:

    def test_modern_call(self):
        """String-literal arguments make a modern call."""
        assert parse_expression('exists("Q1")') == FunctionCall("exists", (Literal("Q1"),))

    def test_legacy_call_with_bare_argument(self):
        """A bare id argument makes a legacy call."""
        assert parse_expression("equals(Q1,1)") == LegacyCall(
            "equals", (VariableReference("Q1"), Literal(1))
        )

    def test_shared_name_without_bare_arguments_is_modern(self):
        """equals("Q1", 1) has no bare argument and stays modern."""
        assert isinstance(parse_expression('equals("Q1", 1)'), FunctionCall)

    def test_legacy_only_name(self):
        """isDefined exists only in the legacy registry."""
        assert isinstance(parse_expression("isDefined(Q1,0)"), LegacyCall)

    def test_nested_legacy_calls(self):
        """and/or wrapping legacy equals calls parse at every level."""
        expr = parse_expression("and(equals(A,1),or(equals(B,2),equals(B,3)))")
        assert isinstance(expr, FunctionCall)
        assert expr.name == "and"
        first, second = expr.arguments
        assert first == LegacyCall("equals", (VariableReference("A"), Literal(1)))
        assert isinstance(second, FunctionCall) and second.name == "or"
        assert all(isinstance(a, LegacyCall) for a in second.arguments)

    def test_raw_legacy_argument(self):
        """A token run such as 2020-01 reaches the evaluator as written."""
        expr = parse_expression("equals(D,2020-01)")
        assert expr.arguments[1] == VariableReference("2020-01")

    def test_legacy_argument_with_foreign_characters(self):
        """Legacy arguments may hold characters the grammar does not know."""
        expr = parse_expression("equals(A_mail,a@b)")
        assert expr == LegacyCall("equals", (VariableReference("A_mail"), VariableReference("a@b")))
        expr = parse_expression("doesNotEqual(T, 12:30)")
        assert expr.arguments[1] == VariableReference("12:30")

    def test_loop_marker_argument(self):
        """#loop is kept as a bare name."""
        expr = parse_expression("greaterThanOrEqual(N,#loop)")
        assert expr.arguments == (VariableReference("N"), VariableReference("#loop"))

    def test_modern_call_with_expression_argument(self):
        """Modern arguments are full expressions."""
        expr = parse_expression('valueIsBetween(1, 2 + 3, "Q1")')
        assert expr.arguments[1] == BinaryExpression(BinaryOperator.ADD, Literal(2), Literal(3))

    def test_legacy_call_takes_at_most_two_arguments(self):
        """Legacy calls with three arguments are rejected."""
        with pytest.raises(ExpressionSyntaxError):
            parse_expression("equals(A,B,C)")


class TestSyntaxErrors:

    @pytest.mark.parametrize("text", ["", "   ", "Q1 ==", "(1 + 2", "exists(", "1 2"])
    def test_invalid_text(self, text):
        """Incomplete or malformed text raises ExpressionSyntaxError."""
        with pytest.raises(ExpressionSyntaxError):
            parse_expression(text)

    def test_error_carries_expression(self):
        """The error names the expression that failed."""
        with pytest.raises(ExpressionSyntaxError) as exc_info:
            parse_expression("Q1 ==")
        assert exc_info.value.expression == "Q1 =="


def test_parsed_trees_are_cached():
    """Parsing the same text twice returns the same tree object."""
    assert parse_expression("Q7 > 2") is parse_expression("Q7 > 2")
