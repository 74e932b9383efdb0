"""
Expression System for survey conditions

Every condition in a survey definition (displayif predicates, skip guards,
numeric input bounds, {#...} computed spans) is parsed into an Abstract
Syntax Tree before it is evaluated. Nothing downstream of the parser
looks at condition strings.

Two call syntaxes share the same tree:
    - modern calls:  valueIsOneOf("Q1", 1, 2)  -> FunctionCall
    - legacy calls:  equals(Q1,1)              -> LegacyCall

ARCHITECTURAL RULE:
    Nodes are structure only.
    Evaluation belongs in questengine.evaluator.
"""

from abc import ABC
from dataclasses import dataclass
from enum import Enum
from typing import Tuple, Union


class Expression(ABC):
    """
    Base class for all AST expressions.

    DO NOT:
        - Add evaluation logic here (belongs in the evaluator)
        - Add response lookups here (belongs in the state store)

    This class is structure only.
    """
    pass


class BinaryOperator(Enum):
    """
    Binary operators supported in conditions.

    Logical and comparison operators come from displayif predicates;
    arithmetic operators come from numeric bounds and {#...} spans.
    """

    # Logical operators
    AND = "AND"
    OR = "OR"

    # Comparison operators
    EQUALS = "=="
    NOT_EQUALS = "!="
    GREATER_THAN = ">"
    GREATER_EQUAL = ">="
    LESS_THAN = "<"
    LESS_EQUAL = "<="

    # Arithmetic operators
    ADD = "+"
    SUBTRACT = "-"
    MULTIPLY = "*"
    DIVIDE = "/"
    MODULO = "%"


@dataclass(frozen=True)
class BinaryExpression(Expression):
    """
    Represents a binary logical, comparison or arithmetic expression.

    Example:
        D_1 == 2 or D_1 == 3

    Becomes:
        BinaryExpression(
            operator=BinaryOperator.OR,
            left=BinaryExpression(BinaryOperator.EQUALS, VariableReference("D_1"), Literal(2)),
            right=BinaryExpression(BinaryOperator.EQUALS, VariableReference("D_1"), Literal(3)),
        )

    IMPORTANT:
        This object is immutable (frozen=True).
        It does NOT evaluate itself.
    """

    operator: BinaryOperator
    left: "Expression"
    right: "Expression"


@dataclass(frozen=True)
class VariableReference(Expression):
    """
    A bare name resolved at evaluation time.

    Examples:
        - D_123456789
        - Q1_2_2
        - #loop
        - 2020-01   (raw legacy argument text)

    Resolution follows the name-resolution chain: null/undefined,
    numeric and boolean literals and the loop marker pass through;
    anything else is looked up as a response id and becomes "" when
    there is no answer.
    """

    name: str


@dataclass(frozen=True)
class Literal(Expression):
    """
    A literal constant: number, quoted string, true/false or null.
    """

    value: Union[int, float, str, bool, None]


class UnaryOperator(Enum):
    """Unary operators."""
    NOT = "NOT"
    NEGATE = "-"


@dataclass(frozen=True)
class UnaryExpression(Expression):
    """
    Represents a unary operation.

    Example:
        not exists("Q1")

    Becomes:
        UnaryExpression(
            operator=UnaryOperator.NOT,
            operand=FunctionCall("exists", (Literal("Q1"),))
        )
    """

    operator: UnaryOperator
    operand: Expression


@dataclass(frozen=True)
class FunctionCall(Expression):
    """
    A call into the modern function library.

    Arguments are ordinary expressions; string literals passed to the
    lookup functions are response ids.

    Example:
        valueOrDefault("D_1", "D_2", 125)
    """

    name: str
    arguments: Tuple[Expression, ...] = ()


@dataclass(frozen=True)
class LegacyCall(Expression):
    """
    A two-argument positional call to the legacy function registry.

    Example:
        and(equals(A,1),or(equals(B,2),equals(B,3)))

    Arguments that are not themselves calls are VariableReference or
    Literal nodes built from the raw argument text, so they resolve
    through the name-resolution chain rather than as modern expressions.
    Nested calls are reduced innermost-first by the evaluator.
    """

    name: str
    arguments: Tuple[Expression, ...] = ()


__all__ = [
    "Expression",
    "BinaryOperator",
    "BinaryExpression",
    "VariableReference",
    "Literal",
    "UnaryOperator",
    "UnaryExpression",
    "FunctionCall",
    "LegacyCall",
]
