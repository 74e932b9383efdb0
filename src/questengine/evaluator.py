"""
Condition Evaluator

Walks an Expression AST against one session's Response State Store.

Contract:
    evaluate(expression) -> scalar          raises ExpressionError
    evaluate_condition(expression) -> bool  never raises; False on error
    evaluate_value(expression, default)     never raises; default on error

Expressions arrive either as AST nodes or as condition text. Text is
URI-decoded first (the compiler stores displayif/end arguments encoded)
and parsed with the shared grammar.

Name resolution (bare names, legacy arguments):
    null / undefined  -> None
    numeric text      -> passed through as written
    true / false      -> bool
    #loop             -> passed through
    anything else     -> response lookup; no answer becomes ""

IMPORTANT:
    Authoring errors stop here. Callers that need a decision (navigation,
    rendering) use evaluate_condition / evaluate_value and get a safe default.
"""

import logging
import math
from typing import Any, Callable, Optional, Union
from urllib.parse import unquote

from questengine.errors import ExpressionError
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
from questengine.functions import (
    FunctionLibrary,
    add_values,
    clean_number,
    is_falsy,
    loose_equals,
    looks_numeric,
    subtract_values,
    to_number,
)

logger = logging.getLogger(__name__)

LOOP_MARKER = "#loop"


class ConditionEvaluator:
    """
    Evaluates conditions for one survey session.

    Args:
        lookup: Response lookup, normally ResponseStore.find_response_value
        library: Function registries; built from lookup when omitted
        error_logger: Optional host callable receiving (message, expression)
    """

    def __init__(
        self,
        lookup: Callable[[str], Any],
        library: Optional[FunctionLibrary] = None,
        error_logger: Optional[Callable[[str, str], None]] = None,
    ):
        self.lookup = lookup
        self.library = library or FunctionLibrary(lookup)
        self.error_logger = error_logger

    # =========================================================================
    # Entry points
    # =========================================================================

    def evaluate(self, expression: Union[str, Expression]) -> Any:
        """
        Evaluate an expression to a scalar.

        Raises:
            ExpressionError: If the expression does not parse or evaluate
        """
        if isinstance(expression, Expression):
            return self._eval(expression, "")
        text = unquote(str(expression)).strip()
        return self._eval(parse_expression(text), text)

    def evaluate_condition(self, expression: Union[str, Expression, None]) -> bool:
        """Truthiness of an expression; an empty or broken expression is False."""
        if expression is None or (isinstance(expression, str) and not expression.strip()):
            return False
        try:
            return not is_falsy(self.evaluate(expression))
        except ExpressionError as exc:
            self._report(exc, expression)
            return False

    def evaluate_value(self, expression: Union[str, Expression], default: Any = None) -> Any:
        try:
            return self.evaluate(expression)
        except ExpressionError as exc:
            self._report(exc, expression)
            return default

    def resolve_name(self, name: str) -> Any:
        """Resolve a bare name through the name-resolution chain."""
        lowered = name.lower()
        if lowered in ("null", "undefined"):
            return None
        if looks_numeric(name) or not math.isnan(to_number(name)):
            return name
        if lowered in ("true", "false"):
            return lowered == "true"
        if name == LOOP_MARKER:
            return name
        value = self.lookup(name)
        return "" if value is None else value

    def _report(self, exc: ExpressionError, expression: Any) -> None:
        text = exc.expression or (unquote(expression) if isinstance(expression, str) else repr(expression))
        stack = exc.stack
        if not stack and isinstance(expression, str):
            stack = [t.text for t in tokenize(text)]
        logger.error("Error evaluating expression %r: %s (token stack: %s)", text, exc, stack)
        if self.error_logger is not None:
            self.error_logger(str(exc), text)

    # =========================================================================
    # Tree walk
    # =========================================================================

    def _eval(self, node: Expression, source: str) -> Any:
        if isinstance(node, Literal):
            return node.value

        if isinstance(node, VariableReference):
            return self.resolve_name(node.name)

        if isinstance(node, UnaryExpression):
            operand = self._eval(node.operand, source)
            if node.operator == UnaryOperator.NOT:
                return is_falsy(operand)
            return clean_number(-to_number(operand))

        if isinstance(node, BinaryExpression):
            return self._eval_binary(node, source)

        if isinstance(node, LegacyCall):
            func = self.library.legacy.get(node.name)
            if func is None:
                raise ExpressionError(f"Unknown legacy function: {node.name}", expression=source)
            args = [self._eval(arg, source) for arg in node.arguments]
            return self._call(func, node.name, args, source)

        if isinstance(node, FunctionCall):
            func = self.library.functions.get(node.name)
            if func is None:
                raise ExpressionError(f"Unknown function: {node.name}", expression=source)
            args = [self._eval(arg, source) for arg in node.arguments]
            return self._call(func, node.name, args, source)

        raise ExpressionError(f"Unknown expression node: {type(node).__name__}", expression=source)

    def _call(self, func: Callable[..., Any], name: str, args, source: str) -> Any:
        try:
            return func(*args)
        except ExpressionError:
            raise
        except (TypeError, ValueError) as exc:
            raise ExpressionError(f"{name}: {exc}", expression=source) from exc

    def _eval_binary(self, node: BinaryExpression, source: str) -> Any:
        op = node.operator

        if op == BinaryOperator.AND:
            left = self._eval(node.left, source)
            return not is_falsy(left) and not is_falsy(self._eval(node.right, source))
        if op == BinaryOperator.OR:
            left = self._eval(node.left, source)
            return not is_falsy(left) or not is_falsy(self._eval(node.right, source))

        left = self._eval(node.left, source)
        right = self._eval(node.right, source)

        if op == BinaryOperator.EQUALS:
            return loose_equals(left, right)
        if op == BinaryOperator.NOT_EQUALS:
            return not loose_equals(left, right)
        if op in (BinaryOperator.LESS_THAN, BinaryOperator.LESS_EQUAL,
                  BinaryOperator.GREATER_THAN, BinaryOperator.GREATER_EQUAL):
            return _compare(op, left, right)
        if op == BinaryOperator.ADD:
            return add_values(left, right)
        if op == BinaryOperator.SUBTRACT:
            return subtract_values(left, right)
        return _arithmetic(op, to_number(left), to_number(right))


def _compare(op: BinaryOperator, left: Any, right: Any) -> bool:
    # Two non-numeric strings compare lexically; everything else numerically.
    if isinstance(left, str) and isinstance(right, str) \
            and not looks_numeric(left) and not looks_numeric(right):
        a, b = left, right
    else:
        a, b = to_number(left), to_number(right)
        if math.isnan(a) or math.isnan(b):
            return False
    if op == BinaryOperator.LESS_THAN:
        return a < b
    if op == BinaryOperator.LESS_EQUAL:
        return a <= b
    if op == BinaryOperator.GREATER_THAN:
        return a > b
    return a >= b


def _arithmetic(op: BinaryOperator, a: float, b: float):
    if op == BinaryOperator.MULTIPLY:
        return clean_number(a * b)
    if b == 0 or math.isnan(a) or math.isnan(b):
        if op == BinaryOperator.DIVIDE and b == 0 and a != 0 and not math.isnan(a):
            return math.copysign(math.inf, a)
        return math.nan
    if op == BinaryOperator.DIVIDE:
        return clean_number(a / b)
    return clean_number(math.fmod(a, b))


__all__ = [
    "ConditionEvaluator",
    "LOOP_MARKER",
]
