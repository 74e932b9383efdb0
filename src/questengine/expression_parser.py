"""
Expression Parser (condition text -> Expression AST).

Recursive-descent parser for the condition language used in displayif
predicates, skip guards, numeric bounds and {#...} spans.

One grammar covers both call syntaxes:
    - modern:  exists("D_1") and valueIsBetween(1, 5, "D_2")
    - legacy:  and(equals(D_1,1),or(equals(D_2,2),equals(D_2,3)))

Precedence (lowest first):
    or, ||
    and, &&
    == != < <= > >=
    + -
    * / %
    not, !, unary -
    literals, names, calls, (...)

A call to a name in the legacy registry is parsed as a LegacyCall when the
name has no modern counterpart, or when any argument is bare text (an
identifier or raw token run) rather than a literal or a nested call.
Legacy arguments keep their raw text so "2020-01", "a@b" or "#loop" reach
the name-resolution chain untouched.
"""

import re
from dataclasses import dataclass
from functools import lru_cache
from typing import List, Tuple

from questengine.errors import ExpressionSyntaxError
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
from questengine.functions import FUNCTION_NAMES, LEGACY_FUNCTION_NAMES


_TOKEN_PATTERN = re.compile(r"""
    (?P<ws>\s+)
  | (?P<number>\d+(?:\.\d*)?(?:[eE][+-]?\d+)?|\.\d+)
  | (?P<string>"[^"]*"|'[^']*')
  | (?P<op>==|!=|<=|>=|&&|\|\||[-+*/%<>!(),])
  | (?P<name>\#?[A-Za-z_][A-Za-z0-9_.#]*)
  | (?P<raw>[^\s(),])
""", re.VERBOSE)

_COMPARISONS = {
    "==": BinaryOperator.EQUALS,
    "!=": BinaryOperator.NOT_EQUALS,
    "<": BinaryOperator.LESS_THAN,
    ">": BinaryOperator.GREATER_THAN,
    "<=": BinaryOperator.LESS_EQUAL,
    ">=": BinaryOperator.GREATER_EQUAL,
}

_ADDITIVE = {"+": BinaryOperator.ADD, "-": BinaryOperator.SUBTRACT}

_MULTIPLICATIVE = {
    "*": BinaryOperator.MULTIPLY,
    "/": BinaryOperator.DIVIDE,
    "%": BinaryOperator.MODULO,
}

_KEYWORD_LITERALS = {"true": True, "false": False, "null": None}


@dataclass(frozen=True)
class Token:
    """One lexical token with its offsets in the source text."""
    kind: str
    text: str
    start: int
    end: int


def tokenize(text: str) -> List[Token]:
    """
    Split condition text into tokens, dropping whitespace.

    A character outside the grammar becomes a one-character "raw" token.
    Raw tokens are only accepted inside legacy call arguments.
    """
    tokens = []
    pos = 0
    while pos < len(text):
        match = _TOKEN_PATTERN.match(text, pos)
        kind = match.lastgroup
        if kind != "ws":
            tokens.append(Token(kind, match.group(), match.start(), match.end()))
        pos = match.end()
    return tokens


@lru_cache(maxsize=1024)
def parse_expression(text: str) -> Expression:
    """
    Parse condition text into an Expression AST.

    Args:
        text: Decoded condition text

    Returns:
        Expression AST (parsed trees are cached; they are immutable)

    Raises:
        ExpressionSyntaxError: If the text does not parse
    """
    if text is None or not text.strip():
        raise ExpressionSyntaxError("Empty expression", expression=text or "")

    tokens = tokenize(text)
    parser = _Parser(text, tokens)
    expr, pos = parser.parse_or(0, len(tokens))
    if pos < len(tokens):
        raise ExpressionSyntaxError(
            f"Unexpected tokens after parsing: {[t.text for t in tokens[pos:]]}",
            expression=text,
            stack=[t.text for t in tokens[pos:]],
        )
    return expr


class _Parser:
    """
    Recursive-descent parser over a token slice.

    Every method takes (pos, end) and returns (node, new_pos) so that call
    arguments can be parsed as independent slices of the same token list.
    """

    def __init__(self, text: str, tokens: List[Token]):
        self.text = text
        self.tokens = tokens

    def _error(self, message: str, pos: int) -> ExpressionSyntaxError:
        return ExpressionSyntaxError(
            f"Failed to parse expression '{self.text}': {message}",
            expression=self.text,
            stack=[t.text for t in self.tokens[pos:]],
        )

    def _peek(self, pos: int, end: int) -> str:
        if pos < end:
            token = self.tokens[pos]
            return token.text.lower() if token.kind == "name" else token.text
        return ""

    def parse_or(self, pos: int, end: int) -> Tuple[Expression, int]:
        """Parse OR expression (lowest precedence)."""
        left, pos = self.parse_and(pos, end)
        while self._peek(pos, end) in ("or", "||"):
            right, pos = self.parse_and(pos + 1, end)
            left = BinaryExpression(BinaryOperator.OR, left, right)
        return left, pos

    def parse_and(self, pos: int, end: int) -> Tuple[Expression, int]:
        """Parse AND expression."""
        left, pos = self.parse_comparison(pos, end)
        while self._peek(pos, end) in ("and", "&&"):
            right, pos = self.parse_comparison(pos + 1, end)
            left = BinaryExpression(BinaryOperator.AND, left, right)
        return left, pos

    def parse_comparison(self, pos: int, end: int) -> Tuple[Expression, int]:
        """Parse comparison expression (==, !=, <, >, <=, >=)."""
        left, pos = self.parse_additive(pos, end)
        while self._peek(pos, end) in _COMPARISONS:
            op = _COMPARISONS[self._peek(pos, end)]
            right, pos = self.parse_additive(pos + 1, end)
            left = BinaryExpression(op, left, right)
        return left, pos

    def parse_additive(self, pos: int, end: int) -> Tuple[Expression, int]:
        left, pos = self.parse_multiplicative(pos, end)
        while self._peek(pos, end) in _ADDITIVE:
            op = _ADDITIVE[self._peek(pos, end)]
            right, pos = self.parse_multiplicative(pos + 1, end)
            left = BinaryExpression(op, left, right)
        return left, pos

    def parse_multiplicative(self, pos: int, end: int) -> Tuple[Expression, int]:
        left, pos = self.parse_unary(pos, end)
        while self._peek(pos, end) in _MULTIPLICATIVE:
            op = _MULTIPLICATIVE[self._peek(pos, end)]
            right, pos = self.parse_unary(pos + 1, end)
            left = BinaryExpression(op, left, right)
        return left, pos

    def parse_unary(self, pos: int, end: int) -> Tuple[Expression, int]:
        """Parse unary expression (not, !, -)."""
        token = self._peek(pos, end)
        if token in ("not", "!"):
            operand, pos = self.parse_unary(pos + 1, end)
            return UnaryExpression(UnaryOperator.NOT, operand), pos
        if token == "-":
            operand, pos = self.parse_unary(pos + 1, end)
            if isinstance(operand, Literal) and isinstance(operand.value, (int, float)) \
                    and not isinstance(operand.value, bool):
                return Literal(-operand.value), pos
            return UnaryExpression(UnaryOperator.NEGATE, operand), pos
        if token == "+":
            return self.parse_unary(pos + 1, end)
        return self.parse_primary(pos, end)

    def parse_primary(self, pos: int, end: int) -> Tuple[Expression, int]:
        """Parse primary expression (literal, name, call, or parenthesized)."""
        if pos >= end:
            raise self._error("Unexpected end of expression", pos)

        token = self.tokens[pos]

        if token.text == "(":
            expr, pos = self.parse_or(pos + 1, end)
            if pos >= end or self.tokens[pos].text != ")":
                raise self._error("Missing closing parenthesis", pos)
            return expr, pos + 1

        if token.kind == "number":
            return Literal(_number(token.text)), pos + 1

        if token.kind == "string":
            return Literal(token.text[1:-1]), pos + 1

        if token.kind == "raw":
            raise self._error(f"Unexpected character {token.text!r} at offset {token.start}", pos)

        if token.kind == "name":
            lowered = token.text.lower()
            if pos + 1 < end and self.tokens[pos + 1].text == "(":
                return self.parse_call(pos, end)
            if lowered in _KEYWORD_LITERALS:
                return Literal(_KEYWORD_LITERALS[lowered]), pos + 1
            return VariableReference(token.text), pos + 1

        raise self._error(f"Unexpected token: {token.text}", pos)

    def parse_call(self, pos: int, end: int) -> Tuple[Expression, int]:
        """
        Parse name(arg, ...).

        Arguments are located first (depth-0 commas up to the matching
        close paren) so the legacy/modern decision can look at all of them.
        """
        name = self.tokens[pos].text
        spans, close = self._argument_spans(pos + 2, end)

        if name in LEGACY_FUNCTION_NAMES and (
            name not in FUNCTION_NAMES or any(self._is_bare(s, e) for s, e in spans)
        ):
            if not 1 <= len(spans) <= 2:
                raise self._error(
                    f"Legacy function '{name}' takes one or two arguments, got {len(spans)}", pos
                )
            args = tuple(self._legacy_argument(s, e) for s, e in spans)
            return LegacyCall(name, args), close + 1

        args = []
        for start, stop in spans:
            arg, arg_end = self.parse_or(start, stop)
            if arg_end != stop:
                raise self._error(f"Expected ',' or ')' in call to '{name}'", arg_end)
            args.append(arg)
        return FunctionCall(name, tuple(args)), close + 1

    def _argument_spans(self, pos: int, end: int) -> Tuple[List[Tuple[int, int]], int]:
        """Return ([(start, stop), ...], index_of_close_paren)."""
        spans = []
        depth = 0
        start = pos
        i = pos
        while i < end:
            text = self.tokens[i].text
            if text == "(":
                depth += 1
            elif text == ")":
                if depth == 0:
                    if i > start or spans:
                        if i == start:
                            raise self._error("Empty argument", i)
                        spans.append((start, i))
                    return spans, i
                depth -= 1
            elif text == "," and depth == 0:
                if i == start:
                    raise self._error("Empty argument", i)
                spans.append((start, i))
                start = i + 1
            i += 1
        raise self._error("Missing closing parenthesis in function call", pos)

    def _is_call(self, start: int, stop: int) -> bool:
        if stop - start < 3:
            return False
        if self.tokens[start].kind != "name" or self.tokens[start + 1].text != "(":
            return False
        try:
            _, close = self._argument_spans(start + 2, stop)
        except ExpressionSyntaxError:
            return False
        return close == stop - 1

    def _is_bare(self, start: int, stop: int) -> bool:
        """True if an argument is bare text rather than a literal or a call."""
        if stop - start == 1:
            token = self.tokens[start]
            if token.kind in ("number", "string"):
                return False
            return token.text.lower() not in ("true", "false")
        if stop - start == 2 and self.tokens[start].text == "-" \
                and self.tokens[start + 1].kind == "number":
            return False
        return not self._is_call(start, stop)

    def _legacy_argument(self, start: int, stop: int) -> Expression:
        if self._is_call(start, stop):
            return self.parse_call(start, stop)[0]
        if stop - start == 1:
            token = self.tokens[start]
            if token.kind == "number":
                return Literal(_number(token.text))
            if token.kind == "string":
                return Literal(token.text[1:-1])
            if token.text.lower() in ("true", "false"):
                return Literal(token.text.lower() == "true")
            return VariableReference(token.text)
        raw = self.text[self.tokens[start].start:self.tokens[stop - 1].end].strip()
        return VariableReference(raw)


def _number(text: str):
    value = float(text)
    if value.is_integer() and re.fullmatch(r"\d+", text):
        return int(text)
    return value


__all__ = [
    "Token",
    "tokenize",
    "parse_expression",
]
