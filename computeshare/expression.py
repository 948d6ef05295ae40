"""Arithmetic expression parser used by script tasks.

The grammar only knows numeric literals, parentheses, unary ``+``/``-`` and
the binary operators ``+ - * / %``::

    expression := term (("+" | "-") term)*
    term       := unary (("*" | "/" | "%") unary)*
    unary      := ("+" | "-") unary | primary
    primary    := NUMBER | "(" expression ")"

Adjacent ``++`` or ``--`` and numbers with a leading zero (``010``) are
syntax errors; ``- -1`` with a space is a double negation.

Evaluation follows IEEE-754 double semantics: division by zero produces an
infinity or NaN instead of raising, and ``%`` is the truncated remainder
carrying the sign of the dividend.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import List, Union

from .errors import NonFiniteResultError, ScriptSyntaxError

MAX_DEPTH = 200
MAX_TOKENS = 400
DIGITS = "0123456789"
OPERATORS = "+-*/%"


@dataclass(frozen=True)
class Token:
    kind: str  # "number", "op", "lparen", "rparen"
    text: str
    position: int


@dataclass(frozen=True)
class Number:
    value: float


@dataclass(frozen=True)
class UnaryOp:
    op: str
    operand: "Node"


@dataclass(frozen=True)
class BinaryOp:
    op: str
    left: "Node"
    right: "Node"


Node = Union[Number, UnaryOp, BinaryOp]


def tokenize(text: str) -> List[Token]:
    tokens: List[Token] = []
    index = 0
    length = len(text)
    while index < length:
        char = text[index]
        if char.isspace():
            index += 1
            continue
        if char in DIGITS or char == ".":
            start = index
            seen_dot = False
            while index < length and (text[index] in DIGITS or (text[index] == "." and not seen_dot)):
                if text[index] == ".":
                    seen_dot = True
                index += 1
            literal = text[start:index]
            if literal == ".":
                raise ScriptSyntaxError(f"Malformed number at position {start}")
            # Legacy octal forms such as 010 or 08 are not numbers here.
            if len(literal) > 1 and literal[0] == "0" and literal[1] in DIGITS:
                raise ScriptSyntaxError(f"Leading zero in number at position {start}")
            tokens.append(Token("number", literal, start))
            continue
        if char in "+-" and index + 1 < length and text[index + 1] == char:
            raise ScriptSyntaxError(f"Unexpected {char * 2!r} at position {index}")
        if char in OPERATORS:
            tokens.append(Token("op", char, index))
        elif char == "(":
            tokens.append(Token("lparen", char, index))
        elif char == ")":
            tokens.append(Token("rparen", char, index))
        else:
            raise ScriptSyntaxError(f"Unexpected character {char!r} at position {index}")
        index += 1
    return tokens


class _Parser:
    def __init__(self, tokens: List[Token]) -> None:
        self.tokens = tokens
        self.index = 0
        self.depth = 0

    def peek(self) -> Union[Token, None]:
        if self.index < len(self.tokens):
            return self.tokens[self.index]
        return None

    def advance(self) -> Token:
        token = self.peek()
        if token is None:
            raise ScriptSyntaxError("Unexpected end of expression")
        self.index += 1
        return token

    def parse(self) -> Node:
        if not self.tokens:
            raise ScriptSyntaxError("Empty expression")
        node = self.expression()
        trailing = self.peek()
        if trailing is not None:
            raise ScriptSyntaxError(f"Unexpected {trailing.text!r} at position {trailing.position}")
        return node

    def expression(self) -> Node:
        node = self.term()
        while True:
            token = self.peek()
            if token is None or token.kind != "op" or token.text not in "+-":
                return node
            self.advance()
            node = BinaryOp(token.text, node, self.term())

    def term(self) -> Node:
        node = self.unary()
        while True:
            token = self.peek()
            if token is None or token.kind != "op" or token.text not in "*/%":
                return node
            self.advance()
            # "**" is not an operator here
            following = self.peek()
            if following is not None and following.kind == "op" and following.text in "*/%":
                raise ScriptSyntaxError(f"Unexpected {following.text!r} at position {following.position}")
            node = BinaryOp(token.text, node, self.unary())

    def unary(self) -> Node:
        token = self.peek()
        if token is not None and token.kind == "op" and token.text in "+-":
            self.advance()
            return UnaryOp(token.text, self._nested(self.unary))
        return self.primary()

    def primary(self) -> Node:
        token = self.advance()
        if token.kind == "number":
            return Number(float(token.text))
        if token.kind == "lparen":
            node = self._nested(self.expression)
            closing = self.advance()
            if closing.kind != "rparen":
                raise ScriptSyntaxError(f"Expected ')' at position {closing.position}")
            return node
        raise ScriptSyntaxError(f"Unexpected {token.text!r} at position {token.position}")

    def _nested(self, rule) -> Node:
        self.depth += 1
        if self.depth > MAX_DEPTH:
            raise ScriptSyntaxError("Expression nested too deeply")
        try:
            return rule()
        finally:
            self.depth -= 1


def parse(text: str) -> Node:
    tokens = tokenize(text)
    if len(tokens) > MAX_TOKENS:
        raise ScriptSyntaxError("Expression is too long")
    return _Parser(tokens).parse()


def _divide(left: float, right: float) -> float:
    if right == 0:
        if left == 0 or math.isnan(left):
            return math.nan
        return math.copysign(math.inf, left) * math.copysign(1.0, right)
    return left / right


def _remainder(left: float, right: float) -> float:
    if right == 0 or math.isinf(left) or math.isnan(left) or math.isnan(right):
        return math.nan
    if math.isinf(right):
        return left
    return math.fmod(left, right)


def evaluate(node: Node) -> float:
    if isinstance(node, Number):
        return node.value
    if isinstance(node, UnaryOp):
        value = evaluate(node.operand)
        return -value if node.op == "-" else value
    if isinstance(node, BinaryOp):
        left = evaluate(node.left)
        right = evaluate(node.right)
        if node.op == "+":
            return left + right
        if node.op == "-":
            return left - right
        if node.op == "*":
            return left * right
        if node.op == "/":
            return _divide(left, right)
        if node.op == "%":
            return _remainder(left, right)
    raise ScriptSyntaxError(f"Unsupported node {node!r}")


def evaluate_expression(text: str) -> float:
    """Parse and evaluate ``text``, rejecting NaN and infinite results."""

    value = evaluate(parse(text))
    if not math.isfinite(value):
        raise NonFiniteResultError("Expression did not produce a finite number")
    return value


__all__ = [
    "BinaryOp",
    "MAX_DEPTH",
    "MAX_TOKENS",
    "Node",
    "Number",
    "Token",
    "UnaryOp",
    "evaluate",
    "evaluate_expression",
    "parse",
    "tokenize",
]
