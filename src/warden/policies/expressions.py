"""
Policy expression language.

Step ``when`` / ``approve_if`` predicates and approver expressions are parsed
once into a small tagged-variant AST and evaluated against a variables
mapping. Nothing is executed: evaluation only reads values, so it is
deterministic and sandboxed.

Expression Language:
    # Field references (resolved against variables)
    $appeal.resource.details.owner
    $appeal.role

    # Comparisons
    $appeal.resource.type == 'dataset'
    $appeal.account_type != "service_account"
    $appeal.role in ['viewer', 'editor']

    # Boolean operators (symbolic or keyword)
    $appeal.role == 'viewer' && $appeal.resource.type == 'table'
    $appeal.role == 'viewer' or not $appeal.resource.details.sensitive

    # Literals
    'text', "text", 42, 1.5, true, false, nil, [a, b]
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from functools import lru_cache
from typing import Any, Mapping, Sequence, Union

from warden.core.errors import ExpressionError

_TOKEN_SPEC = [
    ("WS", r"\s+"),
    ("FIELD", r"\$[A-Za-z_][A-Za-z0-9_]*(?:\.[A-Za-z0-9_]+)*"),
    ("STRING", r"'(?:[^'\\]|\\.)*'|\"(?:[^\"\\]|\\.)*\""),
    ("NUMBER", r"-?\d+(?:\.\d+)?"),
    ("OP", r"==|!=|&&|\|\||!"),
    ("LPAREN", r"\("),
    ("RPAREN", r"\)"),
    ("LBRACKET", r"\["),
    ("RBRACKET", r"\]"),
    ("COMMA", r","),
    ("WORD", r"[A-Za-z_][A-Za-z0-9_]*"),
]
_TOKEN_RE = re.compile("|".join(f"(?P<{name}>{pattern})" for name, pattern in _TOKEN_SPEC))

_KEYWORD_OPS = {"and": "&&", "or": "||", "not": "!", "in": "in"}
_CONSTANTS: dict[str, Any] = {"true": True, "false": False, "nil": None, "null": None}


# AST


@dataclass(frozen=True)
class Literal:
    value: Any


@dataclass(frozen=True)
class ListLiteral:
    items: tuple["Node", ...]


@dataclass(frozen=True)
class FieldRef:
    root: str
    path: tuple[str, ...]


@dataclass(frozen=True)
class Compare:
    op: str  # "==" | "!=" | "in"
    left: "Node"
    right: "Node"


@dataclass(frozen=True)
class And:
    operands: tuple["Node", ...]


@dataclass(frozen=True)
class Or:
    operands: tuple["Node", ...]


@dataclass(frozen=True)
class Not:
    operand: "Node"


Node = Union[Literal, ListLiteral, FieldRef, Compare, And, Or, Not]


@dataclass(frozen=True)
class _Token:
    kind: str
    value: str
    pos: int


def _tokenize(text: str) -> list[_Token]:
    tokens: list[_Token] = []
    pos = 0
    while pos < len(text):
        match = _TOKEN_RE.match(text, pos)
        if not match:
            raise ExpressionError(
                f"unexpected character {text[pos]!r} at position {pos}",
                details={"expression": text},
            )
        kind = match.lastgroup or ""
        value = match.group()
        pos = match.end()
        if kind == "WS":
            continue
        if kind == "WORD":
            lowered = value.lower()
            if lowered in _KEYWORD_OPS:
                tokens.append(_Token("OP", _KEYWORD_OPS[lowered], match.start()))
                continue
            if lowered in _CONSTANTS:
                tokens.append(_Token("CONST", lowered, match.start()))
                continue
            raise ExpressionError(
                f"unknown identifier {value!r}, field references start with '$'",
                details={"expression": text},
            )
        tokens.append(_Token(kind, value, match.start()))
    return tokens


class _Parser:
    """Recursive-descent parser: or > and > not > comparison > primary."""

    def __init__(self, text: str) -> None:
        self.text = text
        self.tokens = _tokenize(text)
        self.index = 0

    def parse(self) -> Node:
        if not self.tokens:
            raise ExpressionError("empty expression", details={"expression": self.text})
        node = self._or()
        if self.index != len(self.tokens):
            token = self.tokens[self.index]
            self._fail(f"unexpected token {token.value!r} at position {token.pos}")
        return node

    def _fail(self, message: str) -> None:
        raise ExpressionError(message, details={"expression": self.text})

    def _peek(self) -> _Token | None:
        return self.tokens[self.index] if self.index < len(self.tokens) else None

    def _accept(self, kind: str, value: str | None = None) -> _Token | None:
        token = self._peek()
        if token and token.kind == kind and (value is None or token.value == value):
            self.index += 1
            return token
        return None

    def _expect(self, kind: str) -> _Token:
        token = self._accept(kind)
        if token is None:
            self._fail(f"expected {kind.lower()} at end of expression")
        assert token is not None
        return token

    def _or(self) -> Node:
        operands = [self._and()]
        while self._accept("OP", "||"):
            operands.append(self._and())
        return operands[0] if len(operands) == 1 else Or(tuple(operands))

    def _and(self) -> Node:
        operands = [self._not()]
        while self._accept("OP", "&&"):
            operands.append(self._not())
        return operands[0] if len(operands) == 1 else And(tuple(operands))

    def _not(self) -> Node:
        if self._accept("OP", "!"):
            return Not(self._not())
        return self._comparison()

    def _comparison(self) -> Node:
        left = self._primary()
        for op in ("==", "!=", "in"):
            if self._accept("OP", op):
                return Compare(op, left, self._primary())
        return left

    def _primary(self) -> Node:
        token = self._peek()
        if token is None:
            self._fail("unexpected end of expression")
        assert token is not None
        self.index += 1

        if token.kind == "FIELD":
            root, *path = token.value[1:].split(".")
            return FieldRef(root, tuple(path))
        if token.kind == "STRING":
            body = token.value[1:-1]
            return Literal(re.sub(r"\\(.)", r"\1", body))
        if token.kind == "NUMBER":
            return Literal(float(token.value) if "." in token.value else int(token.value))
        if token.kind == "CONST":
            return Literal(_CONSTANTS[token.value])
        if token.kind == "LPAREN":
            node = self._or()
            self._expect("RPAREN")
            return node
        if token.kind == "LBRACKET":
            items: list[Node] = []
            if not self._accept("RBRACKET"):
                items.append(self._or())
                while self._accept("COMMA"):
                    items.append(self._or())
                self._expect("RBRACKET")
            return ListLiteral(tuple(items))

        self._fail(f"unexpected token {token.value!r} at position {token.pos}")
        raise AssertionError("unreachable")


def is_truthy(value: Any) -> bool:
    return bool(value)


def _lookup(node: FieldRef, variables: Mapping[str, Any]) -> Any:
    if node.root not in variables:
        raise ExpressionError(f"parameter not found: {node.root}")
    value: Any = variables[node.root]
    for key in node.path:
        if isinstance(value, Mapping):
            value = value.get(key)
        elif isinstance(value, Sequence) and not isinstance(value, str) and key.isdigit():
            idx = int(key)
            value = value[idx] if idx < len(value) else None
        else:
            return None
    return value


def evaluate_node(node: Node, variables: Mapping[str, Any]) -> Any:
    """Evaluate an AST node against ``variables``."""
    if isinstance(node, Literal):
        return node.value
    if isinstance(node, ListLiteral):
        return [evaluate_node(item, variables) for item in node.items]
    if isinstance(node, FieldRef):
        return _lookup(node, variables)
    if isinstance(node, Not):
        return not is_truthy(evaluate_node(node.operand, variables))
    if isinstance(node, And):
        return all(is_truthy(evaluate_node(op, variables)) for op in node.operands)
    if isinstance(node, Or):
        return any(is_truthy(evaluate_node(op, variables)) for op in node.operands)
    if isinstance(node, Compare):
        left = evaluate_node(node.left, variables)
        right = evaluate_node(node.right, variables)
        if node.op == "==":
            return left == right
        if node.op == "!=":
            return left != right
        if right is None:
            return False
        if isinstance(right, (list, tuple, set, dict, str)):
            try:
                return left in right
            except TypeError as exc:
                raise ExpressionError(f"invalid operand for 'in': {exc}") from exc
        raise ExpressionError(f"right operand of 'in' must be a list or string, got {type(right).__name__}")
    raise ExpressionError(f"unknown expression node: {type(node).__name__}")


@dataclass(frozen=True)
class Expression:
    """A compiled expression."""

    source: str
    root: Node

    def evaluate(self, variables: Mapping[str, Any]) -> Any:
        try:
            return evaluate_node(self.root, variables)
        except ExpressionError as exc:
            raise ExpressionError(
                f'evaluating expression "{self.source}": {exc.message}',
                details={"expression": self.source},
            ) from exc

    def is_true(self, variables: Mapping[str, Any]) -> bool:
        return is_truthy(self.evaluate(variables))

    def field_roots(self) -> set[str]:
        roots: set[str] = set()
        _collect_roots(self.root, roots)
        return roots


def _collect_roots(node: Node, roots: set[str]) -> None:
    if isinstance(node, FieldRef):
        roots.add(node.root)
    elif isinstance(node, ListLiteral):
        for item in node.items:
            _collect_roots(item, roots)
    elif isinstance(node, Compare):
        _collect_roots(node.left, roots)
        _collect_roots(node.right, roots)
    elif isinstance(node, (And, Or)):
        for op in node.operands:
            _collect_roots(op, roots)
    elif isinstance(node, Not):
        _collect_roots(node.operand, roots)


@lru_cache(maxsize=512)
def compile_expression(text: str) -> Expression:
    """Parse ``text`` into an ``Expression``.

    Raises:
        ExpressionError: if the text is not a valid expression
    """
    if not text or not text.strip():
        raise ExpressionError("empty expression", details={"expression": text})
    return Expression(source=text, root=_Parser(text).parse())


def looks_like_expression(text: str) -> bool:
    """Approver entries that reference a field are expressions, the rest are literal emails."""
    return "$" in text
