"""
Predicate expression language for bindings and playbook step conditions.

Expressions are tokenized and parsed into an immutable AST by a small
recursive-descent parser, then evaluated by walking the tree. Nothing is ever
passed to eval() and no attribute of a Python object is ever looked up, so an
operator-supplied predicate can only read the mapping it is evaluated against.

Grammar:
    expr       := or_expr
    or_expr    := and_expr ("||" and_expr)*
    and_expr   := unary ("&&" unary)*
    unary      := "!" unary | comparison
    comparison := operand (("==" | "!=") operand)?
    operand    := "(" expr ")" | literal | path
    path       := IDENT ("." IDENT)* ["." "contains" "(" operand ")"] ["??" literal]
    literal    := STRING | NUMBER | "true" | "false" | "null"

Examples:
    severity == 'high'
    tags.contains('ransomware') && !(source == 'test')
    host.criticality ?? 'low' != 'low'
"""

import logging
import re
from collections.abc import Mapping
from dataclasses import dataclass
from functools import lru_cache
from typing import Any

from vigil.core.exceptions import PredicateEvaluationError, PredicateSyntaxError
from vigil.schemas.event import Event

logger = logging.getLogger(__name__)

MAX_PREDICATE_LENGTH = 2048
MAX_NESTING_DEPTH = 32

_KEYWORDS = {"true": True, "false": False, "null": None}

_TOKEN_RE = re.compile(
    r"""
    (?P<ws>\s+)
  | (?P<number>-?\d+(?:\.\d+)?)
  | (?P<ident>[A-Za-z_][A-Za-z0-9_]*)
  | (?P<op>==|!=|&&|\|\||\?\?|[!().])
  | (?P<string>'|")
    """,
    re.VERBOSE,
)

_ESCAPES = {"n": "\n", "t": "\t", "r": "\r", "\\": "\\", "'": "'", '"': '"'}


@dataclass(frozen=True)
class Token:
    kind: str
    value: Any
    position: int


# AST nodes


@dataclass(frozen=True)
class Literal:
    value: Any


@dataclass(frozen=True)
class Path:
    segments: tuple[str, ...]
    default: Any = None
    has_default: bool = False

    @property
    def dotted(self) -> str:
        return ".".join(self.segments)


@dataclass(frozen=True)
class Contains:
    target: Path
    item: Any


@dataclass(frozen=True)
class Compare:
    op: str
    left: Any
    right: Any


@dataclass(frozen=True)
class Not:
    operand: Any


@dataclass(frozen=True)
class And:
    left: Any
    right: Any


@dataclass(frozen=True)
class Or:
    left: Any
    right: Any


def tokenize(predicate: str) -> list[Token]:
    """Split a predicate into tokens, ending with an ``eof`` token."""
    tokens: list[Token] = []
    pos = 0
    length = len(predicate)

    while pos < length:
        match = _TOKEN_RE.match(predicate, pos)
        if not match:
            raise PredicateSyntaxError(
                f"Unexpected character {predicate[pos]!r}", predicate, pos
            )

        kind = match.lastgroup
        text = match.group()

        if kind == "ws":
            pos = match.end()
        elif kind == "number":
            value = float(text) if "." in text else int(text)
            tokens.append(Token("literal", value, pos))
            pos = match.end()
        elif kind == "ident":
            if text in _KEYWORDS:
                tokens.append(Token("literal", _KEYWORDS[text], pos))
            else:
                tokens.append(Token("ident", text, pos))
            pos = match.end()
        elif kind == "op":
            tokens.append(Token(text, text, pos))
            pos = match.end()
        else:
            value, end = _read_string(predicate, pos)
            tokens.append(Token("literal", value, pos))
            pos = end

    tokens.append(Token("eof", None, length))
    return tokens


def _read_string(predicate: str, start: int) -> tuple[str, int]:
    """Read a quoted string starting at ``start``. Returns (value, end index)."""
    quote = predicate[start]
    chars: list[str] = []
    pos = start + 1

    while pos < len(predicate):
        char = predicate[pos]
        if char == "\\":
            if pos + 1 >= len(predicate):
                break
            escaped = predicate[pos + 1]
            chars.append(_ESCAPES.get(escaped, escaped))
            pos += 2
            continue
        if char == quote:
            return "".join(chars), pos + 1
        chars.append(char)
        pos += 1

    raise PredicateSyntaxError("Unterminated string literal", predicate, start)


class _Parser:
    """Recursive-descent parser over a token list."""

    def __init__(self, predicate: str, tokens: list[Token]):
        self.predicate = predicate
        self.tokens = tokens
        self.index = 0
        self.depth = 0

    @property
    def current(self) -> Token:
        return self.tokens[self.index]

    def advance(self) -> Token:
        token = self.tokens[self.index]
        if token.kind != "eof":
            self.index += 1
        return token

    def expect(self, kind: str, what: str) -> Token:
        token = self.current
        if token.kind != kind:
            raise self.error(f"Expected {what}", token)
        return self.advance()

    def error(self, message: str, token: Token | None = None) -> PredicateSyntaxError:
        token = token or self.current
        if token.kind == "eof":
            message = f"{message}, got end of expression"
        else:
            message = f"{message}, got {token.value!r}"
        return PredicateSyntaxError(message, self.predicate, token.position)

    def parse(self):
        node = self.parse_or()
        if self.current.kind != "eof":
            raise self.error("Unexpected token")
        return node

    def parse_or(self):
        node = self.parse_and()
        while self.current.kind == "||":
            self.advance()
            node = Or(node, self.parse_and())
        return node

    def parse_and(self):
        node = self.parse_unary()
        while self.current.kind == "&&":
            self.advance()
            node = And(node, self.parse_unary())
        return node

    def parse_unary(self):
        if self.current.kind == "!":
            self.advance()
            with _Nesting(self):
                return Not(self.parse_unary())
        return self.parse_comparison()

    def parse_comparison(self):
        left = self.parse_operand()
        if self.current.kind in ("==", "!="):
            op = self.advance().kind
            right = self.parse_operand()
            return Compare(op, left, right)
        return left

    def parse_operand(self):
        token = self.current

        if token.kind == "(":
            self.advance()
            with _Nesting(self):
                node = self.parse_or()
            self.expect(")", "')'")
            return node

        if token.kind == "literal":
            self.advance()
            return Literal(token.value)

        if token.kind == "ident":
            return self.parse_path()

        raise self.error("Expected a field, literal or '('")

    def parse_path(self):
        segments = [self.advance().value]

        while self.current.kind == ".":
            self.advance()
            name = self.expect("ident", "field name after '.'").value
            if name == "contains" and self.current.kind == "(":
                self.advance()
                with _Nesting(self):
                    item = self.parse_operand()
                self.expect(")", "')' to close contains(")
                return Contains(Path(tuple(segments)), item)
            segments.append(name)

        if self.current.kind == "??":
            self.advance()
            default = self.expect("literal", "literal default after '??'")
            return Path(tuple(segments), default.value, True)

        return Path(tuple(segments))


class _Nesting:
    """Tracks parser depth so deeply nested input is rejected, not recursed."""

    def __init__(self, parser: _Parser):
        self.parser = parser

    def __enter__(self):
        self.parser.depth += 1
        if self.parser.depth > MAX_NESTING_DEPTH:
            raise self.parser.error(f"Expression nested deeper than {MAX_NESTING_DEPTH} levels")

    def __exit__(self, exc_type, exc, tb):
        self.parser.depth -= 1
        return False


@lru_cache(maxsize=1024)
def parse(predicate: str):
    """
    Parse a predicate into its AST.

    Raises:
        PredicateSyntaxError: If the predicate is empty, too long, or malformed
    """
    if len(predicate) > MAX_PREDICATE_LENGTH:
        raise PredicateSyntaxError(
            f"Predicate exceeds {MAX_PREDICATE_LENGTH} characters", predicate[:64] + "...", None
        )
    if not predicate.strip():
        raise PredicateSyntaxError("Predicate is empty", predicate, 0)

    return _Parser(predicate, tokenize(predicate)).parse()


def validate(predicate: str | None) -> None:
    """Authoring-time check. A missing or blank predicate is valid (matches everything)."""
    if predicate is None or not predicate.strip():
        return
    parse(predicate)


def evaluate(predicate: str | None, scope: Event | Mapping[str, Any]) -> bool:
    """
    Evaluate a predicate against an event or a plain mapping.

    Events resolve paths against their ``data`` first, then their top-level
    attributes. A comparison, containment test or bare path over a field
    that is absent and has no ``??`` default is a false clause; the rest of
    the expression is still evaluated, so operand order never matters.

    Args:
        predicate: Expression text; None or blank always matches
        scope: Event being matched, or a namespace mapping

    Returns:
        Whether the predicate holds

    Raises:
        PredicateSyntaxError: If the predicate is malformed
    """
    if predicate is None or not predicate.strip():
        return True

    node = parse(predicate)
    values = scope.field_scope() if isinstance(scope, Event) else scope
    return _clause(node, values)


def _clause(node, scope: Mapping[str, Any]) -> bool:
    if isinstance(node, (Path, Compare, Contains)):
        try:
            return _truthy(_eval(node, scope))
        except PredicateEvaluationError as e:
            logger.debug(f"Clause is false: {e}")
            return False
    return _truthy(_eval(node, scope))


def _eval(node, scope: Mapping[str, Any]) -> Any:
    if isinstance(node, Literal):
        return node.value

    if isinstance(node, Path):
        return resolve_path(scope, node.segments, node.default, node.has_default)

    if isinstance(node, Compare):
        equal = _equals(_eval(node.left, scope), _eval(node.right, scope))
        return equal if node.op == "==" else not equal

    if isinstance(node, Contains):
        return _contains(_eval(node.target, scope), _eval(node.item, scope))

    if isinstance(node, Not):
        return not _clause(node.operand, scope)

    if isinstance(node, And):
        return _clause(node.left, scope) and _clause(node.right, scope)

    if isinstance(node, Or):
        return _clause(node.left, scope) or _clause(node.right, scope)

    raise TypeError(f"Unknown predicate node {type(node).__name__}")


_MISSING = object()


def resolve_path(
    scope: Mapping[str, Any],
    segments: tuple[str, ...] | list[str],
    default: Any = None,
    has_default: bool = False,
) -> Any:
    """
    Walk nested mappings along ``segments``.

    Raises:
        PredicateEvaluationError: If a segment is missing and no default applies
    """
    current: Any = scope
    for segment in segments:
        if isinstance(current, Mapping):
            current = current.get(segment, _MISSING)
        else:
            current = _MISSING
        if current is _MISSING:
            if has_default:
                return default
            raise PredicateEvaluationError(".".join(segments))
    return current


def _equals(left: Any, right: Any) -> bool:
    # True == 1 in Python; predicates compare booleans only with booleans
    if isinstance(left, bool) != isinstance(right, bool):
        return False
    return left == right


def _contains(container: Any, item: Any) -> bool:
    if isinstance(container, str):
        return isinstance(item, str) and item in container
    if isinstance(container, Mapping):
        return isinstance(item, str) and item in container
    if isinstance(container, (list, tuple, set, frozenset)):
        return any(_equals(member, item) for member in container)
    return False


def _truthy(value: Any) -> bool:
    return bool(value)
