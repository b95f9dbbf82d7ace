"""Condition expressions over named selections.

Grammar (keywords are case-insensitive)::

    expr      := and_expr ("or" and_expr)*
    and_expr  := not_expr ("and" not_expr)*
    not_expr  := "not" not_expr | primary
    primary   := "(" expr ")" | aggregate | NAME
    aggregate := ("all" | NUMBER) "of" ("them" | PATTERN)

``PATTERN`` is a selection name that may end in ``*``. Parsing produces a
small expression tree; evaluation substitutes each leaf with the selection's
boolean result and also reports which selections supported the outcome.
"""

import re
from dataclasses import dataclass
from fnmatch import fnmatchcase

_TOKEN_RE = re.compile(r"\(|\)|[^\s()]+")

Outcome = tuple[bool, frozenset[str]]
_FALSE: Outcome = (False, frozenset())


class ConditionSyntaxError(ValueError):
    """Raised when a condition string cannot be parsed."""


class Node:
    """Base expression node."""

    def evaluate(self, results: dict[str, bool]) -> Outcome:
        raise NotImplementedError

    def names(self) -> set[str]:
        """Selection names referenced directly by this expression."""
        return set()


@dataclass(frozen=True)
class Name(Node):
    name: str

    def evaluate(self, results: dict[str, bool]) -> Outcome:
        if results.get(self.name, False):
            return True, frozenset({self.name})
        return _FALSE

    def names(self) -> set[str]:
        return {self.name}


@dataclass(frozen=True)
class Not(Node):
    operand: Node

    def evaluate(self, results: dict[str, bool]) -> Outcome:
        value, _ = self.operand.evaluate(results)
        return (not value), frozenset()

    def names(self) -> set[str]:
        return self.operand.names()


@dataclass(frozen=True)
class And(Node):
    left: Node
    right: Node

    def evaluate(self, results: dict[str, bool]) -> Outcome:
        left, left_names = self.left.evaluate(results)
        if not left:
            return _FALSE
        right, right_names = self.right.evaluate(results)
        if not right:
            return _FALSE
        return True, left_names | right_names

    def names(self) -> set[str]:
        return self.left.names() | self.right.names()


@dataclass(frozen=True)
class Or(Node):
    left: Node
    right: Node

    def evaluate(self, results: dict[str, bool]) -> Outcome:
        # The first satisfied branch is the one credited with the match
        left = self.left.evaluate(results)
        if left[0]:
            return left
        return self.right.evaluate(results)

    def names(self) -> set[str]:
        return self.left.names() | self.right.names()


@dataclass(frozen=True)
class OfPattern(Node):
    """``N of pattern`` / ``all of pattern``; ``count`` of None means all."""
    count: int | None
    pattern: str

    def _members(self, results: dict[str, bool]) -> list[str]:
        if self.pattern == "them":
            return list(results)
        return [name for name in results if fnmatchcase(name, self.pattern)]

    def evaluate(self, results: dict[str, bool]) -> Outcome:
        members = self._members(results)
        if not members:
            return _FALSE
        hits = frozenset(name for name in members if results[name])
        needed = len(members) if self.count is None else self.count
        if len(hits) >= needed:
            return True, hits
        return _FALSE


def tokenize(condition: str) -> list[str]:
    return _TOKEN_RE.findall(condition)


class _Parser:
    def __init__(self, tokens: list[str]):
        self.tokens = tokens
        self.pos = 0

    def peek(self) -> str | None:
        return self.tokens[self.pos] if self.pos < len(self.tokens) else None

    def peek_keyword(self, offset: int = 0) -> str | None:
        index = self.pos + offset
        return self.tokens[index].lower() if index < len(self.tokens) else None

    def consume(self) -> str:
        token = self.peek()
        if token is None:
            raise ConditionSyntaxError("unexpected end of condition")
        self.pos += 1
        return token

    def parse(self) -> Node:
        if not self.tokens:
            raise ConditionSyntaxError("empty condition")
        node = self.parse_or()
        if self.peek() is not None:
            raise ConditionSyntaxError(f"unexpected token {self.peek()!r}")
        return node

    def parse_or(self) -> Node:
        node = self.parse_and()
        while self.peek_keyword() == "or":
            self.consume()
            node = Or(node, self.parse_and())
        return node

    def parse_and(self) -> Node:
        node = self.parse_not()
        while self.peek_keyword() == "and":
            self.consume()
            node = And(node, self.parse_not())
        return node

    def parse_not(self) -> Node:
        if self.peek_keyword() == "not":
            self.consume()
            return Not(self.parse_not())
        return self.parse_primary()

    def parse_primary(self) -> Node:
        token = self.consume()
        if token == "(":
            node = self.parse_or()
            if self.peek() != ")":
                raise ConditionSyntaxError("missing closing parenthesis")
            self.consume()
            return node
        if token == ")":
            raise ConditionSyntaxError("unexpected ')'")

        lowered = token.lower()
        if (lowered == "all" or lowered.isdigit()) and self.peek_keyword() == "of":
            self.consume()
            target = self.consume()
            if target in ("(", ")"):
                raise ConditionSyntaxError(f"invalid aggregation target {target!r}")
            count = None if lowered == "all" else int(lowered)
            pattern = "them" if target.lower() == "them" else target
            return OfPattern(count, pattern)

        if lowered in ("and", "or", "of"):
            raise ConditionSyntaxError(f"unexpected operator {token!r}")
        return Name(token)


def parse_condition(condition: str) -> Node:
    """Parse a condition string into an expression tree."""
    return _Parser(tokenize(condition)).parse()


def evaluate_condition(condition: str, results: dict[str, bool]) -> Outcome:
    """
    Parse and evaluate ``condition`` against per-selection results.

    Unknown selection names evaluate to False.

    Returns:
        (matched, names of the selections that supported the match)
    """
    return parse_condition(condition).evaluate(results)
