"""
Sigma condition expressions.

Grammar (keywords are case-insensitive):

    expr       := term (("and" | "or") term)*
    term       := "not" term | "(" expr ")" | quantifier | identifier
    quantifier := ("all" "of" | <N> "of") pattern
    pattern    := identifier | identifier "*" | "them"

`and` and `or` share a single precedence level and fold strictly left to
right, so `a or b and c` means `(a or b) and c`. Existing rule corpora are
written against that reading; do not "fix" it into standard precedence.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Callable, Dict, Iterator, List, Mapping, Optional, Sequence, Tuple

from detection.field_matcher import match_selection, wildcard_to_regex
from detection.rule_model import RESERVED_DETECTION_KEYS, Detection
from utils.errors import ConditionSyntaxError

_TOKEN_RE = re.compile(r"(?P<lparen>\()|(?P<rparen>\))|(?P<word>[A-Za-z0-9_.*?\-]+)|(?P<space>\s+)|(?P<bad>.)")

_KEYWORDS = ("and", "or", "not", "of", "all")


@dataclass(frozen=True)
class Token:
    kind: str  # "(" | ")" | "and" | "or" | "not" | "of" | "all" | "number" | "name"
    text: str
    pos: int


def tokenize(condition: str) -> List[Token]:
    tokens: List[Token] = []
    for match in _TOKEN_RE.finditer(condition):
        kind = match.lastgroup
        text = match.group(0)
        if kind == "space":
            continue
        if kind == "bad":
            raise ConditionSyntaxError(f"Unexpected character {text!r} at position {match.start()}")
        if kind == "lparen":
            tokens.append(Token("(", text, match.start()))
        elif kind == "rparen":
            tokens.append(Token(")", text, match.start()))
        elif text.lower() in _KEYWORDS:
            tokens.append(Token(text.lower(), text, match.start()))
        elif text.isdigit():
            tokens.append(Token("number", text, match.start()))
        else:
            tokens.append(Token("name", text, match.start()))
    return tokens


class EvaluationContext:
    """Resolves selection names to booleans, caching each selection's result."""

    def __init__(self, names: Sequence[str], evaluate_selection: Callable[[str], bool]):
        self.names = list(names)
        self._evaluate_selection = evaluate_selection
        self._lower_names: Dict[str, str] = {}
        for name in self.names:
            self._lower_names.setdefault(name.lower(), name)
        self._cache: Dict[str, bool] = {}

    def lookup(self, identifier: str) -> Optional[str]:
        if identifier in self.names:
            return identifier
        return self._lower_names.get(identifier.lower())

    def resolve(self, identifier: str) -> bool:
        name = self.lookup(identifier)
        if name is None:
            # Unknown selections never match; a typo must not raise.
            return False
        if name not in self._cache:
            self._cache[name] = self._evaluate_selection(name)
        return self._cache[name]


def select_names(pattern: str, names: Sequence[str]) -> List[str]:
    candidates = [name for name in names if name not in RESERVED_DETECTION_KEYS]
    if pattern.lower() == "them":
        return candidates
    if "*" in pattern:
        regex = re.compile(wildcard_to_regex(pattern))
        return [name for name in candidates if regex.match(name)]
    return [name for name in candidates if name == pattern]


class Node:
    def evaluate(self, ctx: EvaluationContext) -> bool:
        raise NotImplementedError

    def children(self) -> Tuple["Node", ...]:
        return ()


@dataclass(frozen=True)
class Identifier(Node):
    name: str

    def evaluate(self, ctx: EvaluationContext) -> bool:
        return ctx.resolve(self.name)


@dataclass(frozen=True)
class Not(Node):
    operand: Node

    def evaluate(self, ctx: EvaluationContext) -> bool:
        return not self.operand.evaluate(ctx)

    def children(self) -> Tuple[Node, ...]:
        return (self.operand,)


@dataclass(frozen=True)
class And(Node):
    left: Node
    right: Node

    def evaluate(self, ctx: EvaluationContext) -> bool:
        return self.left.evaluate(ctx) and self.right.evaluate(ctx)

    def children(self) -> Tuple[Node, ...]:
        return (self.left, self.right)


@dataclass(frozen=True)
class Or(Node):
    left: Node
    right: Node

    def evaluate(self, ctx: EvaluationContext) -> bool:
        return self.left.evaluate(ctx) or self.right.evaluate(ctx)

    def children(self) -> Tuple[Node, ...]:
        return (self.left, self.right)


@dataclass(frozen=True)
class Quantifier(Node):
    """`all of <pattern>` when count is None, otherwise `<count> of <pattern>`."""

    pattern: str
    count: Optional[int] = None

    def evaluate(self, ctx: EvaluationContext) -> bool:
        names = select_names(self.pattern, ctx.names)
        if not names:
            return False
        if self.count is None:
            return all(ctx.resolve(name) for name in names)
        if self.count <= 0:
            return True
        matched = 0
        for name in names:
            if ctx.resolve(name):
                matched += 1
                if matched >= self.count:
                    return True
        return False


class _Parser:
    def __init__(self, tokens: List[Token]):
        self.tokens = tokens
        self.pos = 0

    def _peek(self) -> Optional[Token]:
        if self.pos >= len(self.tokens):
            return None
        return self.tokens[self.pos]

    def _consume(self) -> Optional[Token]:
        tok = self._peek()
        if tok is not None:
            self.pos += 1
        return tok

    def _expect(self, kind: str) -> Token:
        tok = self._consume()
        if tok is None:
            raise ConditionSyntaxError(f"Expected {kind!r}, got end of condition")
        if tok.kind != kind:
            raise ConditionSyntaxError(f"Expected {kind!r}, got {tok.text!r} at position {tok.pos}")
        return tok

    def parse(self) -> Node:
        if not self.tokens:
            raise ConditionSyntaxError("Empty condition")
        node = self._parse_expr()
        tok = self._peek()
        if tok is not None:
            raise ConditionSyntaxError(f"Unexpected {tok.text!r} at position {tok.pos}")
        return node

    def _parse_expr(self) -> Node:
        node = self._parse_term()
        while True:
            tok = self._peek()
            if tok is None or tok.kind not in ("and", "or"):
                return node
            self._consume()
            rhs = self._parse_term()
            node = And(node, rhs) if tok.kind == "and" else Or(node, rhs)

    def _parse_term(self) -> Node:
        tok = self._consume()
        if tok is None:
            raise ConditionSyntaxError("Unexpected end of condition")

        if tok.kind == "not":
            return Not(self._parse_term())

        if tok.kind == "(":
            node = self._parse_expr()
            # An unclosed group at the very end of the condition is accepted.
            if self._peek() is not None:
                self._expect(")")
            return node

        if tok.kind == "all":
            self._expect("of")
            return Quantifier(self._parse_pattern())

        if tok.kind == "number":
            self._expect("of")
            return Quantifier(self._parse_pattern(), count=int(tok.text))

        if tok.kind == "name":
            return Identifier(tok.text)

        raise ConditionSyntaxError(f"Unexpected {tok.text!r} at position {tok.pos}")

    def _parse_pattern(self) -> str:
        tok = self._consume()
        if tok is None:
            raise ConditionSyntaxError("Missing pattern after 'of'")
        if tok.kind != "name":
            raise ConditionSyntaxError(f"Invalid pattern {tok.text!r} at position {tok.pos}")
        return tok.text


def parse_condition(condition: str) -> Node:
    return _Parser(tokenize(condition)).parse()


def iter_nodes(node: Node) -> Iterator[Node]:
    yield node
    for child in node.children():
        yield from iter_nodes(child)


def referenced_identifiers(node: Node) -> List[str]:
    return [n.name for n in iter_nodes(node) if isinstance(n, Identifier)]


def evaluate_detection(
    detection: Detection,
    record: Mapping[str, object],
    case_sensitive: bool = False,
    condition: Optional[Node] = None,
) -> bool:
    """
    Evaluate a rule's detection block against a flattened record.

    `condition` may carry an already parsed tree; otherwise the condition
    string is parsed on every call.
    """
    tree = condition if condition is not None else parse_condition(detection.condition)

    def evaluate_selection(name: str) -> bool:
        return match_selection(record, detection.selections[name], case_sensitive)

    ctx = EvaluationContext(detection.selection_names(), evaluate_selection)
    return tree.evaluate(ctx)
