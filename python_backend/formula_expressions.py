"""
Restricted formula language for user-supplied index overrides.

Formulas are arithmetic over named per-sample variables::

    expression := term (("+" | "-") term)*
    term       := unary (("*" | "/") unary)*
    unary      := ("+" | "-") unary | power
    power      := atom ("^" unary)?
    atom       := NUMBER | NAME | NAME "(" expression ("," expression)* ")"
                | "(" expression ")"

The only callable names are the aggregates ``sum``, ``product``, ``mean``
and ``geomean``. They take an explicit argument list; an argument that
refers to a variable not bound for the sample (an absent metal) is skipped.

Formula text is untrusted. It is never handed to Python's ``eval``: it is
tokenized and parsed into a small tree, checked against a whitelist of
variable names and size limits at compile time, and walked under a step
budget at evaluation time. Every node is visited at most once, so the budget
is the node count of the tree and the outcome never depends on timing.
"""
import math
import re
import logging
from dataclasses import dataclass
from typing import Callable, Dict, FrozenSet, List, Mapping, Optional, Tuple, Union

from engine_errors import EvalError, ParseError
from standard_formulas import arithmetic_mean, geometric_mean, product, total

logger = logging.getLogger(__name__)

MAX_EXPRESSION_LENGTH = 4096
MAX_DEPTH = 64
MAX_NODES = 512
# A walk visits each node at most once
MAX_STEPS = MAX_NODES

# Typographic operators as they appear in the published formulas
_OPERATOR_ALIASES = {'×': '*', '·': '*', '∙': '*', '−': '-', '÷': '/'}

_TOKEN_RE = re.compile(r"""
    (?P<space>\s+)
  | (?P<number>(?:\d+(?:\.\d*)?|\.\d+)(?:[eE][+-]?\d+)?)
  | (?P<name>[A-Za-z_][A-Za-z0-9_]*)
  | (?P<op>[-+*/^])
  | (?P<lparen>\()
  | (?P<rparen>\))
  | (?P<comma>,)
""", re.VERBOSE)


@dataclass(frozen=True)
class Token:
    kind: str
    text: str
    position: int


@dataclass(frozen=True)
class Literal:
    value: float


@dataclass(frozen=True)
class Variable:
    name: str
    position: int


@dataclass(frozen=True)
class Negate:
    operand: 'Node'


@dataclass(frozen=True)
class BinaryOp:
    op: str
    left: 'Node'
    right: 'Node'


@dataclass(frozen=True)
class Aggregate:
    function: str
    args: Tuple['Node', ...]
    position: int


Node = Union[Literal, Variable, Negate, BinaryOp, Aggregate]


def _geomean(values: List[float]) -> float:
    result = geometric_mean(values)
    if result is None:
        raise EvalError('geometric mean of a negative factor')
    return result


AGGREGATES: Dict[str, Callable[[List[float]], float]] = {
    'sum': total,
    'product': product,
    'mean': arithmetic_mean,
    'geomean': _geomean,
}


@dataclass(frozen=True)
class CompiledFormula:
    expression: str
    tree: Node
    variables: FrozenSet[str]
    node_count: int
    depth: int


def tokenize(expression: str) -> List[Token]:
    """Split formula text into tokens; unknown characters are a ParseError"""
    text = ''.join(_OPERATOR_ALIASES.get(ch, ch) for ch in expression)
    tokens = []
    pos = 0
    while pos < len(text):
        match = _TOKEN_RE.match(text, pos)
        if match is None:
            raise ParseError(pos, f"unexpected character {text[pos]!r}")
        kind = match.lastgroup
        if kind != 'space':
            tokens.append(Token(kind, match.group(), pos))
        pos = match.end()
    tokens.append(Token('end', '', len(text)))
    return tokens


class _Parser:
    """Recursive-descent parser producing the expression tree"""

    def __init__(self, tokens: List[Token], declared: FrozenSet[str]):
        self.tokens = tokens
        self.index = 0
        self.declared = declared
        self.depth = 0
        self.nodes = 0
        self.variables = set()

    @property
    def current(self) -> Token:
        return self.tokens[self.index]

    def _advance(self) -> Token:
        token = self.tokens[self.index]
        self.index += 1
        return token

    def _expect(self, kind: str, reason: str) -> Token:
        if self.current.kind != kind:
            raise ParseError(self.current.position, reason)
        return self._advance()

    def _node(self, node: Node) -> Node:
        self.nodes += 1
        if self.nodes > MAX_NODES:
            raise ParseError(self.current.position, f"formula exceeds {MAX_NODES} nodes")
        return node

    def parse(self) -> Node:
        if self.current.kind == 'end':
            raise ParseError(0, 'empty expression')
        tree = self.expression()
        if self.current.kind != 'end':
            raise ParseError(self.current.position, f"unexpected token {self.current.text!r}")
        return tree

    def expression(self) -> Node:
        node = self.term()
        while self.current.kind == 'op' and self.current.text in '+-':
            op = self._advance().text
            node = self._node(BinaryOp(op, node, self.term()))
        return node

    def term(self) -> Node:
        node = self.unary()
        while self.current.kind == 'op' and self.current.text in '*/':
            op = self._advance().text
            node = self._node(BinaryOp(op, node, self.unary()))
        return node

    def unary(self) -> Node:
        self.depth += 1
        if self.depth > MAX_DEPTH:
            raise ParseError(self.current.position, f"formula nested deeper than {MAX_DEPTH}")
        try:
            if self.current.kind == 'op' and self.current.text in '+-':
                op = self._advance().text
                operand = self.unary()
                return operand if op == '+' else self._node(Negate(operand))
            return self.power()
        finally:
            self.depth -= 1

    def power(self) -> Node:
        base = self.atom()
        if self.current.kind == 'op' and self.current.text == '^':
            self._advance()
            return self._node(BinaryOp('^', base, self.unary()))
        return base

    def atom(self) -> Node:
        token = self.current
        if token.kind == 'number':
            self._advance()
            return self._node(Literal(float(token.text)))
        if token.kind == 'name':
            self._advance()
            if self.current.kind == 'lparen':
                return self.call(token)
            if token.text not in self.declared:
                raise ParseError(token.position, 'undeclared variable', token=token.text)
            self.variables.add(token.text)
            return self._node(Variable(token.text, token.position))
        if token.kind == 'lparen':
            self._advance()
            node = self.expression()
            self._expect('rparen', "expected ')'")
            return node
        if token.kind == 'end':
            raise ParseError(token.position, 'unexpected end of expression')
        raise ParseError(token.position, f"unexpected token {token.text!r}")

    def call(self, name: Token) -> Node:
        if name.text not in AGGREGATES:
            raise ParseError(name.position, 'unknown function', token=name.text)
        self._expect('lparen', "expected '('")
        if self.current.kind == 'rparen':
            raise ParseError(self.current.position, f"{name.text}() needs at least one argument")
        args = [self.expression()]
        while self.current.kind == 'comma':
            self._advance()
            args.append(self.expression())
        self._expect('rparen', "expected ',' or ')'")
        return self._node(Aggregate(name.text, tuple(args), name.position))


def _children(node: Node) -> Tuple[Node, ...]:
    if isinstance(node, BinaryOp):
        return (node.left, node.right)
    if isinstance(node, Negate):
        return (node.operand,)
    if isinstance(node, Aggregate):
        return node.args
    return ()


def tree_depth(tree: Node) -> int:
    depth = 0
    stack = [(tree, 1)]
    while stack:
        node, level = stack.pop()
        depth = max(depth, level)
        stack.extend((child, level + 1) for child in _children(node))
    return depth


def compile_formula(expression: str, declared_variables: FrozenSet[str]) -> CompiledFormula:
    """Parse formula text and check it against the declared variables.

    Raises ParseError with the offending position for syntax errors,
    undeclared variables, unknown functions and formulas over the size
    limits.
    """
    if not isinstance(expression, str):
        raise ParseError(0, 'formula must be text')
    if len(expression) > MAX_EXPRESSION_LENGTH:
        raise ParseError(MAX_EXPRESSION_LENGTH, f"formula longer than {MAX_EXPRESSION_LENGTH} characters")

    parser = _Parser(tokenize(expression), frozenset(declared_variables))
    tree = parser.parse()
    depth = tree_depth(tree)
    if depth > MAX_DEPTH:
        raise ParseError(0, f"formula nested deeper than {MAX_DEPTH}")
    return CompiledFormula(
        expression=expression,
        tree=tree,
        variables=frozenset(parser.variables),
        node_count=parser.nodes,
        depth=depth,
    )


class _UnboundVariable(EvalError):
    pass


class _Evaluation:
    """One bounded walk of a compiled tree over one environment"""

    def __init__(self, environment: Mapping[str, float], max_steps: int):
        self.environment = environment
        self.max_steps = max_steps
        self.steps = 0

    def _tick(self):
        self.steps += 1
        if self.steps > self.max_steps:
            raise EvalError(f"evaluation exceeded {self.max_steps} steps")

    def run(self, node: Node) -> float:
        self._tick()
        if isinstance(node, Literal):
            return node.value
        if isinstance(node, Variable):
            value = self.environment.get(node.name)
            if value is None:
                raise _UnboundVariable(f"{node.name} is not available for this sample")
            return float(value)
        if isinstance(node, Negate):
            return -self.run(node.operand)
        if isinstance(node, BinaryOp):
            return self._binary(node.op, self.run(node.left), self.run(node.right))
        if isinstance(node, Aggregate):
            return self._aggregate(node)
        raise TypeError(f"Unexpected node {node!r}")

    def _binary(self, op: str, left: float, right: float) -> float:
        if op == '+':
            result = left + right
        elif op == '-':
            result = left - right
        elif op == '*':
            result = left * right
        elif op == '/':
            if right == 0:
                raise EvalError('division by zero')
            result = left / right
        else:
            if left == 0 and right < 0:
                raise EvalError('zero raised to a negative power')
            try:
                result = left ** right
            except (OverflowError, ZeroDivisionError) as e:
                raise EvalError(f"power failed: {e}")
            if isinstance(result, complex):
                raise EvalError('negative base with fractional exponent')
        if not math.isfinite(result):
            raise EvalError(f"non-finite result for '{op}'")
        return result

    def _aggregate(self, node: Aggregate) -> float:
        values = []
        for arg in node.args:
            try:
                values.append(self.run(arg))
            except _UnboundVariable:
                continue
        if not values:
            raise EvalError(f"{node.function}() has no applicable arguments")
        result = AGGREGATES[node.function](values)
        if not math.isfinite(result):
            raise EvalError(f"non-finite result for {node.function}()")
        return result


def evaluate(compiled: CompiledFormula,
             environment: Mapping[str, float],
             max_steps: Optional[int] = None) -> float:
    """Evaluate a compiled formula; every failure is raised as EvalError.

    The step budget defaults to the node count of the formula.
    """
    if max_steps is None:
        max_steps = min(compiled.node_count, MAX_STEPS)
    try:
        result = _Evaluation(environment, max_steps).run(compiled.tree)
    except _UnboundVariable as e:
        raise EvalError(str(e))
    if not math.isfinite(result):
        raise EvalError('non-finite result')
    return result


def evaluate_or_none(compiled: CompiledFormula, environment: Mapping[str, float]) -> Optional[float]:
    """Evaluate, turning EvalError into None (not computable)"""
    try:
        return evaluate(compiled, environment)
    except EvalError as e:
        logger.debug(f"Formula '{compiled.expression[:60]}' not computable: {e}")
        return None
