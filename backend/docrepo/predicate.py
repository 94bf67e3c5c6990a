"""Composable predicate expressions over entity fields.

A predicate is built by tracing a lambda against a placeholder:

    adults = new_query(lambda x: x.age >= 18)
    active_adults = adults.and_(lambda x: x.is_active == True)

Tracing records an expression tree instead of evaluating anything. The tree
can be evaluated in-process (``predicate(entity)``) or compiled into a MongoDB
filter by ``docrepo.query``. Combining two predicates rewrites each operand's
placeholder to a fresh shared one and wraps both under a new node, so the
operands stay valid and reusable.

Python's ``and``/``or``/``not`` cannot be overloaded; use ``&``, ``|`` and
``~`` inside lambdas.
"""

from __future__ import annotations

import itertools
import operator
from collections.abc import Mapping
from dataclasses import dataclass, fields, replace
from typing import Any, Callable, Generic, TypeVar, Union

T = TypeVar("T")

_param_ids = itertools.count()


# ============================================================================
# Expression tree
# ============================================================================


class Node:
    """Base class for expression tree nodes."""

    __slots__ = ()


@dataclass(frozen=True)
class Param(Node):
    """Placeholder for "the current entity"."""

    name: str


@dataclass(frozen=True)
class Member(Node):
    target: Node
    name: str


@dataclass(frozen=True)
class Literal(Node):
    value: Any


@dataclass(frozen=True)
class Compare(Node):
    op: str  # eq, ne, lt, le, gt, ge
    left: Node
    right: Node


@dataclass(frozen=True)
class Logical(Node):
    op: str  # and, or
    left: Node
    right: Node


@dataclass(frozen=True)
class Not(Node):
    operand: Node


@dataclass(frozen=True)
class Call(Node):
    method: str  # lower, upper, contains, startswith, endswith, is_in, has
    target: Node
    args: tuple = ()


def fresh_param() -> Param:
    return Param(f"x{next(_param_ids)}")


def substitute(node: Any, old: Param, new: Param) -> Any:
    """Return ``node`` with every reference to ``old`` replaced by ``new``.

    Nodes are immutable; untouched subtrees are shared with the input.
    """
    if isinstance(node, tuple):
        items = tuple(substitute(item, old, new) for item in node)
        return node if all(a is b for a, b in zip(items, node)) else items
    if not isinstance(node, Node):
        return node
    if isinstance(node, Param):
        return new if node == old else node
    if isinstance(node, Literal):
        return node

    changes = {}
    for f in fields(node):
        value = getattr(node, f.name)
        rewritten = substitute(value, old, new)
        if rewritten is not value:
            changes[f.name] = rewritten
    return replace(node, **changes) if changes else node


def references(node: Any, param: Param) -> bool:
    """True if ``param`` occurs anywhere under ``node``."""
    if isinstance(node, tuple):
        return any(references(item, param) for item in node)
    if isinstance(node, Param):
        return node == param
    if not isinstance(node, Node) or isinstance(node, Literal):
        return False
    return any(references(getattr(node, f.name), param) for f in fields(node))


def render(node: Any) -> str:
    if isinstance(node, Param):
        return node.name
    if isinstance(node, Member):
        return f"{render(node.target)}.{node.name}"
    if isinstance(node, Literal):
        return repr(node.value)
    if isinstance(node, Compare):
        return f"({render(node.left)} {_SYMBOLS[node.op]} {render(node.right)})"
    if isinstance(node, Logical):
        return f"({render(node.left)} {node.op} {render(node.right)})"
    if isinstance(node, Not):
        return f"not {render(node.operand)}"
    if isinstance(node, Call):
        args = ", ".join(render(a) for a in node.args)
        return f"{render(node.target)}.{node.method}({args})"
    return repr(node)


_SYMBOLS = {"eq": "==", "ne": "!=", "lt": "<", "le": "<=", "gt": ">", "ge": ">="}


# ============================================================================
# Tracing proxy
# ============================================================================


class Expr:
    """Records operations applied to it as expression tree nodes."""

    __slots__ = ("_node",)

    def __init__(self, node: Node):
        object.__setattr__(self, "_node", node)

    def __getattr__(self, name: str) -> Expr:
        if name.startswith("__"):
            raise AttributeError(name)
        return Expr(Member(self._node, name))

    def __getitem__(self, name: str) -> Expr:
        return Expr(Member(self._node, name))

    def __setattr__(self, name: str, value: Any) -> None:
        raise AttributeError("Expressions are immutable")

    def __eq__(self, other: Any) -> Expr:  # type: ignore[override]
        return Expr(Compare("eq", self._node, as_node(other)))

    def __ne__(self, other: Any) -> Expr:  # type: ignore[override]
        return Expr(Compare("ne", self._node, as_node(other)))

    def __lt__(self, other: Any) -> Expr:
        return Expr(Compare("lt", self._node, as_node(other)))

    def __le__(self, other: Any) -> Expr:
        return Expr(Compare("le", self._node, as_node(other)))

    def __gt__(self, other: Any) -> Expr:
        return Expr(Compare("gt", self._node, as_node(other)))

    def __ge__(self, other: Any) -> Expr:
        return Expr(Compare("ge", self._node, as_node(other)))

    __hash__ = None  # type: ignore[assignment]

    def __and__(self, other: Any) -> Expr:
        return Expr(Logical("and", self._node, as_node(other)))

    def __rand__(self, other: Any) -> Expr:
        return Expr(Logical("and", as_node(other), self._node))

    def __or__(self, other: Any) -> Expr:
        return Expr(Logical("or", self._node, as_node(other)))

    def __ror__(self, other: Any) -> Expr:
        return Expr(Logical("or", as_node(other), self._node))

    def __invert__(self) -> Expr:
        return Expr(Not(self._node))

    def __bool__(self) -> bool:
        raise TypeError(
            "Expressions have no truth value; use &, | and ~ instead of and, or and not"
        )

    def lower(self) -> Expr:
        return Expr(Call("lower", self._node))

    def upper(self) -> Expr:
        return Expr(Call("upper", self._node))

    def contains(self, value: Any) -> Expr:
        return Expr(Call("contains", self._node, (as_node(value),)))

    def startswith(self, value: Any) -> Expr:
        return Expr(Call("startswith", self._node, (as_node(value),)))

    def endswith(self, value: Any) -> Expr:
        return Expr(Call("endswith", self._node, (as_node(value),)))

    def is_in(self, values: Any) -> Expr:
        return Expr(Call("is_in", self._node, (Literal(tuple(values)),)))

    def has(self, value: Any) -> Expr:
        """Array field holds an element equal to ``value``."""
        return Expr(Call("has", self._node, (as_node(value),)))

    def __repr__(self) -> str:
        return f"Expr({render(self._node)})"


def as_node(value: Any) -> Node:
    if isinstance(value, Expr):
        return value._node
    if isinstance(value, Node):
        return value
    return Literal(value)


def trace(fn: Callable[[Any], Any]) -> tuple[Param, Any]:
    """Call ``fn`` with a fresh placeholder and return (placeholder, result)."""
    param = fresh_param()
    return param, fn(Expr(param))


# ============================================================================
# Evaluation
# ============================================================================


def _lookup(obj: Any, name: str) -> Any:
    if obj is None:
        return None
    if isinstance(obj, Mapping):
        return obj.get(name)
    return getattr(obj, name, None)


def _is_array(value: Any) -> bool:
    return isinstance(value, (list, tuple))


# Comparisons follow MongoDB: an array field matches when any element does,
# and missing values never satisfy an ordering comparison.


def _equals(left: Any, right: Any) -> bool:
    if left == right:
        return True
    return _is_array(left) and not _is_array(right) and right in left


def _ordered(fn: Callable[[Any, Any], bool]) -> Callable[[Any, Any], bool]:
    def compare(left: Any, right: Any) -> bool:
        if left is None or right is None:
            return False
        if _is_array(left) and not _is_array(right):
            return any(item is not None and fn(item, right) for item in left)
        return fn(left, right)

    return compare


_COMPARATORS: dict[str, Callable[[Any, Any], bool]] = {
    "eq": _equals,
    "ne": lambda left, right: not _equals(left, right),
    "lt": _ordered(operator.lt),
    "le": _ordered(operator.le),
    "gt": _ordered(operator.gt),
    "ge": _ordered(operator.ge),
}

_TEXT_TESTS: dict[str, Callable[[str, str], bool]] = {
    "contains": lambda text, part: part in text,
    "startswith": str.startswith,
    "endswith": str.endswith,
}


def evaluate(node: Any, env: Mapping[Param, Any]) -> Any:
    """Interpret an expression tree against bound placeholder values."""
    if isinstance(node, Param):
        return env[node]
    if isinstance(node, Literal):
        return node.value
    if isinstance(node, Member):
        return _lookup(evaluate(node.target, env), node.name)
    if isinstance(node, Compare):
        return _COMPARATORS[node.op](evaluate(node.left, env), evaluate(node.right, env))
    if isinstance(node, Logical):
        left = bool(evaluate(node.left, env))
        if node.op == "and":
            return left and bool(evaluate(node.right, env))
        return left or bool(evaluate(node.right, env))
    if isinstance(node, Not):
        return not evaluate(node.operand, env)
    if isinstance(node, Call):
        return _call(node, env)
    raise TypeError(f"Cannot evaluate {node!r}")


def _call(node: Call, env: Mapping[Param, Any]) -> Any:
    target = evaluate(node.target, env)
    args = [evaluate(arg, env) for arg in node.args]
    if node.method == "is_in":
        if _is_array(target):
            return any(item in args[0] for item in target)
        return target in args[0]
    if node.method == "has":
        return _equals(target, args[0])
    if target is None:
        return None if node.method in ("lower", "upper") else False
    if node.method in ("lower", "upper"):
        if _is_array(target):
            return [getattr(item, node.method)() if isinstance(item, str) else item for item in target]
        return getattr(target, node.method)()
    if node.method in _TEXT_TESTS:
        test = _TEXT_TESTS[node.method]
        # a pattern on an array field matches any string element, as $regex does
        if _is_array(target):
            return any(isinstance(item, str) and test(item, args[0]) for item in target)
        return test(target, args[0])
    raise TypeError(f"Unknown method {node.method}")


# ============================================================================
# Predicates
# ============================================================================


class Predicate(Generic[T]):
    """A boolean expression over one entity placeholder."""

    __slots__ = ("param", "body")

    def __init__(self, param: Param, body: Node):
        self.param = param
        self.body = body

    @classmethod
    def from_lambda(cls, fn: Callable[[Any], Any]) -> Predicate[T]:
        param, result = trace(fn)
        return cls(param, as_node(result))

    @classmethod
    def constant(cls, value: bool) -> Predicate[T]:
        return cls(fresh_param(), Literal(bool(value)))

    def __call__(self, entity: T) -> bool:
        return bool(evaluate(self.body, {self.param: entity}))

    def and_(self, other: PredicateLike | None) -> Predicate[T]:
        return and_(self, other)

    def or_(self, other: PredicateLike | None) -> Predicate[T]:
        return or_(self, other)

    def __and__(self, other: PredicateLike) -> Predicate[T]:
        return and_(self, other)

    def __or__(self, other: PredicateLike) -> Predicate[T]:
        return or_(self, other)

    def __invert__(self) -> Predicate[T]:
        param = fresh_param()
        return Predicate(param, Not(substitute(self.body, self.param, param)))

    def __repr__(self) -> str:
        return f"Predicate({self.param.name} => {render(self.body)})"


PredicateLike = Union[Predicate, Callable[[Any], Any]]


def as_predicate(value: PredicateLike | None) -> Predicate | None:
    if value is None or isinstance(value, Predicate):
        return value
    if isinstance(value, bool):
        return Predicate.constant(value)
    if callable(value):
        return Predicate.from_lambda(value)
    raise TypeError(f"Expected a predicate or a lambda, got {type(value).__name__}")


def new_query(predicate: PredicateLike | bool) -> Predicate:
    """Start a query from a predicate, a lambda, or a constant True/False."""
    if isinstance(predicate, bool):
        return Predicate.constant(predicate)
    return as_predicate(predicate)


def _combine(op: str, first: PredicateLike | None, second: PredicateLike | None) -> Predicate | None:
    if first is None:
        return as_predicate(second)
    if second is None:
        return as_predicate(first)

    first = as_predicate(first)
    second = as_predicate(second)
    param = fresh_param()
    body = Logical(
        op,
        substitute(first.body, first.param, param),
        substitute(second.body, second.param, param),
    )
    return Predicate(param, body)


def and_(first: PredicateLike | None, second: PredicateLike | None) -> Predicate | None:
    """Logical AND of two predicates; an absent operand yields the other."""
    return _combine("and", first, second)


def or_(first: PredicateLike | None, second: PredicateLike | None) -> Predicate | None:
    """Logical OR of two predicates; an absent operand yields the other."""
    return _combine("or", first, second)
