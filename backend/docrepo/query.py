"""Translate predicate trees, sort specs and selectors into MongoDB documents."""

from __future__ import annotations

import copy
import logging
import re
from collections.abc import Mapping
from typing import Any, Callable

from bson import ObjectId

from .exceptions import QueryTranslationError
from .models import SortSpec, from_bson, to_bson
from .predicate import (
    Call,
    Compare,
    Expr,
    Literal,
    Logical,
    Member,
    Node,
    Not,
    Param,
    Predicate,
    as_predicate,
    evaluate,
    references,
    render,
    trace,
)

logger = logging.getLogger(__name__)

MATCH_ALL: dict = {}
MATCH_NONE: dict = {"_id": {"$in": []}}

_OPERATORS = {"ne": "$ne", "lt": "$lt", "le": "$lte", "gt": "$gt", "ge": "$gte"}
_FLIPPED = {"eq": "eq", "ne": "ne", "lt": "gt", "le": "ge", "gt": "lt", "ge": "le"}


def entity_aliases(entity_type: type | None) -> dict[str, str]:
    """Map model field names to their stored names (``id`` -> ``_id``)."""
    model_fields = getattr(entity_type, "model_fields", None) or {}
    return {
        name: info.alias
        for name, info in model_fields.items()
        if info.alias and info.alias != name
    }


class _Translator:
    def __init__(self, param: Param, aliases: Mapping[str, str]):
        self.param = param
        self.aliases = aliases

    def path(self, node: Node) -> str | None:
        """Dotted field path for a member chain rooted at the placeholder."""
        names = []
        while isinstance(node, Member):
            names.append(node.name)
            node = node.target
        if node != self.param or not names:
            return None
        names.reverse()
        names[0] = self.aliases.get(names[0], names[0])
        return ".".join(names)

    def field(self, node: Node) -> tuple[str | None, bool]:
        """(path, case_insensitive) for a field, possibly wrapped in lower()/upper()."""
        if isinstance(node, Call) and node.method in ("lower", "upper"):
            return self.path(node.target), True
        return self.path(node), False

    def value(self, node: Node, path: str) -> Any:
        if not isinstance(node, Literal) and references(node, self.param):
            raise QueryTranslationError(
                "Comparing one field with another is not supported", render(node)
            )
        value = evaluate(node, {})
        if path == "_id" and isinstance(value, str) and ObjectId.is_valid(value):
            return ObjectId(value)
        return to_bson(value)

    def translate(self, node: Node) -> dict:
        if isinstance(node, Literal):
            if isinstance(node.value, bool):
                return MATCH_ALL if node.value else MATCH_NONE
            raise QueryTranslationError("Non-boolean literal used as a filter", render(node))
        if isinstance(node, Logical):
            return self.logical(node)
        if isinstance(node, Not):
            inner = self.translate(node.operand)
            if inner == MATCH_ALL:
                return MATCH_NONE
            if inner == MATCH_NONE:
                return MATCH_ALL
            return {"$nor": [inner]}
        if isinstance(node, Compare):
            return self.compare(node)
        if isinstance(node, Call):
            return self.call(node)
        if isinstance(node, Member):
            path = self.path(node)
            if path is not None:
                return {path: True}
        raise QueryTranslationError("Expression cannot be used as a filter", render(node))

    def logical(self, node: Logical) -> dict:
        key = "$and" if node.op == "and" else "$or"
        absorbing, neutral = (MATCH_NONE, MATCH_ALL) if node.op == "and" else (MATCH_ALL, MATCH_NONE)

        clauses = []
        for side in (node.left, node.right):
            translated = self.translate(side)
            if translated == absorbing:
                return absorbing
            if translated == neutral:
                continue
            if list(translated) == [key]:
                clauses.extend(translated[key])
            else:
                clauses.append(translated)

        if not clauses:
            return neutral
        if len(clauses) == 1:
            return clauses[0]
        return {key: clauses}

    def compare(self, node: Compare) -> dict:
        op, left, right = node.op, node.left, node.right
        path, folded = self.field(left)
        if path is None:
            path, folded = self.field(right)
            if path is None:
                raise QueryTranslationError("Comparison does not reference a field", render(node))
            op, left, right = _FLIPPED[op], right, left

        value = self.value(right, path)
        if folded:
            if op not in ("eq", "ne") or not isinstance(value, str):
                raise QueryTranslationError(
                    "Only equality against a string is supported after lower()/upper()",
                    render(node),
                )
            if value != getattr(value, left.method)():
                match = MATCH_NONE
            else:
                match = {path: {"$regex": f"^{re.escape(value)}$", "$options": "i"}}
            if op == "eq":
                return match
            return MATCH_ALL if match == MATCH_NONE else {"$nor": [match]}

        if op == "eq":
            if isinstance(value, Mapping):
                return {path: {"$eq": value}}
            return {path: value}
        return {path: {_OPERATORS[op]: value}}

    def call(self, node: Call) -> dict:
        if node.method == "is_in":
            path = self.path(node.target)
            if path is None:
                raise QueryTranslationError("is_in() must be applied to a field", render(node))
            values = [self.value(Literal(v), path) for v in node.args[0].value]
            return {path: {"$in": values}}

        if node.method == "has":
            path = self.path(node.target)
            if path is None:
                raise QueryTranslationError("has() must be applied to a field", render(node))
            value = self.value(node.args[0], path)
            if isinstance(value, Mapping):
                return {path: {"$eq": value}}
            return {path: value}

        if node.method not in ("contains", "startswith", "endswith"):
            raise QueryTranslationError(f"{node.method}() cannot be used as a filter", render(node))

        path, folded = self.field(node.target)
        if path is None:
            raise QueryTranslationError(f"{node.method}() must be applied to a field", render(node))
        text = self.value(node.args[0], path)
        if not isinstance(text, str):
            raise QueryTranslationError(f"{node.method}() expects a string", render(node))

        if folded and text != getattr(text, node.target.method)():
            # a lowered value can never contain upper-case characters
            return MATCH_NONE

        pattern = re.escape(text)
        if node.method == "startswith":
            pattern = f"^{pattern}"
        elif node.method == "endswith":
            pattern = f"{pattern}$"
        condition = {"$regex": pattern}
        if folded:
            condition["$options"] = "i"
        return {path: condition}


def compile_filter(
    filter: Predicate | Callable[[Any], Any] | Mapping | None,
    aliases: Mapping[str, str] | None = None,
) -> dict:
    """Compile a predicate (or lambda) into a MongoDB filter document.

    Raw mappings are passed through untouched and ``None`` matches everything.
    """
    if filter is None:
        return {}
    if isinstance(filter, Mapping):
        return dict(filter)
    predicate = as_predicate(filter)
    query = _Translator(predicate.param, aliases or {}).translate(predicate.body)
    logger.debug(f"Compiled {predicate!r} to {query}")
    # the translator hands out the shared MATCH_ALL/MATCH_NONE documents
    return copy.deepcopy(query)


def field_path(selector: Callable[[Any], Any] | str, aliases: Mapping[str, str] | None = None) -> str:
    """Resolve ``lambda x: x.a.b`` (or ``"a.b"``) to a stored field path."""
    aliases = aliases or {}
    if isinstance(selector, str):
        head, _, rest = selector.partition(".")
        head = aliases.get(head, head)
        return f"{head}.{rest}" if rest else head

    param, result = trace(selector)
    node = result._node if isinstance(result, Expr) else None
    path = _Translator(param, aliases).path(node) if node is not None else None
    if path is None:
        raise QueryTranslationError("Selector must return a field", repr(result))
    return path


def compile_sort(sort: SortSpec | None, aliases: Mapping[str, str] | None = None) -> list[tuple[str, int]] | None:
    if sort is None:
        return None
    return [(field_path(sort.field, aliases), -1 if sort.descending else 1)]


class Projection:
    """A traced selector: which fields to fetch and how to shape the result.

    The selector may return a field expression, a tuple/list/dict of field
    expressions, or the placeholder itself (meaning the whole entity).
    """

    def __init__(self, selector: Callable[[Any], Any], aliases: Mapping[str, str] | None = None):
        self.aliases = dict(aliases or {})
        self.param, self.shape = trace(selector)
        self.whole_entity = isinstance(self.shape, Expr) and self.shape._node == self.param

        if self.whole_entity:
            self.fields = None
            return

        translator = _Translator(self.param, self.aliases)
        paths: list[str] = []
        for node in self._nodes(self.shape):
            self._collect(node, translator, paths)

        self.fields = {path: 1 for path in paths}
        if "_id" not in self.fields:
            self.fields["_id"] = 0

    def _nodes(self, shape: Any):
        if isinstance(shape, Expr):
            yield shape._node
        elif isinstance(shape, Mapping):
            for value in shape.values():
                yield from self._nodes(value)
        elif isinstance(shape, (tuple, list)):
            for value in shape:
                yield from self._nodes(value)

    def _collect(self, node: Any, translator: _Translator, paths: list[str]) -> None:
        path = translator.path(node) if isinstance(node, Member) else None
        if path is not None:
            if path not in paths:
                paths.append(path)
            return
        if isinstance(node, Param):
            raise QueryTranslationError("Selector must not mix the entity with its fields")
        if isinstance(node, Node) and not isinstance(node, Literal):
            for child in vars(node).values():
                if isinstance(child, tuple):
                    for item in child:
                        self._collect(item, translator, paths)
                else:
                    self._collect(child, translator, paths)

    def apply(self, document: Mapping, entity_type: type | None = None) -> Any:
        """Shape one fetched document into the selector's result."""
        if self.whole_entity:
            return entity_type.model_validate(from_bson(document)) if entity_type else document
        reverse = {stored: name for name, stored in self.aliases.items()}
        view = {reverse.get(key, key): from_bson(value) for key, value in document.items()}
        return self._shape(self.shape, {self.param: view})

    def _shape(self, shape: Any, env: Mapping[Param, Any]) -> Any:
        if isinstance(shape, Expr):
            return evaluate(shape._node, env)
        if isinstance(shape, Mapping):
            return {key: self._shape(value, env) for key, value in shape.items()}
        if isinstance(shape, tuple):
            return tuple(self._shape(value, env) for value in shape)
        if isinstance(shape, list):
            return [self._shape(value, env) for value in shape]
        return shape
