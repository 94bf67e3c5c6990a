"""Partial update specifications for ``execute_update``.

    Update().set(lambda x: x.is_active, False).inc("age", 1)

Each call returns a new ``Update``; the receiver is left unchanged.
"""

from collections.abc import Mapping
from typing import Any, Callable

from .models import to_bson
from .query import field_path

FieldRef = Callable[[Any], Any] | str


class Update:
    def __init__(self, operations: tuple[tuple[str, FieldRef, Any], ...] = ()):
        self._operations = operations

    def _with(self, operator: str, field: FieldRef, value: Any) -> "Update":
        return Update(self._operations + ((operator, field, value),))

    def set(self, field: FieldRef, value: Any) -> "Update":
        return self._with("$set", field, value)

    def unset(self, field: FieldRef) -> "Update":
        return self._with("$unset", field, "")

    def inc(self, field: FieldRef, amount: int | float = 1) -> "Update":
        return self._with("$inc", field, amount)

    def mul(self, field: FieldRef, factor: int | float) -> "Update":
        return self._with("$mul", field, factor)

    def min(self, field: FieldRef, value: Any) -> "Update":
        return self._with("$min", field, value)

    def max(self, field: FieldRef, value: Any) -> "Update":
        return self._with("$max", field, value)

    def push(self, field: FieldRef, value: Any) -> "Update":
        return self._with("$push", field, value)

    def pull(self, field: FieldRef, value: Any) -> "Update":
        return self._with("$pull", field, value)

    def to_mongo(self, aliases: Mapping[str, str] | None = None) -> dict:
        if not self._operations:
            raise ValueError("Update has no operations")
        document: dict[str, dict] = {}
        for operator, field, value in self._operations:
            document.setdefault(operator, {})[field_path(field, aliases)] = to_bson(value)
        return document

    def __len__(self) -> int:
        return len(self._operations)

    def __repr__(self) -> str:
        return f"Update({self.to_mongo() if self._operations else {}})"


def compile_update(
    update: Update | Callable[[Update], Update] | Mapping,
    aliases: Mapping[str, str] | None = None,
) -> dict:
    """Accept an ``Update``, a builder callback, or a raw update document."""
    if isinstance(update, Mapping):
        return dict(update)
    if not isinstance(update, Update):
        update = update(Update())
    return update.to_mongo(aliases)
