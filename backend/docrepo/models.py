"""Entity base class, sort specification, page result models and BSON conversion."""

import math
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any, Callable, ClassVar, Generic, TypeVar

from beanie import PydanticObjectId
from beanie.odm.utils.encoder import Encoder
from bson import Binary, Decimal128
from bson.binary import UUID_SUBTYPE
from pydantic import BaseModel, ConfigDict, Field

T = TypeVar("T")

_encoder = Encoder()


def to_bson(value: Any) -> Any:
    """Encode a model or value into types the driver can store.

    Enums become their values, UUIDs become standard binary, decimals become
    Decimal128. Datetimes and ObjectIds are kept as they are.
    """
    return _encoder.encode(value)


def from_bson(value: Any) -> Any:
    """Undo the conversions pydantic cannot validate from directly."""
    if isinstance(value, Decimal128):
        return value.to_decimal()
    if isinstance(value, Binary):
        return value.as_uuid() if value.subtype == UUID_SUBTYPE else value
    if isinstance(value, Mapping):
        return {key: from_bson(item) for key, item in value.items()}
    if isinstance(value, list):
        return [from_bson(item) for item in value]
    return value


class MongoEntity(BaseModel):
    """Base class for stored entities.

    The identifier is generated client-side so an entity knows its ``id``
    before it is inserted. It is stored as ``_id``.
    """

    model_config = ConfigDict(populate_by_name=True)

    # Override to store the entity somewhere other than its class name
    __collection__: ClassVar[str | None] = None

    id: PydanticObjectId = Field(default_factory=PydanticObjectId, alias="_id")

    @classmethod
    def collection_name(cls) -> str:
        return cls.__collection__ or cls.__name__


@dataclass(frozen=True)
class SortSpec:
    """Sort by one field, selected as ``lambda x: x.field`` or ``"field"``."""

    field: Callable[[Any], Any] | str
    descending: bool = False


def asc(field: Callable[[Any], Any] | str) -> SortSpec:
    return SortSpec(field)


def desc(field: Callable[[Any], Any] | str) -> SortSpec:
    return SortSpec(field, descending=True)


class Page(BaseModel, Generic[T]):
    """One page of a query result.

    ``index`` drives the skip offset (``index * size``) while ``has_previous``
    and ``has_next`` follow one-based page arithmetic; see ``Page.build``.
    """

    model_config = ConfigDict(populate_by_name=True)

    from_: int = Field(default=1, alias="from")
    index: int = 0
    size: int = 0
    count: int = 0
    pages: int = 0
    items: list[T] = Field(default_factory=list)
    has_previous: bool = False
    has_next: bool = False

    @classmethod
    def build(cls, index: int, size: int, count: int, items: list[T]) -> "Page[T]":
        return cls(
            index=index,
            size=size,
            count=count,
            pages=math.ceil(count / size),
            items=items,
            has_previous=index > 1,
            has_next=index * size < count,
        )
