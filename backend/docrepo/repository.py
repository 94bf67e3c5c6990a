"""
EntityRepository

Generic repository over one MongoDB collection of one entity type.

Every operation has a blocking method (pymongo) and an ``_async`` coroutine
(motor). Coroutines accept an optional ``cancel`` event; when it fires first
the store call is abandoned and OperationCancelledError is raised. Work the
server already committed is not rolled back.

Filters may be a Predicate, a lambda such as ``lambda x: x.age > 30``, a raw
MongoDB filter document, or None (match everything). Store failures propagate
unchanged; an empty result is never an error.
"""

import asyncio
import logging
from collections.abc import Iterable, Mapping
from typing import Any, Awaitable, Callable, Generic, TypeVar

from pydantic import BaseModel
from pymongo.results import DeleteResult, InsertManyResult, InsertOneResult, UpdateResult

from .connection import get_client_handle
from .exceptions import OperationCancelledError, RepositoryConfigurationError
from .models import Page, SortSpec, from_bson, to_bson
from .predicate import Predicate
from .query import Projection, compile_filter, compile_sort, entity_aliases, field_path
from .update import Update, compile_update

logger = logging.getLogger(__name__)

T = TypeVar("T", bound=BaseModel)

Filter = Predicate | Callable[[Any], Any] | Mapping | None
Selector = Callable[[Any], Any]
UpdateSpec = Update | Callable[[Update], Update] | Mapping


def _collection_name(entity_type: type) -> str:
    named = getattr(entity_type, "collection_name", None)
    return named() if callable(named) else entity_type.__name__


class EntityRepository(Generic[T]):
    """CRUD, query, paging and aggregates for one entity collection.

    The collection is bound to the client handle registered at construction
    time. If the connection monitor later replaces that handle, this instance
    keeps using the old one; construct a new repository to pick it up.
    """

    def __init__(self, entity_type: type[T], database_name: str):
        handle = get_client_handle()
        if handle is None:
            raise RepositoryConfigurationError(
                "No MongoDB client registered. Call configure_mongo() at startup "
                "before creating repositories."
            )

        self.entity_type = entity_type
        self.database_name = database_name
        self.collection_name = _collection_name(entity_type)
        self._aliases = entity_aliases(entity_type)
        self._collection = handle.get_collection(database_name, self.collection_name)
        self._async_collection = handle.get_async_collection(database_name, self.collection_name)

        logger.debug(
            f"Repository created for {entity_type.__name__} "
            f"(db: '{database_name}', collection: '{self.collection_name}')"
        )

    # ------------------------------------------------------------------
    # helpers
    # ------------------------------------------------------------------

    def _filter(self, filter: Filter) -> dict:
        return compile_filter(filter, self._aliases)

    def _sort(self, sort: SortSpec | None) -> list[tuple[str, int]] | None:
        return compile_sort(sort, self._aliases)

    def _to_document(self, entity: T) -> dict:
        if isinstance(entity, BaseModel):
            return to_bson(entity)
        return to_bson(dict(entity))

    def _from_document(self, document: Mapping | None) -> T | None:
        if document is None:
            return None
        return self.entity_type.model_validate(from_bson(document))

    def _replacement(self, entity: T) -> dict:
        document = self._to_document(entity)
        document.pop("_id", None)
        return document

    def _aggregate_pipeline(self, accumulator: str, selector: Selector | str) -> list[dict]:
        path = field_path(selector, self._aliases)
        return [{"$group": {"_id": None, "value": {accumulator: f"${path}"}}}]

    @staticmethod
    def _check_page(index: int, size: int) -> None:
        if size <= 0:
            raise ValueError(f"Page size must be positive, got {size}")
        if index < 0:
            raise ValueError(f"Page index must not be negative, got {index}")

    @staticmethod
    def _require_filter(filter: Filter, operation: str) -> None:
        if filter is None:
            raise ValueError(
                f"{operation} requires a filter; pass new_query(True) to match every document"
            )

    async def _run(
        self,
        operation: str,
        start: Callable[[], Awaitable[Any]],
        cancel: asyncio.Event | None,
    ) -> Any:
        if cancel is None:
            return await start()
        if cancel.is_set():
            raise OperationCancelledError(operation)

        task = asyncio.ensure_future(start())
        waiter = asyncio.ensure_future(cancel.wait())
        try:
            await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            task.cancel()
            raise
        finally:
            waiter.cancel()

        if task.done():
            return task.result()
        task.cancel()
        logger.info(f"{operation} on {self.collection_name} cancelled")
        raise OperationCancelledError(operation)

    # ------------------------------------------------------------------
    # select
    # ------------------------------------------------------------------

    def get(self, filter: Filter, sort: SortSpec | None = None) -> T | None:
        """First matching entity (by ``sort`` if given), or None."""
        document = self._collection.find_one(self._filter(filter), sort=self._sort(sort))
        return self._from_document(document)

    async def get_async(
        self, filter: Filter, sort: SortSpec | None = None, cancel: asyncio.Event | None = None
    ) -> T | None:
        query, order = self._filter(filter), self._sort(sort)
        document = await self._run(
            "get", lambda: self._async_collection.find_one(query, sort=order), cancel
        )
        return self._from_document(document)

    def get_all(self, filter: Filter = None, sort: SortSpec | None = None) -> list[T]:
        cursor = self._collection.find(self._filter(filter), sort=self._sort(sort))
        return [self._from_document(document) for document in cursor]

    async def get_all_async(
        self, filter: Filter = None, sort: SortSpec | None = None, cancel: asyncio.Event | None = None
    ) -> list[T]:
        query, order = self._filter(filter), self._sort(sort)
        documents = await self._run(
            "get_all",
            lambda: self._async_collection.find(query, sort=order).to_list(length=None),
            cancel,
        )
        return [self._from_document(document) for document in documents]

    def get_page(
        self, index: int, size: int, filter: Filter = None, sort: SortSpec | None = None
    ) -> Page[T]:
        """Page ``index`` of ``size`` items; the skip offset is ``index * size``."""
        self._check_page(index, size)
        query, order = self._filter(filter), self._sort(sort)

        count = self._collection.count_documents(query)
        cursor = self._collection.find(query, sort=order, skip=index * size, limit=size)
        items = [self._from_document(document) for document in cursor]
        return Page.build(index, size, count, items)

    async def get_page_async(
        self,
        index: int,
        size: int,
        filter: Filter = None,
        sort: SortSpec | None = None,
        cancel: asyncio.Event | None = None,
    ) -> Page[T]:
        """Like ``get_page``; the count and the slice are fetched concurrently."""
        self._check_page(index, size)
        query, order = self._filter(filter), self._sort(sort)

        def start():
            return asyncio.gather(
                self._async_collection.count_documents(query),
                self._async_collection.find(
                    query, sort=order, skip=index * size, limit=size
                ).to_list(length=None),
            )

        count, documents = await self._run("get_page", start, cancel)
        items = [self._from_document(document) for document in documents]
        return Page.build(index, size, count, items)

    # ------------------------------------------------------------------
    # add
    # ------------------------------------------------------------------

    def add(self, entity: T) -> InsertOneResult:
        return self._collection.insert_one(self._to_document(entity))

    async def add_async(self, entity: T, cancel: asyncio.Event | None = None) -> InsertOneResult:
        document = self._to_document(entity)
        return await self._run("add", lambda: self._async_collection.insert_one(document), cancel)

    def add_range(self, entities: Iterable[T]) -> InsertManyResult | None:
        documents = [self._to_document(entity) for entity in entities]
        if not documents:
            return None
        result = self._collection.insert_many(documents)
        logger.debug(f"Inserted {len(documents)} documents into {self.collection_name}")
        return result

    async def add_range_async(
        self, entities: Iterable[T], cancel: asyncio.Event | None = None
    ) -> InsertManyResult | None:
        documents = [self._to_document(entity) for entity in entities]
        if not documents:
            return None
        result = await self._run(
            "add_range", lambda: self._async_collection.insert_many(documents), cancel
        )
        logger.debug(f"Inserted {len(documents)} documents into {self.collection_name}")
        return result

    # ------------------------------------------------------------------
    # update
    # ------------------------------------------------------------------

    def update(self, filter: Filter, entity: T) -> UpdateResult:
        """Replace at most one matching document with ``entity``, keeping its ``_id``."""
        return self._collection.replace_one(self._filter(filter), self._replacement(entity))

    async def update_async(
        self, filter: Filter, entity: T, cancel: asyncio.Event | None = None
    ) -> UpdateResult:
        query, replacement = self._filter(filter), self._replacement(entity)
        return await self._run(
            "update", lambda: self._async_collection.replace_one(query, replacement), cancel
        )

    def execute_update(self, update: UpdateSpec, filter: Filter = None) -> UpdateResult:
        """Apply a partial update to every matching document."""
        result = self._collection.update_many(
            self._filter(filter), compile_update(update, self._aliases)
        )
        logger.debug(
            f"Updated {result.modified_count}/{result.matched_count} documents in {self.collection_name}"
        )
        return result

    async def execute_update_async(
        self, update: UpdateSpec, filter: Filter = None, cancel: asyncio.Event | None = None
    ) -> UpdateResult:
        query, spec = self._filter(filter), compile_update(update, self._aliases)
        result = await self._run(
            "execute_update", lambda: self._async_collection.update_many(query, spec), cancel
        )
        logger.debug(
            f"Updated {result.modified_count}/{result.matched_count} documents in {self.collection_name}"
        )
        return result

    # ------------------------------------------------------------------
    # delete
    # ------------------------------------------------------------------

    def execute_delete(self, filter: Filter) -> DeleteResult:
        """Delete every matching document."""
        self._require_filter(filter, "execute_delete")
        result = self._collection.delete_many(self._filter(filter))
        logger.debug(f"Deleted {result.deleted_count} documents from {self.collection_name}")
        return result

    async def execute_delete_async(
        self, filter: Filter, cancel: asyncio.Event | None = None
    ) -> DeleteResult:
        self._require_filter(filter, "execute_delete")
        query = self._filter(filter)
        result = await self._run(
            "execute_delete", lambda: self._async_collection.delete_many(query), cancel
        )
        logger.debug(f"Deleted {result.deleted_count} documents from {self.collection_name}")
        return result

    # ------------------------------------------------------------------
    # refresh: delete then insert, as two separate calls
    # ------------------------------------------------------------------

    def refresh(self, filter: Filter, entity: T) -> None:
        self.execute_delete(filter)
        self.add(entity)

    async def refresh_async(
        self, filter: Filter, entity: T, cancel: asyncio.Event | None = None
    ) -> None:
        await self.execute_delete_async(filter, cancel=cancel)
        await self.add_async(entity, cancel=cancel)

    def refresh_all(self, filter: Filter, entities: Iterable[T]) -> None:
        entities = list(entities)
        self.execute_delete(filter)
        self.add_range(entities)

    async def refresh_all_async(
        self, filter: Filter, entities: Iterable[T], cancel: asyncio.Event | None = None
    ) -> None:
        entities = list(entities)
        await self.execute_delete_async(filter, cancel=cancel)
        await self.add_range_async(entities, cancel=cancel)

    # ------------------------------------------------------------------
    # projection
    # ------------------------------------------------------------------

    def select(self, selector: Selector, filter: Filter = None) -> Any:
        """Project the first matching document, e.g. ``lambda x: (x.name, x.age)``."""
        projection = Projection(selector, self._aliases)
        document = self._collection.find_one(self._filter(filter), projection.fields)
        if document is None:
            return None
        return projection.apply(document, self.entity_type)

    async def select_async(
        self, selector: Selector, filter: Filter = None, cancel: asyncio.Event | None = None
    ) -> Any:
        projection = Projection(selector, self._aliases)
        query = self._filter(filter)
        document = await self._run(
            "select", lambda: self._async_collection.find_one(query, projection.fields), cancel
        )
        if document is None:
            return None
        return projection.apply(document, self.entity_type)

    def select_all(self, selector: Selector, filter: Filter = None) -> list[Any]:
        projection = Projection(selector, self._aliases)
        cursor = self._collection.find(self._filter(filter), projection.fields)
        return [projection.apply(document, self.entity_type) for document in cursor]

    async def select_all_async(
        self, selector: Selector, filter: Filter = None, cancel: asyncio.Event | None = None
    ) -> list[Any]:
        projection = Projection(selector, self._aliases)
        query = self._filter(filter)
        documents = await self._run(
            "select_all",
            lambda: self._async_collection.find(query, projection.fields).to_list(length=None),
            cancel,
        )
        return [projection.apply(document, self.entity_type) for document in documents]

    # ------------------------------------------------------------------
    # aggregates
    # ------------------------------------------------------------------

    def count(self, filter: Filter = None) -> int:
        return self._collection.count_documents(self._filter(filter))

    async def count_async(self, filter: Filter = None, cancel: asyncio.Event | None = None) -> int:
        query = self._filter(filter)
        return await self._run("count", lambda: self._async_collection.count_documents(query), cancel)

    def any(self, filter: Filter) -> bool:
        return self._collection.find_one(self._filter(filter), {"_id": 1}) is not None

    async def any_async(self, filter: Filter, cancel: asyncio.Event | None = None) -> bool:
        query = self._filter(filter)
        document = await self._run(
            "any", lambda: self._async_collection.find_one(query, {"_id": 1}), cancel
        )
        return document is not None

    def max(self, selector: Selector | str) -> Any:
        """Largest value of a field across the whole collection, or None."""
        results = list(self._collection.aggregate(self._aggregate_pipeline("$max", selector)))
        return from_bson(results[0]["value"]) if results else None

    async def max_async(self, selector: Selector | str, cancel: asyncio.Event | None = None) -> Any:
        pipeline = self._aggregate_pipeline("$max", selector)
        results = await self._run(
            "max", lambda: self._async_collection.aggregate(pipeline).to_list(length=None), cancel
        )
        return from_bson(results[0]["value"]) if results else None

    def min(self, selector: Selector | str) -> Any:
        """Smallest value of a field across the whole collection, or None."""
        results = list(self._collection.aggregate(self._aggregate_pipeline("$min", selector)))
        return from_bson(results[0]["value"]) if results else None

    async def min_async(self, selector: Selector | str, cancel: asyncio.Event | None = None) -> Any:
        pipeline = self._aggregate_pipeline("$min", selector)
        results = await self._run(
            "min", lambda: self._async_collection.aggregate(pipeline).to_list(length=None), cancel
        )
        return from_bson(results[0]["value"]) if results else None
