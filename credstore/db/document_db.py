"""Document database capability and its in-memory implementation.

The store never talks to a driver directly.  It talks to a
DocumentDatabase, which hands out DocumentCollections:

    database = InMemoryDocumentDatabase()
    collection = await database.open_collection("credentialProvider")
    await collection.create_index(["id"], unique=True)
    await collection.insert_one({"id": "...", ...})
    async for doc in collection.find({"recipient": "..."}):
        ...

Two implementations satisfy the Protocols:

  InMemoryDocumentDatabase  - tests and local dev, no server needed
  SqlDocumentDatabase       - SQLAlchemy async (see sql_document_db.py)

Every stored document gets an ``_id``: a monotonically increasing
insertion sequence.  Unfiltered, unsorted reads return documents in
``_id`` order, which is insertion order.

UNIQUE INDEXES ARE THE SOURCE OF TRUTH
--------------------------------------
A check-then-insert ("does this id exist? no? insert it") has a race
window between the check and the write.  Both implementations enforce
unique indexes at the point of write and raise DuplicateKeyError, so
concurrent inserts of the same key cannot both succeed.
"""

from __future__ import annotations

import copy
import itertools
from collections.abc import AsyncIterator, Sequence
from typing import Any, Protocol, runtime_checkable

from credstore.db.query import (
    Fields,
    FindOptions,
    Query,
    matches,
    project,
    sort_documents,
    window,
)


class DuplicateKeyError(Exception):
    """A write violated a unique index."""

    def __init__(self, collection: str, index: str) -> None:
        super().__init__(f"duplicate key in {collection!r} for index {index!r}")
        self.collection = collection
        self.index = index


class Cursor:
    """Async iterator over query results.

    Wraps an async generator.  Results are produced lazily; the SQL
    backend keeps a server-side cursor open until the iterator is
    exhausted or closed.
    """

    def __init__(self, source: AsyncIterator[dict[str, Any]]) -> None:
        self._source = source

    def __aiter__(self) -> Cursor:
        return self

    async def __anext__(self) -> dict[str, Any]:
        return await self._source.__anext__()

    async def next(self) -> dict[str, Any] | None:
        """Return the next document, or None when exhausted."""
        try:
            return await self._source.__anext__()
        except StopAsyncIteration:
            return None

    async def to_list(self) -> list[dict[str, Any]]:
        return [doc async for doc in self]

    async def close(self) -> None:
        aclose = getattr(self._source, "aclose", None)
        if aclose is not None:
            await aclose()


def index_name(fields: Sequence[str]) -> str:
    return "_".join(f"{f.replace('.', '_')}_1" for f in fields)


@runtime_checkable
class DocumentCollection(Protocol):
    name: str

    async def create_index(self, fields: Sequence[str], *, unique: bool = False) -> None: ...
    async def insert_one(self, document: dict[str, Any]) -> dict[str, Any]: ...
    def find(
        self,
        query: Query | None = None,
        fields: Fields | None = None,
        options: FindOptions | None = None,
    ) -> Cursor: ...
    async def find_one(
        self, query: Query | None = None, fields: Fields | None = None
    ) -> dict[str, Any] | None: ...
    async def count(
        self, query: Query | None = None, options: FindOptions | None = None
    ) -> int: ...
    async def drop(self) -> None: ...


@runtime_checkable
class DocumentDatabase(Protocol):
    async def open_collection(self, name: str) -> DocumentCollection: ...
    async def list_collections(self) -> list[str]: ...


# ---------------------------------------------------------------------------
# In-memory implementation
# ---------------------------------------------------------------------------


def _index_key(document: dict[str, Any], fields: Sequence[str]) -> tuple[Any, ...]:
    key = []
    for path in fields:
        value: Any = document
        for part in path.split("."):
            value = value.get(part) if isinstance(value, dict) else None
        key.append(repr(value))
    return tuple(key)


class InMemoryCollection:
    """In-memory collection for tests and local dev.

    Documents are deep-copied on the way in and out, so callers can
    never mutate stored state through a returned reference.
    """

    def __init__(self, name: str) -> None:
        self.name = name
        self._docs: list[dict[str, Any]] = []
        self._seq = itertools.count(1)
        # index name -> (fields, unique)
        self._indexes: dict[str, tuple[tuple[str, ...], bool]] = {}

    async def create_index(self, fields: Sequence[str], *, unique: bool = False) -> None:
        fields = tuple(fields)
        name = index_name(fields)
        if unique:
            seen: set[tuple[Any, ...]] = set()
            for doc in self._docs:
                key = _index_key(doc, fields)
                if key in seen:
                    raise DuplicateKeyError(self.name, name)
                seen.add(key)
        self._indexes[name] = (fields, unique)

    async def insert_one(self, document: dict[str, Any]) -> dict[str, Any]:
        stored = copy.deepcopy(document)
        for name, (fields, unique) in self._indexes.items():
            if not unique:
                continue
            key = _index_key(stored, fields)
            if any(_index_key(doc, fields) == key for doc in self._docs):
                raise DuplicateKeyError(self.name, name)
        stored["_id"] = next(self._seq)
        self._docs.append(stored)
        return copy.deepcopy(stored)

    def _select(
        self, query: Query | None, options: FindOptions | None
    ) -> list[dict[str, Any]]:
        options = options or FindOptions()
        selected = [doc for doc in self._docs if matches(doc, query)]
        if options.sort:
            selected = sort_documents(selected, options.sort)
        return window(selected, options)

    def find(
        self,
        query: Query | None = None,
        fields: Fields | None = None,
        options: FindOptions | None = None,
    ) -> Cursor:
        # Snapshot at call time, like a cursor opened on a consistent read.
        snapshot = [project(doc, fields) for doc in self._select(query, options)]

        async def _iterate() -> AsyncIterator[dict[str, Any]]:
            for doc in snapshot:
                yield doc

        return Cursor(_iterate())

    async def find_one(
        self, query: Query | None = None, fields: Fields | None = None
    ) -> dict[str, Any] | None:
        for doc in self._docs:
            if matches(doc, query):
                return project(doc, fields)
        return None

    async def count(
        self, query: Query | None = None, options: FindOptions | None = None
    ) -> int:
        return len(self._select(query, options))

    async def drop(self) -> None:
        self._docs.clear()
        self._indexes.clear()


class InMemoryDocumentDatabase:
    def __init__(self) -> None:
        self.collections: dict[str, InMemoryCollection] = {}

    async def open_collection(self, name: str) -> InMemoryCollection:
        collection = self.collections.get(name)
        if collection is None:
            collection = InMemoryCollection(name)
            self.collections[name] = collection
        return collection

    async def list_collections(self) -> list[str]:
        return list(self.collections)

    async def drop_collection(self, name: str) -> None:
        collection = self.collections.pop(name, None)
        if collection is not None:
            await collection.drop()
