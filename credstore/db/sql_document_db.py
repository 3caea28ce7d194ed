"""SQLAlchemy implementation of DocumentDatabase."""

from __future__ import annotations

import hashlib
import logging
from collections.abc import AsyncIterator, Sequence
from typing import Any

from sqlalchemy import Index, MetaData, Select, Table, func, inspect, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncEngine

from credstore.db.document_db import Cursor, DuplicateKeyError, index_name
from credstore.db.query import (
    Fields,
    FindOptions,
    Query,
    matches,
    project,
    sort_documents,
)
from credstore.db.tables import document_table

logger = logging.getLogger(__name__)

# PostgreSQL truncates identifiers at 63 bytes
_MAX_INDEX_NAME = 63


def _index_identifier(collection: str, fields: Sequence[str]) -> str:
    name = f"uq_{collection}_{index_name(fields)}"
    if len(name) <= _MAX_INDEX_NAME:
        return name
    digest = hashlib.sha1(name.encode("utf-8")).hexdigest()[:10]
    return f"{name[: _MAX_INDEX_NAME - 11]}_{digest}"


def _document(row: Any) -> dict[str, Any]:
    doc = dict(row.doc)
    doc["_id"] = row.seq
    return doc


class SqlCollection:
    """Satisfies the DocumentCollection Protocol using SQLAlchemy.

    Equality conditions on indexed top-level keys are pushed into SQL;
    the rest of the filter, projection and sort run through
    credstore.db.query so semantics match the in-memory backend exactly.
    """

    def __init__(self, engine: AsyncEngine, table: Table) -> None:
        self._engine = engine
        self._table = table
        self.name = table.name
        # top-level keys covered by an index; safe to compare as strings in SQL
        self._pushdown_keys: set[str] = set()

    async def create_index(self, fields: Sequence[str], *, unique: bool = False) -> None:
        fields = tuple(fields)
        doc = self._table.c.doc
        name = _index_identifier(self.name, fields)
        exprs = [
            doc[tuple(f.split("."))].as_string() if "." in f else doc[f].as_string()
            for f in fields
        ]
        index = next((i for i in self._table.indexes if i.name == name), None)
        if index is None:
            index = Index(name, *exprs, unique=unique)
        try:
            async with self._engine.begin() as conn:
                await conn.run_sync(index.create, checkfirst=True)
        except IntegrityError as e:
            raise DuplicateKeyError(self.name, name) from e
        self._pushdown_keys.update(f for f in fields if "." not in f)
        logger.debug("Index ready: %s on %s", name, self.name)

    async def insert_one(self, document: dict[str, Any]) -> dict[str, Any]:
        stmt = self._table.insert().values(doc=document)
        try:
            async with self._engine.begin() as conn:
                result = await conn.execute(stmt)
        except IntegrityError as e:
            raise DuplicateKeyError(self.name, "unique") from e
        stored = dict(document)
        stored["_id"] = result.inserted_primary_key[0]
        return stored

    def _select(self, query: Query | None) -> tuple[Select, bool]:
        """Build the base SELECT; report whether the whole filter ran in SQL."""
        stmt = select(self._table.c.seq, self._table.c.doc).order_by(self._table.c.seq)
        pushed_all = True
        for key, condition in (query or {}).items():
            if key in self._pushdown_keys and isinstance(condition, str):
                stmt = stmt.where(self._table.c.doc[key].as_string() == condition)
            else:
                pushed_all = False
        return stmt, pushed_all

    def find(
        self,
        query: Query | None = None,
        fields: Fields | None = None,
        options: FindOptions | None = None,
    ) -> Cursor:
        options = options or FindOptions()
        stmt, pushed_all = self._select(query)
        windowed_in_sql = pushed_all and not options.sort
        if windowed_in_sql:
            if options.skip:
                stmt = stmt.offset(options.skip)
            if options.limit:
                stmt = stmt.limit(options.limit)
        return Cursor(
            self._iterate(stmt, query, fields, options, windowed_in_sql=windowed_in_sql)
        )

    async def _iterate(
        self,
        stmt: Select,
        query: Query | None,
        fields: Fields | None,
        options: FindOptions,
        *,
        windowed_in_sql: bool,
    ) -> AsyncIterator[dict[str, Any]]:
        async with self._engine.connect() as conn:
            result = await conn.stream(stmt)

            if windowed_in_sql:
                async for row in result:
                    yield project(_document(row), fields)
                return

            if not options.sort:
                skipped = 0
                emitted = 0
                async for row in result:
                    doc = _document(row)
                    if not matches(doc, query):
                        continue
                    if skipped < options.skip:
                        skipped += 1
                        continue
                    yield project(doc, fields)
                    emitted += 1
                    if options.limit and emitted >= options.limit:
                        return
                return

            # Sorting needs the full match set before the first result.
            selected: list[dict[str, Any]] = []
            async for row in result:
                doc = _document(row)
                if matches(doc, query):
                    selected.append(doc)

        sort_documents(selected, options.sort)
        end = options.skip + options.limit if options.limit else None
        for doc in selected[options.skip : end]:
            yield project(doc, fields)

    async def find_one(
        self, query: Query | None = None, fields: Fields | None = None
    ) -> dict[str, Any] | None:
        cursor = self.find(query, fields, FindOptions(limit=1))
        try:
            return await cursor.next()
        finally:
            await cursor.close()

    async def count(
        self, query: Query | None = None, options: FindOptions | None = None
    ) -> int:
        options = options or FindOptions()
        stmt, pushed_all = self._select(query)
        if not pushed_all:
            return len(await self.find(query, {"_id": 1}, options).to_list())

        count_stmt = select(func.count()).select_from(
            stmt.with_only_columns(self._table.c.seq).order_by(None).subquery()
        )
        async with self._engine.connect() as conn:
            total = (await conn.execute(count_stmt)).scalar_one()
        total = max(0, total - options.skip)
        if options.limit:
            total = min(total, options.limit)
        return total

    async def drop(self) -> None:
        async with self._engine.begin() as conn:
            await conn.run_sync(self._table.drop, checkfirst=True)
        self._pushdown_keys.clear()


class SqlDocumentDatabase:
    """Satisfies the DocumentDatabase Protocol: one table per collection."""

    def __init__(self, engine: AsyncEngine) -> None:
        self._engine = engine
        self._metadata = MetaData()
        self._collections: dict[str, SqlCollection] = {}

    async def open_collection(self, name: str) -> SqlCollection:
        collection = self._collections.get(name)
        if collection is not None:
            return collection
        table = document_table(name, self._metadata)
        async with self._engine.begin() as conn:
            await conn.run_sync(table.create, checkfirst=True)
        collection = SqlCollection(self._engine, table)
        self._collections[name] = collection
        logger.debug("Collection opened: %s", name)
        return collection

    async def list_collections(self) -> list[str]:
        async with self._engine.connect() as conn:
            return await conn.run_sync(lambda c: inspect(c).get_table_names())

    async def drop_collection(self, name: str) -> None:
        collection = self._collections.pop(name, None)
        table = self._metadata.tables.get(name)
        if collection is not None:
            await collection.drop()
        if table is not None:
            self._metadata.remove(table)
