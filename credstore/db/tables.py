"""SQLAlchemy table definitions for document collections.

Each collection is one table: a sequence primary key (exposed to callers
as the document's ``_id``) and the document itself in a JSON column.
PostgreSQL gets JSONB so expression indexes over document keys are cheap.
"""

from __future__ import annotations

from sqlalchemy import JSON, BigInteger, Column, Integer, MetaData, Table
from sqlalchemy.dialects.postgresql import JSONB

DocumentJSON = JSON().with_variant(JSONB(), "postgresql")


def document_table(name: str, metadata: MetaData) -> Table:
    existing = metadata.tables.get(name)
    if existing is not None:
        return existing
    return Table(
        name,
        metadata,
        Column(
            "seq",
            # SQLite only autoincrements INTEGER PRIMARY KEY
            BigInteger().with_variant(Integer(), "sqlite"),
            primary_key=True,
            autoincrement=True,
        ),
        Column("doc", DocumentJSON, nullable=False),
    )
