from __future__ import annotations

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from credstore.core.config import SETTINGS
from credstore.core.logging import setup_logging
from credstore.db.document_db import DocumentDatabase, InMemoryDocumentDatabase
from credstore.db.engine import engine, lifespan_db
from credstore.db.redis import lifespan_redis
from credstore.db.sql_document_db import SqlDocumentDatabase
from credstore.services.permission_gate import PermissionGate, RolePermissionGate
from credstore.services.registry import StoreRegistry, build_registry, lifespan_stores

# Configure logging before anything else runs.
setup_logging(SETTINGS.log_level, json_format=SETTINGS.log_json)

logger = logging.getLogger(__name__)


def build_database() -> DocumentDatabase:
    if engine is not None:
        return SqlDocumentDatabase(engine)
    return InMemoryDocumentDatabase()


@asynccontextmanager
async def lifespan(
    permissions: PermissionGate | None = None,
) -> AsyncGenerator[StoreRegistry, None]:
    """Process-level composition root.

    Usage::

        async with lifespan() as registry:
            await registry.provider.insert(actor, credential)

    Backing services start first and stop last; the stores are started
    inside them.
    """
    async with lifespan_db():
        async with lifespan_redis():
            registry = build_registry(
                build_database(),
                permissions if permissions is not None else RolePermissionGate(),
            )
            async with lifespan_stores(registry, SETTINGS):
                yield registry


logger.debug(
    "credstore loaded  env=%s log_level=%s database=%s redis=%s",
    SETTINGS.app_env,
    SETTINGS.log_level,
    "sql" if SETTINGS.database_url else "memory",
    "on" if SETTINGS.redis_url else "off",
)
