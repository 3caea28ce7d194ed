"""Async SQLAlchemy engine.

When DATABASE_URL is configured, provides an async engine (PostgreSQL via
asyncpg in production) and a lifespan hook for startup/shutdown.

When DATABASE_URL is None, ``engine`` is None and the stores fall back to
the in-memory document database.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from sqlalchemy.ext.asyncio import create_async_engine

from credstore.core.config import SETTINGS

logger = logging.getLogger(__name__)


if SETTINGS.database_url:
    engine = create_async_engine(
        SETTINGS.database_url,
        echo=SETTINGS.is_dev,  # log SQL in dev only
        pool_pre_ping=True,
    )
else:
    engine = None


@asynccontextmanager
async def lifespan_db():
    """Startup/shutdown hook for the database engine."""
    if engine is None:
        logger.info("No DATABASE_URL configured: using in-memory document database")
        yield
        return

    logger.info("Database engine created: %s", engine.url)
    yield
    await engine.dispose()
    logger.info("Database engine disposed")
