"""Redis connection management.

Mirrors engine.py: when REDIS_URL is configured we create a connection
pool; when it's None (local dev, tests) the id generators fall back to
their in-memory implementation and no Redis server is needed.

Redis backs the distributed id generators.  Every process that opens a
store reserves its global id prefix with an atomic INCR, so two
processes can never mint the same id.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager

import redis.asyncio as aioredis

from credstore.core.config import SETTINGS

logger = logging.getLogger(__name__)

if SETTINGS.redis_url:
    redis_pool: aioredis.Redis | None = aioredis.from_url(  # type: ignore[type-arg]
        SETTINGS.redis_url,
        decode_responses=True,
        max_connections=20,
    )
else:
    redis_pool = None


@asynccontextmanager
async def lifespan_redis():
    """Startup/shutdown hook for Redis; mirrors lifespan_db().

    Unlike the database, a Redis outage is fatal here: distributed id
    generation has no safe in-memory fallback once other processes are
    sharing the namespace, so the ping failure propagates.
    """
    if redis_pool is None:
        logger.info("No REDIS_URL configured: id generators are process-local")
        yield
        return

    try:
        await redis_pool.ping()  # type: ignore[misc]
    except Exception:
        logger.exception("Redis connection failed on startup")
        raise
    logger.info("Redis connected: %s", SETTINGS.redis_url)

    yield

    await redis_pool.aclose()
    logger.info("Redis connection pool closed")
