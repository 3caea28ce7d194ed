"""Distributed id generation.

THE PROBLEM
-----------
Several processes insert into the same collection.  Each needs to mint
ids that no other process will ever mint, without a database round
trip per id.

THE SCHEME: GLOBAL PREFIX + LOCAL COUNTER
------------------------------------------
Each generator reserves a *global id* once, from a counter shared by
every process (Redis INCR on ``idgen:<namespace>``).  INCR is atomic, so
no two generators ever hold the same global id.  After that, ids are
minted locally:

    <global-hex>.<local-hex>        e.g.  "1f.0", "1f.1", "1f.2", ...

One network call per generator instead of one per id.  When the local
counter is exhausted the generator reserves a fresh global id and starts
over at zero.

The in-memory generator uses a process-level counter per namespace with
the same format; it is unique within one process only.
"""

from __future__ import annotations

import itertools
import logging
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from typing import Protocol, runtime_checkable

from credstore.core.metrics import ID_RESERVATIONS
from credstore.db.redis import redis_pool

logger = logging.getLogger(__name__)

MAX_LOCAL_ID = 2**32


@runtime_checkable
class IdGenerator(Protocol):
    namespace: str

    async def generate_id(self) -> str:
        """Return a new id, unique across every generator of this namespace."""
        ...


IdGeneratorFactory = Callable[[str], Awaitable[IdGenerator]]


class _PrefixedIdGenerator(ABC):
    """Shared minting logic; subclasses supply the global id reservation."""

    backend = "base"

    def __init__(self, namespace: str) -> None:
        self.namespace = namespace
        self._global_id: int | None = None
        self._local_id = 0

    @abstractmethod
    async def _reserve_global_id(self) -> int: ...

    async def _reserve(self) -> None:
        global_id = await self._reserve_global_id()
        # No await between these assignments: a concurrent caller never
        # sees a fresh global id paired with a stale local counter.
        self._global_id = global_id
        self._local_id = 0
        ID_RESERVATIONS.labels(backend=self.backend).inc()
        logger.debug("Reserved global id %x for namespace=%s", global_id, self.namespace)

    async def init(self) -> None:
        await self._reserve()

    async def generate_id(self) -> str:
        if self._global_id is None or self._local_id >= MAX_LOCAL_ID:
            await self._reserve()
        value = f"{self._global_id:x}.{self._local_id:x}"
        self._local_id += 1
        return value


# namespace -> counter of reserved global ids (per process)
_GLOBAL_COUNTERS: dict[str, itertools.count] = {}


class InMemoryIdGenerator(_PrefixedIdGenerator):
    """Process-local generator for tests and local dev (no Redis needed)."""

    backend = "memory"

    async def _reserve_global_id(self) -> int:
        counter = _GLOBAL_COUNTERS.setdefault(self.namespace, itertools.count(1))
        return next(counter)


class RedisIdGenerator(_PrefixedIdGenerator):
    """Generator whose global ids come from a shared Redis counter."""

    backend = "redis"
    _PREFIX = "idgen:"

    def __init__(self, redis_client, namespace: str) -> None:
        super().__init__(namespace)
        self._redis = redis_client

    async def _reserve_global_id(self) -> int:
        return int(await self._redis.incr(f"{self._PREFIX}{self.namespace}"))


async def get_distributed_id_generator(namespace: str) -> IdGenerator:
    """Create and initialize a generator for ``namespace``.

    Uses Redis when REDIS_URL is configured, the in-memory generator
    otherwise.  Reservation errors propagate to the caller.
    """
    generator: _PrefixedIdGenerator
    if redis_pool is not None:
        generator = RedisIdGenerator(redis_pool, namespace)
    else:
        generator = InMemoryIdGenerator(namespace)
    await generator.init()
    return generator
