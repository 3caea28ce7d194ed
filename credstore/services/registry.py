"""Store registry: the named credential stores of one process.

By default two stores exist, and a deployment may only ever use one of
them depending on the role it plays:

  provider - credentials that can be provided to others on request
             (issuers, curators, aggregators)
  consumer - credentials obtained from providers

Other stores can be registered by name; each must be initialized with
its own StoreConfig before use.

The registry is an ordinary object owned by the composition root
(credstore.main) and passed to whatever needs a store.  There is no
module-level registry.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Iterator, Mapping
from contextlib import asynccontextmanager

from credstore.core.config import Settings, StoreConfig
from credstore.db.document_db import DocumentDatabase
from credstore.services.credential_store import CredentialStore
from credstore.services.id_generator import (
    IdGeneratorFactory,
    get_distributed_id_generator,
)
from credstore.services.permission_gate import PermissionGate

logger = logging.getLogger(__name__)


class StoreRegistry:
    def __init__(self, stores: Mapping[str, CredentialStore] | None = None) -> None:
        self._stores: dict[str, CredentialStore] = dict(stores or {})

    def register(self, name: str, store: CredentialStore) -> None:
        if name in self._stores:
            raise ValueError(f"store {name!r} is already registered")
        self._stores[name] = store

    def get(self, name: str) -> CredentialStore:
        try:
            return self._stores[name]
        except KeyError:
            raise KeyError(f"no store registered as {name!r}") from None

    __getitem__ = get

    def __contains__(self, name: object) -> bool:
        return name in self._stores

    def __iter__(self) -> Iterator[str]:
        return iter(self._stores)

    def __len__(self) -> int:
        return len(self._stores)

    @property
    def provider(self) -> CredentialStore:
        return self.get("provider")

    @property
    def consumer(self) -> CredentialStore:
        return self.get("consumer")

    async def _start_one(self, name: str, config: StoreConfig) -> None:
        await self.get(name).init(config)

    async def start(self, configs: Mapping[str, StoreConfig]) -> dict[str, BaseException]:
        """Initialize every enabled store concurrently.

        A store that fails to initialize stays unavailable (its operations
        raise NotInitialized); the others still start.  Returns the
        failures keyed by store name, empty when everything started.
        """
        enabled: dict[str, StoreConfig] = {}
        for name, config in configs.items():
            if not config.enable:
                logger.debug("Skipped %s store creation", name, extra={"store": config.name})
                continue
            enabled[name] = config

        results = await asyncio.gather(
            *(self._start_one(name, config) for name, config in enabled.items()),
            return_exceptions=True,
        )

        failures: dict[str, BaseException] = {}
        for name, result in zip(enabled, results):
            if isinstance(result, BaseException):
                logger.error(
                    "Failed to start %s store",
                    name,
                    exc_info=result,
                    extra={"store": enabled[name].name},
                )
                failures[name] = result
        return failures


def build_registry(
    database: DocumentDatabase,
    permissions: PermissionGate,
    *,
    id_generators: IdGeneratorFactory = get_distributed_id_generator,
) -> StoreRegistry:
    """Create the default provider and consumer stores (uninitialized)."""
    return StoreRegistry(
        {
            name: CredentialStore(database, permissions, id_generators=id_generators)
            for name in ("provider", "consumer")
        }
    )


@asynccontextmanager
async def lifespan_stores(
    registry: StoreRegistry, settings: Settings
) -> AsyncIterator[StoreRegistry]:
    """Startup hook for the stores; mirrors lifespan_db().

    Stores live for the process lifetime, so there is nothing to tear down.
    """
    failures = await registry.start(settings.stores)
    started = [
        name for name, config in settings.stores.items()
        if config.enable and name not in failures
    ]
    logger.info("Credential stores started: %s", ", ".join(started) or "none")
    yield registry
