"""Permissioned credential store.

A CredentialStore owns one document collection and maps credentials to
records:

    {
      "id":        hash(credential.id),
      "issuer":    hash(credential.issuer),
      "recipient": hash(recipient),        # claim.id or recipient, per store
      "meta":      {"created": ms, "updated": ms},
      "credential": encode(credential),
    }

Lookups go through the hashed keys; the encoded credential stays
queryable as a nested document (``{"credential.claim.id": ...}``).

Every operation runs the permission gate before touching data it
returns or writes, with one deliberate exception: credentials that mark
themselves world-readable (``sysPublic: "*"``) are returned without a
permission check.

Uniqueness is enforced by three unique indexes built at init, never by
a read-before-write.  Two concurrent inserts of the same credential
cannot both succeed; the loser gets DuplicateCredential.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

from credstore.core.config import RecipientField, StoreConfig
from credstore.core.errors import (
    DuplicateCredential,
    InitializationError,
    NotFound,
    NotInitialized,
    PermissionDenied,
)
from credstore.core.metrics import track_operation
from credstore.core.permissions import (
    CREDENTIAL_ACCESS,
    CREDENTIAL_ADMIN,
    CREDENTIAL_INSERT,
    CREDENTIALS_CONTEXT_V1_URL,
    IDENTITY_COMPOSE,
    IDENTITY_CONTEXT_V1_URL,
)
from credstore.db import codec
from credstore.db.document_db import DocumentCollection, DocumentDatabase, DuplicateKeyError
from credstore.db.query import Fields, FindOptions, Query, projection_mode
from credstore.models.actor import Actor
from credstore.models.credential import (
    Meta,
    claim_properties,
    credential_id,
    credential_types,
    is_public,
    issuer_of,
    recipient_key,
    recipient_of,
)
from credstore.services.id_generator import (
    IdGenerator,
    IdGeneratorFactory,
    get_distributed_id_generator,
)
from credstore.services.permission_gate import PermissionGate, ResourceView

logger = logging.getLogger(__name__)

RECORD_INDEXES: tuple[tuple[str, ...], ...] = (
    ("id",),
    ("recipient", "issuer", "id"),
    ("issuer", "id"),
)


@dataclass(frozen=True, slots=True)
class InsertOptions:
    """ignore_duplicate: return None instead of raising DuplicateCredential."""

    ignore_duplicate: bool = False


@dataclass(frozen=True, slots=True)
class ComposeOptions:
    """types: when non-empty, only credentials sharing a ``type`` are composed."""

    types: tuple[str, ...] = ()


def _with_record_id(fields: Fields | None) -> tuple[Fields | None, bool]:
    """Make sure the hashed record ``id`` is retrieved.

    The permission lookup re-fetches records by that key, so it must
    survive any caller projection.  Returns the adjusted projection and
    whether ``id`` has to be stripped from results afterwards.
    """
    mode = projection_mode(fields)
    if mode == "include" and not fields.get("id"):  # type: ignore[union-attr]
        return {**fields, "id": 1}, True  # type: ignore[dict-item]
    if mode == "exclude" and "id" in fields:  # type: ignore[operator]
        return {k: v for k, v in fields.items() if k != "id"}, True  # type: ignore[union-attr]
    return fields, False


class CredentialStore:
    """Named handle over one credential collection.

    Constructed empty, then ``await store.init(config)`` before use.
    Every operation before a successful init raises NotInitialized.
    """

    def __init__(
        self,
        database: DocumentDatabase,
        permissions: PermissionGate,
        *,
        id_generators: IdGeneratorFactory = get_distributed_id_generator,
    ) -> None:
        self._database = database
        self._permissions = permissions
        self._id_generators = id_generators
        self.name: str | None = None
        self.recipient_field: RecipientField = "claim.id"
        self.collection: DocumentCollection | None = None
        self._id_generator: IdGenerator | None = None

    @property
    def is_initialized(self) -> bool:
        return self.collection is not None and self._id_generator is not None

    def _require_init(self) -> DocumentCollection:
        if not self.is_initialized:
            raise NotInitialized(self.name)
        return self.collection  # type: ignore[return-value]

    @property
    def _label(self) -> str:
        return self.name or "uninitialized"

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def init(self, config: StoreConfig) -> None:
        """Open the collection, build indexes, seed, acquire the id generator.

        Steps run strictly in that order; indexes exist before the first
        insert.  The store only becomes usable once every step succeeded.
        """
        if self.is_initialized:
            raise InitializationError(config.name, "store is already initialized")

        name = config.name
        logger.debug("Creating store: %s", name, extra={"store": name})

        try:
            collection = await self._database.open_collection(name)
        except Exception as e:
            raise InitializationError(name, f"cannot open collection: {e}") from e

        try:
            for fields in RECORD_INDEXES:
                await collection.create_index(fields, unique=True)
        except Exception as e:
            raise InitializationError(name, f"cannot create indexes: {e}") from e

        for credential in config.credentials:
            try:
                await self._insert_record(collection, credential, config.recipient_field)
            except DuplicateKeyError:
                logger.debug(
                    "Seed credential already present: %s",
                    credential.get("id"),
                    extra={"store": name},
                )
            except Exception as e:
                raise InitializationError(
                    name, f"cannot insert seed credential {credential.get('id')!r}: {e}"
                ) from e

        try:
            id_generator = await self._id_generators(name)
        except Exception as e:
            raise InitializationError(name, f"cannot acquire id generator: {e}") from e

        self.name = name
        self.recipient_field = config.recipient_field
        self.collection = collection
        self._id_generator = id_generator
        logger.info(
            "Created store: %s (recipient=%s, seeded=%d)",
            name,
            config.recipient_field,
            len(config.credentials),
            extra={"store": name},
        )

    async def generate_id(self, prefix: str) -> str:
        """Return ``prefix`` followed by a distributed unique id."""
        self._require_init()
        return prefix + await self._id_generator.generate_id()  # type: ignore[union-attr]

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _build_record(
        credential: Mapping[str, Any], rule: RecipientField
    ) -> dict[str, Any]:
        return {
            "id": codec.hash(credential_id(credential)),
            "issuer": codec.hash(issuer_of(credential)),
            "recipient": codec.hash(recipient_of(credential, rule)),
            "meta": Meta.new().to_dict(),
            "credential": codec.encode(dict(credential)),
        }

    async def _insert_record(
        self,
        collection: DocumentCollection,
        credential: Mapping[str, Any],
        rule: RecipientField,
    ) -> dict[str, Any]:
        record = await collection.insert_one(self._build_record(credential, rule))
        record["credential"] = codec.decode(record["credential"])
        return record

    def _view(
        self, credential: Mapping[str, Any], record_key: str | None = None
    ) -> ResourceView:
        translate = ("issuer", recipient_key(self.recipient_field))
        if record_key is None:
            return ResourceView(credential, translate=translate)

        async def _get(_resource: Any) -> Mapping[str, Any]:
            return await self._lookup(record_key)

        return ResourceView(credential, translate=translate, get=_get)

    async def _lookup(self, record_key: str) -> dict[str, Any]:
        collection = self._require_init()
        record = await collection.find_one({"id": record_key}, {"credential": 1})
        if record is None:
            raise NotFound(record_key)
        return codec.decode(record["credential"])

    async def _visible(self, actor: Actor | None, record: dict[str, Any]) -> bool:
        if "credential" not in record:
            # existence checks project the credential away; nothing to protect
            return True
        credential = record["credential"] = codec.decode(record["credential"])
        if is_public(credential):
            return True
        try:
            await self._permissions.check(
                actor, CREDENTIAL_ACCESS, self._view(credential, record.get("id"))
            )
        except (PermissionDenied, NotFound):
            return False
        return True

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    async def insert(
        self,
        actor: Actor | None,
        credential: Mapping[str, Any],
        options: InsertOptions | None = None,
    ) -> dict[str, Any] | None:
        """Insert a credential; return the stored record with the credential decoded.

        Raises PermissionDenied (nothing written), DuplicateCredential, or
        CredentialValidationError when id/issuer/recipient are missing.
        """
        options = options or InsertOptions()
        collection = self._require_init()
        with track_operation(self._label, "insert"):
            logger.debug(
                "Inserting credential %s",
                credential.get("id"),
                extra={"store": self.name, "credential_id": credential.get("id")},
            )
            await self._permissions.check(actor, CREDENTIAL_INSERT, self._view(credential))
            try:
                return await self._insert_record(
                    collection, credential, self.recipient_field
                )
            except DuplicateKeyError:
                if options.ignore_duplicate:
                    logger.debug("Ignored duplicate credential %s", credential.get("id"))
                    return None
                logger.info(
                    "Rejected duplicate credential %s",
                    credential.get("id"),
                    extra={"store": self.name, "credential_id": credential.get("id")},
                )
                raise DuplicateCredential(credential.get("id")) from None  # type: ignore[arg-type]

    async def get(
        self, actor: Actor | None, id: str
    ) -> tuple[dict[str, Any], dict[str, Any]]:
        """Return ``(credential, meta)`` for the credential with ``id``."""
        collection = self._require_init()
        with track_operation(self._label, "get"):
            record = await collection.find_one(
                {"id": codec.hash(id)}, {"credential": 1, "meta": 1}
            )
            if record is None:
                raise NotFound(id)
            credential = codec.decode(record["credential"])
            if not is_public(credential):
                await self._permissions.check(
                    actor, CREDENTIAL_ACCESS, self._view(credential)
                )
            return credential, record["meta"]

    async def get_all(
        self,
        actor: Actor | None,
        query: Query | None = None,
        fields: Fields | None = None,
        options: FindOptions | None = None,
    ) -> list[dict[str, Any]]:
        """Return matching records the actor may see, in retrieval order.

        Records the actor may not see are dropped silently.  Records
        fetched without their ``credential`` are always returned.
        """
        collection = self._require_init()
        with track_operation(self._label, "get_all"):
            lookup_fields, strip_id = _with_record_id(fields)
            records = await collection.find(query or {}, lookup_fields, options).to_list()

            # Sequential on purpose: preserves order and bounds load on the gate.
            visible: list[dict[str, Any]] = []
            for record in records:
                if not await self._visible(actor, record):
                    continue
                if strip_id:
                    record.pop("id", None)
                visible.append(record)

            logger.debug(
                "get_all matched=%d visible=%d",
                len(records),
                len(visible),
                extra={"store": self.name},
            )
            return visible

    async def count(
        self,
        actor: Actor | None,
        query: Query | None = None,
        options: FindOptions | None = None,
    ) -> int:
        """Administrative count; requires CREDENTIAL_ADMIN, no per-record filtering."""
        collection = self._require_init()
        with track_operation(self._label, "count"):
            await self._permissions.check(actor, CREDENTIAL_ADMIN)
            return await collection.count(query or {}, options)

    async def compose(
        self,
        actor: Actor | None,
        recipient: str,
        template: Mapping[str, Any],
        options: ComposeOptions | None = None,
    ) -> dict[str, Any]:
        """Compose an identity view from the recipient's credentials.

        A credential is embedded when its claim asserts at least one of the
        template's properties (``id`` aside).  The ``credential`` key is
        absent from the result when nothing matched.
        """
        options = options or ComposeOptions()
        collection = self._require_init()
        identity: dict[str, Any] = {
            "@context": [IDENTITY_CONTEXT_V1_URL, CREDENTIALS_CONTEXT_V1_URL],
            "id": recipient,
        }
        with track_operation(self._label, "compose"):
            await self._permissions.check(actor, IDENTITY_COMPOSE, ResourceView(recipient))

            properties = {p for p in template if p != "id"}
            wanted_types = set(options.types)
            cursor = collection.find(
                {"recipient": codec.hash(recipient)}, {"credential": 1}
            )
            async for record in cursor:
                credential = codec.decode(record["credential"])
                if wanted_types and not credential_types(credential) & wanted_types:
                    continue
                if properties & claim_properties(credential):
                    identity.setdefault("credential", []).append({"@graph": credential})
        return identity
