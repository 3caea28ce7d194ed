"""CredentialStore operation tests over the in-memory backends.

Covers:
1. insert/get round-trips and the stored record shape
2. duplicate rejection via unique indexes, including concurrent inserts
3. NotFound details
4. permission enforcement per operation
5. get_all ordering, visibility filtering and projections
6. count and generate_id
7. compose
"""

from __future__ import annotations

import asyncio
import copy

import pytest

from credstore.core.config import StoreConfig
from credstore.core.errors import (
    CredentialValidationError,
    DuplicateCredential,
    NotFound,
    NotInitialized,
    PermissionDenied,
)
from credstore.db import codec
from credstore.db.document_db import InMemoryDocumentDatabase
from credstore.db.query import FindOptions
from credstore.models.actor import Actor
from credstore.services.credential_store import ComposeOptions, CredentialStore, InsertOptions
from credstore.services.permission_gate import RolePermissionGate
from tests.conftest import ADMIN, ISSUER, STRANGER, generate_credentials, insert_all

# ---- insert ----


def test_insert_returns_record_without_altering_credential(store: CredentialStore) -> None:
    credential = generate_credentials(1)[0]
    original = copy.deepcopy(credential)

    record = asyncio.run(store.insert(None, credential))

    assert record["id"] == codec.hash(credential["id"])
    assert record["issuer"] == codec.hash(credential["issuer"])
    assert record["recipient"] == codec.hash(credential["claim"]["id"])
    assert isinstance(record["meta"]["created"], int)
    assert record["meta"]["created"] == record["meta"]["updated"]
    assert record["credential"] == original
    assert credential == original


def test_insert_then_get_round_trips(store: CredentialStore) -> None:
    credential = generate_credentials(1)[0]
    insert_all(store, [credential])

    result, meta = asyncio.run(store.get(None, credential["id"]))

    assert result == credential
    assert set(meta) == {"created", "updated"}


def test_insert_escapes_reserved_key_characters(
    store: CredentialStore, database: InMemoryDocumentDatabase
) -> None:
    credential = generate_credentials(1)[0]
    credential["claim"]["urn:example.com:$score"] = {"100%": True}
    insert_all(store, [credential])

    stored = database.collections["credentialProvider"]._docs[0]
    assert "urn:example%2Ecom:%24score" in stored["credential"]["claim"]

    result, _ = asyncio.run(store.get(None, credential["id"]))
    assert result == credential


def test_scenario_insert_get_count() -> None:
    store = CredentialStore(InMemoryDocumentDatabase(), RolePermissionGate())
    asyncio.run(store.init(StoreConfig(name="scenario")))
    credential = {
        "id": "did:A",
        "issuer": "urn:issuer:1",
        "claim": {"id": "did:R", "email": "x@y.com"},
    }

    asyncio.run(store.insert(None, credential))
    result, _ = asyncio.run(store.get(None, "did:A"))

    assert result == credential
    assert asyncio.run(store.count(ADMIN, {})) == 1


def test_insert_duplicate_raises_and_keeps_one_record(store: CredentialStore) -> None:
    credential = generate_credentials(1)[0]
    insert_all(store, [credential])

    with pytest.raises(DuplicateCredential) as exc_info:
        asyncio.run(store.insert(None, credential))

    assert exc_info.value.id == credential["id"]
    assert len(asyncio.run(store.get_all(None, {}))) == 1


def test_concurrent_inserts_of_one_credential_store_it_once(store: CredentialStore) -> None:
    credential = generate_credentials(1)[0]

    async def _race() -> list:
        return await asyncio.gather(
            *(store.insert(None, credential) for _ in range(5)),
            return_exceptions=True,
        )

    results = asyncio.run(_race())

    stored = [r for r in results if isinstance(r, dict)]
    rejected = [r for r in results if isinstance(r, DuplicateCredential)]
    assert len(stored) == 1
    assert len(rejected) == 4
    assert asyncio.run(store.count(ADMIN)) == 1


def test_insert_duplicate_ignored_when_requested(store: CredentialStore) -> None:
    credential = generate_credentials(1)[0]
    insert_all(store, [credential])

    result = asyncio.run(
        store.insert(None, credential, InsertOptions(ignore_duplicate=True))
    )

    assert result is None
    assert asyncio.run(store.count(None)) == 1


def test_insert_rejects_credential_without_recipient(store: CredentialStore) -> None:
    credential = generate_credentials(1)[0]
    del credential["claim"]["id"]

    with pytest.raises(CredentialValidationError, match="claim.id"):
        asyncio.run(store.insert(None, credential))


def test_insert_denied_leaves_collection_unchanged(store: CredentialStore) -> None:
    insert_all(store, generate_credentials(2))
    before = asyncio.run(store.count(ADMIN))

    with pytest.raises(PermissionDenied) as exc_info:
        asyncio.run(store.insert(STRANGER, generate_credentials(1)[0]))

    assert exc_info.value.permission == "CREDENTIAL_INSERT"
    assert asyncio.run(store.count(ADMIN)) == before


def test_insert_allowed_for_issuer_of_credential(store: CredentialStore) -> None:
    credential = generate_credentials(1)[0]

    record = asyncio.run(store.insert(ISSUER, credential))

    assert record["credential"]["id"] == credential["id"]


def test_insert_allowed_for_recipient_of_credential(store: CredentialStore) -> None:
    credential = generate_credentials(1, recipient="holder")[0]
    holder = Actor(id="did:holder")

    record = asyncio.run(store.insert(holder, credential))

    assert record["recipient"] == codec.hash("did:holder")


# ---- get ----


def test_get_unknown_id_raises_public_not_found(store: CredentialStore) -> None:
    credential = generate_credentials(1)[0]

    with pytest.raises(NotFound) as exc_info:
        asyncio.run(store.get(None, credential["id"]))

    err = exc_info.value
    assert err.name == "NotFound"
    assert err.message == "Credential not found."
    assert err.public is True
    assert err.details == {"id": credential["id"], "httpStatusCode": 404, "public": True}


def test_get_denied_for_stranger(store: CredentialStore) -> None:
    credential = generate_credentials(1)[0]
    insert_all(store, [credential])

    with pytest.raises(PermissionDenied):
        asyncio.run(store.get(STRANGER, credential["id"]))


def test_get_allowed_for_recipient(store: CredentialStore) -> None:
    credential = generate_credentials(1, recipient="holder")[0]
    insert_all(store, [credential])

    result, _ = asyncio.run(store.get(Actor(id="did:holder"), credential["id"]))

    assert result == credential


def test_get_public_credential_skips_permission_check(store: CredentialStore) -> None:
    credential = generate_credentials(1)[0]
    credential["sysPublic"] = "*"
    insert_all(store, [credential])

    result, _ = asyncio.run(store.get(STRANGER, credential["id"]))

    assert result == credential


def test_get_public_list_sentinel(store: CredentialStore) -> None:
    credential = generate_credentials(1)[0]
    credential["sysPublic"] = ["name", "*"]
    insert_all(store, [credential])

    result, _ = asyncio.run(store.get(STRANGER, credential["id"]))

    assert result["id"] == credential["id"]


# ---- get_all ----


def test_get_all_empty_query_returns_everything(store: CredentialStore) -> None:
    insert_all(store, generate_credentials(3))

    assert len(asyncio.run(store.get_all(None, {}))) == 3
    assert len(asyncio.run(store.get_all(None))) == 3


def test_get_all_by_credential_id(store: CredentialStore) -> None:
    credentials = generate_credentials(3)
    insert_all(store, credentials)

    for credential in credentials:
        results = asyncio.run(
            store.get_all(None, {"credential.id": credential["id"]})
        )
        assert len(results) == 1
        assert results[0]["credential"] == credential


def test_get_all_by_recipient_preserves_insertion_order(store: CredentialStore) -> None:
    batches = {"alice": 3, "bob": 5, "carol": 7}
    by_recipient: dict[str, list[dict]] = {}
    for recipient, count in batches.items():
        by_recipient[recipient] = generate_credentials(count, recipient)
    # interleave inserts across recipients
    interleaved = [c for group in zip(*by_recipient.values()) for c in group]
    rest = [c for group in by_recipient.values() for c in group if c not in interleaved]
    insert_all(store, interleaved + rest)

    for recipient, credentials in by_recipient.items():
        results = asyncio.run(
            store.get_all(ADMIN, {"credential.claim.id": f"did:{recipient}"})
        )
        assert len(results) == batches[recipient]
        inserted_order = [c["id"] for c in interleaved + rest if c in credentials]
        assert [r["credential"]["id"] for r in results] == inserted_order


def test_get_all_drops_records_actor_cannot_see(store: CredentialStore) -> None:
    mine = generate_credentials(2, recipient="holder")
    theirs = generate_credentials(3, recipient="someone-else")
    public = generate_credentials(1, recipient="someone-else")[0]
    public["sysPublic"] = "*"
    insert_all(store, [mine[0], theirs[0], public, theirs[1], mine[1], theirs[2]])

    results = asyncio.run(store.get_all(Actor(id="did:holder"), {}))

    assert [r["credential"]["id"] for r in results] == [
        mine[0]["id"],
        public["id"],
        mine[1]["id"],
    ]


def test_get_all_existence_check_bypasses_filter(store: CredentialStore) -> None:
    insert_all(store, generate_credentials(2))

    results = asyncio.run(store.get_all(STRANGER, {}, {"meta": 1}))

    assert len(results) == 2
    assert all("credential" not in r for r in results)


def test_get_all_id_only_projection_bypasses_filter(store: CredentialStore) -> None:
    insert_all(store, generate_credentials(2))

    results = asyncio.run(store.get_all(STRANGER, {}, {"_id": 1}))

    assert results == [{"_id": 1}, {"_id": 2}]


def test_get_all_projection_returns_only_requested_fields(store: CredentialStore) -> None:
    credential = generate_credentials(1)[0]
    insert_all(store, [credential])

    results = asyncio.run(
        store.get_all(
            None,
            {"credential.id": credential["id"]},
            {"credential.issuer": 1, "credential.issued": 1},
        )
    )

    assert len(results) == 1
    assert set(results[0]) == {"_id", "credential"}
    assert results[0]["credential"] == {
        "issuer": credential["issuer"],
        "issued": credential["issued"],
    }


def test_get_all_projection_without_credential_id_still_filters(
    store: CredentialStore,
) -> None:
    # The projection drops credential.id and the recipient; the permission
    # lookup must still find the full record.
    mine = generate_credentials(1, recipient="holder")[0]
    theirs = generate_credentials(1, recipient="other")[0]
    insert_all(store, [mine, theirs])

    results = asyncio.run(
        store.get_all(Actor(id="did:holder"), {}, {"credential.issuer": 1})
    )

    assert len(results) == 1
    assert results[0]["credential"] == {"issuer": mine["issuer"]}
    assert "id" not in results[0]


def test_get_all_exclusion_projection_of_record_id_still_filters(
    store: CredentialStore,
) -> None:
    mine = generate_credentials(1, recipient="holder")[0]
    theirs = generate_credentials(1, recipient="other")[0]
    insert_all(store, [mine, theirs])

    results = asyncio.run(
        store.get_all(
            Actor(id="did:holder"), {}, {"id": 0, "credential.claim": 0}
        )
    )

    assert len(results) == 1
    assert "id" not in results[0]
    assert "claim" not in results[0]["credential"]
    assert results[0]["credential"]["id"] == mine["id"]


def test_get_all_projection_including_record_id_keeps_it(store: CredentialStore) -> None:
    credential = generate_credentials(1)[0]
    insert_all(store, [credential])

    results = asyncio.run(store.get_all(None, {}, {"id": 1, "credential.name": 1}))

    assert results[0]["id"] == codec.hash(credential["id"])


def test_get_all_honours_sort_and_limit(store: CredentialStore) -> None:
    credentials = generate_credentials(4)
    for i, credential in enumerate(credentials):
        credential["name"] = f"credential-{i}"
    insert_all(store, credentials)

    results = asyncio.run(
        store.get_all(
            None,
            {},
            options=FindOptions(sort=[("credential.name", -1)], skip=1, limit=2),
        )
    )

    assert [r["credential"]["name"] for r in results] == [
        "credential-2",
        "credential-1",
    ]


# ---- count ----


def test_count_requires_admin(store: CredentialStore) -> None:
    insert_all(store, generate_credentials(2))

    with pytest.raises(PermissionDenied) as exc_info:
        asyncio.run(store.count(ISSUER, {}))

    assert exc_info.value.permission == "CREDENTIAL_ADMIN"


def test_count_is_unfiltered_for_admin(store: CredentialStore) -> None:
    credentials = generate_credentials(3, recipient="holder")
    insert_all(store, credentials + generate_credentials(2))

    assert asyncio.run(store.count(ADMIN)) == 5
    assert asyncio.run(store.count(ADMIN, {"credential.claim.id": "did:holder"})) == 3


# ---- generate_id ----


def test_generate_id_prefixes_unique_values(store: CredentialStore) -> None:
    async def _generate() -> list[str]:
        return [await store.generate_id("urn:credential:") for _ in range(5)]

    ids = asyncio.run(_generate())

    assert len(set(ids)) == 5
    assert all(i.startswith("urn:credential:") for i in ids)


# ---- lifecycle ----


def test_operations_before_init_raise_not_initialized() -> None:
    store = CredentialStore(InMemoryDocumentDatabase(), RolePermissionGate())

    with pytest.raises(NotInitialized):
        asyncio.run(store.generate_id("x:"))
    with pytest.raises(NotInitialized):
        asyncio.run(store.insert(None, generate_credentials(1)[0]))
    with pytest.raises(NotInitialized):
        asyncio.run(store.get(None, "did:missing"))


# ---- compose ----

EMAIL_TEMPLATE = {"id": "did:holder", "email": ""}


def test_compose_embeds_matching_credentials(store: CredentialStore) -> None:
    credentials = generate_credentials(3, recipient="holder")
    insert_all(store, credentials + generate_credentials(2))

    identity = asyncio.run(store.compose(None, "did:holder", EMAIL_TEMPLATE))

    assert identity["id"] == "did:holder"
    assert identity["@context"] == [
        "https://w3id.org/identity/v1",
        "https://w3id.org/credentials/v1",
    ]
    assert [c["@graph"] for c in identity["credential"]] == credentials


def test_compose_without_overlap_omits_credential_key(store: CredentialStore) -> None:
    insert_all(store, generate_credentials(2, recipient="holder"))

    identity = asyncio.run(
        store.compose(None, "did:holder", {"id": "did:holder", "telephone": ""})
    )

    assert "credential" not in identity


def test_compose_filters_by_type(store: CredentialStore) -> None:
    email = generate_credentials(2, recipient="holder")
    other = generate_credentials(1, recipient="holder")[0]
    other["type"] = ["Credential", "test:WorkCredential"]
    insert_all(store, email + [other])

    identity = asyncio.run(
        store.compose(
            None,
            "did:holder",
            EMAIL_TEMPLATE,
            ComposeOptions(types=("test:WorkCredential",)),
        )
    )

    assert [c["@graph"]["id"] for c in identity["credential"]] == [other["id"]]


def test_compose_allowed_for_recipient(store: CredentialStore) -> None:
    insert_all(store, generate_credentials(1, recipient="holder"))

    identity = asyncio.run(
        store.compose(Actor(id="did:holder"), "did:holder", EMAIL_TEMPLATE)
    )

    assert len(identity["credential"]) == 1


def test_compose_denied_for_stranger(store: CredentialStore) -> None:
    insert_all(store, generate_credentials(1, recipient="holder"))

    with pytest.raises(PermissionDenied) as exc_info:
        asyncio.run(store.compose(STRANGER, "did:holder", EMAIL_TEMPLATE))

    assert exc_info.value.permission == "IDENTITY_COMPOSE"
