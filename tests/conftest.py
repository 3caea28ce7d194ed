from __future__ import annotations

import asyncio
import copy
import sys
import uuid
from pathlib import Path

import pytest

# Ensure repo root is on sys.path so `import credstore` works under pytest.
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from credstore.core.config import StoreConfig  # noqa: E402
from credstore.db.document_db import InMemoryDocumentDatabase  # noqa: E402
from credstore.models.actor import Actor  # noqa: E402
from credstore.services import id_generator  # noqa: E402
from credstore.services.credential_store import CredentialStore  # noqa: E402
from credstore.services.permission_gate import RolePermissionGate  # noqa: E402

CREDENTIAL_TEMPLATE = {
    "@context": [
        "https://w3id.org/identity/v1",
        "https://w3id.org/credentials/v1",
        {"test": "urn:test:"},
    ],
    "type": ["Credential", "test:EmailCredential"],
    "name": "Test 1: Work Email",
    "issued": "2015-01-01T01:02:03Z",
    "issuer": "urn:issuer:test",
    "claim": {"email": "dev@examplebusiness.com"},
    "signature": {
        "type": "GraphSignature2012",
        "created": "2015-01-01T01:02:03Z",
        "creator": "https://staging-idp.example.com/i/demo/keys/1",
        "signatureValue": "ABCDEFGHIJKLMNOPQRSTUVWXYZ0123456789abcdefghijklmnopqrstuvwxyz==",
    },
}

ADMIN = Actor(id="urn:actor:admin", roles=frozenset({"admin"}))
ISSUER = Actor(id="urn:issuer:test")
STRANGER = Actor(id="did:stranger")


@pytest.fixture(autouse=True)
def reset_id_generators() -> None:
    """Clear process-level id reservations between tests."""
    id_generator._GLOBAL_COUNTERS.clear()


@pytest.fixture
def database() -> InMemoryDocumentDatabase:
    return InMemoryDocumentDatabase()


@pytest.fixture
def gate() -> RolePermissionGate:
    return RolePermissionGate()


@pytest.fixture
def store(database: InMemoryDocumentDatabase, gate: RolePermissionGate) -> CredentialStore:
    """An initialized provider store over an empty in-memory database."""
    s = CredentialStore(database, gate)
    asyncio.run(s.init(StoreConfig(name="credentialProvider")))
    return s


# ---------------------------------------------------------------------------
# Credential helpers
# ---------------------------------------------------------------------------


def generate_credentials(quantity: int, recipient: str | None = None) -> list[dict]:
    """Build credentials that all share one recipient (``did:<recipient>``)."""
    recipient = recipient or str(uuid.uuid4())
    credentials = []
    for _ in range(quantity):
        credential = copy.deepcopy(CREDENTIAL_TEMPLATE)
        credential["id"] = f"did:{uuid.uuid4()}"
        credential["claim"]["id"] = f"did:{recipient}"
        credentials.append(credential)
    return credentials


def insert_all(store: CredentialStore, credentials: list[dict], actor=None) -> None:
    async def _insert() -> None:
        for credential in credentials:
            await store.insert(actor, credential)

    asyncio.run(_insert())
