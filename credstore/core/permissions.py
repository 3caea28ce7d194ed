"""Permission and context constants used by the credential stores."""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True, slots=True)
class Permission:
    id: str
    label: str
    comment: str


CREDENTIAL_ADMIN = Permission(
    id="CREDENTIAL_ADMIN",
    label="Credential Administration",
    comment="Required to administer Credentials.",
)
CREDENTIAL_ACCESS = Permission(
    id="CREDENTIAL_ACCESS",
    label="Access Credential",
    comment="Required to access a Credential.",
)
CREDENTIAL_INSERT = Permission(
    id="CREDENTIAL_INSERT",
    label="Insert a Credential into the database",
    comment="Required to insert a Credential.",
)
# Registered for permission engines; records are append-only so no store
# operation checks it.
CREDENTIAL_REMOVE = Permission(
    id="CREDENTIAL_REMOVE",
    label="Remove Credential",
    comment="Required to remove a Credential.",
)
IDENTITY_COMPOSE = Permission(
    id="IDENTITY_COMPOSE",
    label="Compose a view of an Identity from a set of Credentials.",
    comment="Required to compose an Identity from a set of Credentials.",
)

PERMISSIONS: dict[str, Permission] = {
    p.id: p
    for p in (
        CREDENTIAL_ADMIN,
        CREDENTIAL_ACCESS,
        CREDENTIAL_INSERT,
        CREDENTIAL_REMOVE,
        IDENTITY_COMPOSE,
    )
}

IDENTITY_CONTEXT_V1_URL = "https://w3id.org/identity/v1"
CREDENTIALS_CONTEXT_V1_URL = "https://w3id.org/credentials/v1"
