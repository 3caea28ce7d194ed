"""Credential and record helpers.

A credential is an opaque JSON object; the store only reads the few
fields it needs to derive lookup keys and to decide visibility:

    id          global identifier                 -> record.id
    issuer      issuer identifier                 -> record.issuer
    claim.id    recipient (rule "claim.id")       -> record.recipient
    recipient   recipient (rule "recipient")      -> record.recipient
    sysPublic   "*" (or a list holding "*") marks a world-readable credential
"""

from __future__ import annotations

import time
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

from credstore.core.config import RecipientField
from credstore.core.errors import CredentialValidationError

PUBLIC_SENTINEL = "*"


@dataclass(frozen=True, slots=True)
class Meta:
    created: int  # ms since epoch
    updated: int

    @staticmethod
    def new(now: int | None = None) -> Meta:
        if now is None:
            now = int(time.time() * 1000)
        return Meta(created=now, updated=now)

    def to_dict(self) -> dict[str, int]:
        return {"created": self.created, "updated": self.updated}


def _required(credential: Mapping[str, Any], field: str) -> Any:
    value = credential.get(field)
    if value is None or value == "":
        raise CredentialValidationError(field)
    return value


def credential_id(credential: Mapping[str, Any]) -> str:
    return _required(credential, "id")


def issuer_of(credential: Mapping[str, Any]) -> str:
    return _required(credential, "issuer")


def recipient_of(credential: Mapping[str, Any], rule: RecipientField) -> str:
    """Read the recipient identifier using exactly one rule."""
    if rule == "recipient":
        return _required(credential, "recipient")
    claim = credential.get("claim")
    if not isinstance(claim, Mapping):
        raise CredentialValidationError("claim.id")
    recipient = claim.get("id")
    if recipient is None or recipient == "":
        raise CredentialValidationError("claim.id")
    return recipient


def recipient_key(rule: RecipientField) -> str:
    """Top-level credential field a permission engine translates for the recipient."""
    return "recipient" if rule == "recipient" else "claim"


def is_public(credential: Mapping[str, Any]) -> bool:
    value = credential.get("sysPublic")
    if isinstance(value, list):
        return PUBLIC_SENTINEL in value
    return value == PUBLIC_SENTINEL


def claim_properties(credential: Mapping[str, Any]) -> set[str]:
    claim = credential.get("claim")
    if not isinstance(claim, Mapping):
        return set()
    return {p for p in claim if p != "id"}


def credential_types(credential: Mapping[str, Any]) -> set[str]:
    value = credential.get("type")
    if value is None:
        return set()
    if isinstance(value, str):
        return {value}
    return {t for t in value if isinstance(t, str)}
