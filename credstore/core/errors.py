"""Error taxonomy for the credential store.

Every error carries a human message, a ``details`` mapping and a
``public`` flag.  ``public`` errors may be shown to an external caller
verbatim (e.g. "Credential not found."); everything else should be
reported generically by whatever surface sits above the store.
"""

from __future__ import annotations

from typing import Any


class CredentialStoreError(Exception):
    """Base class for all store errors."""

    http_status: int = 500
    public: bool = False

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details: dict[str, Any] = dict(details or {})

    @property
    def name(self) -> str:
        return type(self).__name__


class PermissionDenied(CredentialStoreError):
    http_status = 403

    def __init__(self, permission: str, actor_id: str | None = None) -> None:
        super().__init__(
            "Permission denied.",
            {"permission": permission, "actor": actor_id, "httpStatusCode": 403},
        )
        self.permission = permission
        self.actor_id = actor_id


class NotFound(CredentialStoreError):
    http_status = 404
    public = True

    def __init__(self, id: str) -> None:
        super().__init__(
            "Credential not found.",
            {"id": id, "httpStatusCode": 404, "public": True},
        )
        self.id = id


class DuplicateCredential(CredentialStoreError):
    http_status = 409

    def __init__(self, id: str) -> None:
        super().__init__(
            "Duplicate credential.",
            {"id": id, "httpStatusCode": 409},
        )
        self.id = id


class NotInitialized(CredentialStoreError):
    def __init__(self, store: str | None) -> None:
        super().__init__(
            "Credential store has not been initialized.", {"store": store}
        )
        self.store = store


class InitializationError(CredentialStoreError):
    def __init__(self, store: str, reason: str) -> None:
        super().__init__(
            f"Credential store {store!r} failed to initialize: {reason}",
            {"store": store},
        )
        self.store = store


class CredentialValidationError(CredentialStoreError, ValueError):
    http_status = 400
    public = True

    def __init__(self, field: str) -> None:
        super().__init__(
            f"Credential is missing required field {field!r}.",
            {"field": field, "httpStatusCode": 400, "public": True},
        )
        self.field = field
