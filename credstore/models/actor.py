from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True, slots=True)
class Actor:
    """Identity on whose behalf a store operation runs.

    Passed into every store call; never persisted by the store.

        id:    identity URL/DID of the caller (matched against credential
               issuer and recipient for owner-scoped permissions)
        roles: platform roles (e.g. admin, issuer)

    Store operations also accept ``None`` as the actor: the trusted
    system caller used for startup seeding and internal lookups.  An
    anonymous external caller is an Actor with no roles.
    """

    id: str
    roles: frozenset[str] = frozenset()
