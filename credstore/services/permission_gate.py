"""Permission gate: may this actor do this to that resource?

The store asks one question per operation:

    await gate.check(actor, CREDENTIAL_ACCESS, ResourceView(credential,
                     translate=("issuer", "claim")))

and either gets on with it or propagates PermissionDenied.

RESOURCE VIEWS AND TRANSLATION
-------------------------------
A credential is not an identity, but it *names* identities: its issuer
and its recipient.  ``translate`` lists the resource fields whose values
are identities.  A field holding a string is an identity id; a field
holding an object contributes its ``id`` (so ``claim`` translates to
``claim.id``).  An actor whose id appears among the translated
identities is an *owner* of the resource.

When a translated field is missing from the resource (the caller
projected it away), the gate calls ``view.get`` once to fetch the full
stored resource and translates that instead.

THE ROLE GATE
-------------
RolePermissionGate is the default engine:

  1. actor None (system)             -> allow
  2. a role of the actor grants it   -> allow, whatever the resource
  3. actor owns the resource and the
     permission is owner-grantable   -> allow
  4. otherwise                       -> PermissionDenied

Any other engine can stand in by satisfying the PermissionGate Protocol.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass
from typing import Any, Protocol, runtime_checkable

from credstore.core.errors import PermissionDenied
from credstore.core.metrics import PERMISSION_CHECKS
from credstore.core.permissions import (
    CREDENTIAL_ACCESS,
    CREDENTIAL_INSERT,
    IDENTITY_COMPOSE,
    PERMISSIONS,
    Permission,
)
from credstore.models.actor import Actor

logger = logging.getLogger(__name__)

ResourceGetter = Callable[[Any], Awaitable[Mapping[str, Any]]]


@dataclass(frozen=True, slots=True)
class ResourceView:
    """What a permission is checked against.

    resource:  a document, or an identity id string
    translate: resource fields whose values name identities
    get:       lazy lookup of the full resource when a translated field is missing
    """

    resource: Any
    translate: tuple[str, ...] = ()
    get: ResourceGetter | None = None


@runtime_checkable
class PermissionGate(Protocol):
    async def check(
        self,
        actor: Actor | None,
        permission: Permission,
        view: ResourceView | None = None,
    ) -> None:
        """Return if allowed; raise PermissionDenied otherwise."""
        ...


DEFAULT_ROLE_PERMISSIONS: dict[str, frozenset[str]] = {
    "admin": frozenset(PERMISSIONS),
    # issuers, curators and aggregators handling other people's credentials
    "curator": frozenset(
        {CREDENTIAL_ACCESS.id, CREDENTIAL_INSERT.id, IDENTITY_COMPOSE.id}
    ),
}

DEFAULT_OWNER_PERMISSIONS: frozenset[str] = frozenset(
    {CREDENTIAL_ACCESS.id, CREDENTIAL_INSERT.id, IDENTITY_COMPOSE.id}
)


def _identity_ids(value: Any) -> set[str]:
    if isinstance(value, str):
        return {value}
    if isinstance(value, Mapping):
        id_ = value.get("id")
        return {id_} if isinstance(id_, str) else set()
    if isinstance(value, list):
        ids: set[str] = set()
        for item in value:
            ids |= _identity_ids(item)
        return ids
    return set()


async def resource_identities(view: ResourceView) -> set[str]:
    """Translate a resource view into the identity ids it names."""
    resource = view.resource
    if isinstance(resource, str):
        return {resource}
    if not isinstance(resource, Mapping):
        return set()

    fetched = False
    ids: set[str] = set()
    for field in view.translate:
        value = resource.get(field)
        if value is None and view.get is not None and not fetched:
            resource = await view.get(resource)
            fetched = True
            value = resource.get(field)
        ids |= _identity_ids(value)
    return ids


class RolePermissionGate:
    """Role- and ownership-based permission engine."""

    def __init__(
        self,
        role_permissions: Mapping[str, frozenset[str]] | None = None,
        owner_permissions: frozenset[str] | None = None,
    ) -> None:
        self._role_permissions = dict(
            DEFAULT_ROLE_PERMISSIONS if role_permissions is None else role_permissions
        )
        self._owner_permissions = (
            DEFAULT_OWNER_PERMISSIONS if owner_permissions is None else owner_permissions
        )

    def granted_by_roles(self, actor: Actor) -> set[str]:
        granted: set[str] = set()
        for role in actor.roles:
            granted |= self._role_permissions.get(role, frozenset())
        return granted

    async def _allowed(
        self, actor: Actor, permission: Permission, view: ResourceView | None
    ) -> bool:
        if permission.id in self.granted_by_roles(actor):
            return True
        if view is None or permission.id not in self._owner_permissions:
            return False
        return actor.id in await resource_identities(view)

    async def check(
        self,
        actor: Actor | None,
        permission: Permission,
        view: ResourceView | None = None,
    ) -> None:
        if actor is None:
            PERMISSION_CHECKS.labels(permission=permission.id, result="allow").inc()
            return

        if await self._allowed(actor, permission, view):
            PERMISSION_CHECKS.labels(permission=permission.id, result="allow").inc()
            return

        PERMISSION_CHECKS.labels(permission=permission.id, result="deny").inc()
        logger.warning(
            "Access denied: actor=%s permission=%s",
            actor.id,
            permission.id,
            extra={"actor": actor.id},
        )
        raise PermissionDenied(permission.id, actor.id)
