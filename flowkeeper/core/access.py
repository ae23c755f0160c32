# Copyright (c) 2026 Flowkeeper Contributors. All Rights Reserved.

"""
Access Resolver — Effective role of a caller on an instance.

Precedence is decided in one place and produced as a single ordered Role:

    SuperAdmin (global flag) > Admin (membership) > User (membership) > no access

Client-supplied role claims are never trusted; every decision is re-derived
from the identity and membership stores. Denials are returned as outcome
values (NotAuthenticated / NoAccess / Forbidden) so callers can tell 401 from
403. Store failures propagate as StoreError.

Collaborators (duck-typed):
  identity_store:   find_user_by_identity(token) -> User | None
                    count_users() -> int
  membership_store: find_membership(user_id, instance_id) -> Membership | None
                    list_memberships_for_user(user_id) -> [Membership]
                        (ordered by instance creation)
                    list_instances_for_user(user_id) -> [(Instance, Role)]
                        (unpaged, ordered by instance creation)
                    list_instances() -> [Instance]  (creation order)
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import ClassVar, List, Optional, Tuple, Union

from flowkeeper.core.bootstrap import BootstrapGate
from flowkeeper.core.errors import ForbiddenError, KeeperError, NotAuthenticatedError
from flowkeeper.core.identity import Instance, Role, User
from flowkeeper.core.metrics import keeper_metrics

logger = logging.getLogger("flowkeeper.access")


# ── Outcomes ────────────────────────────────────────────────


@dataclass(frozen=True)
class Granted:
    """Caller may act on the instance with the given role."""

    user: Optional[User]
    role: Role
    tenant_id: Optional[str] = None
    bootstrap: bool = False

    ok: ClassVar[bool] = True
    status_code: ClassVar[int] = 200


@dataclass(frozen=True)
class NotAuthenticated:
    reason: str = "Not authenticated"

    ok: ClassVar[bool] = False
    status_code: ClassVar[int] = 401

    def to_error(self) -> KeeperError:
        return NotAuthenticatedError(self.reason)


@dataclass(frozen=True)
class NoAccess:
    tenant_id: Optional[str] = None

    ok: ClassVar[bool] = False
    status_code: ClassVar[int] = 403

    @property
    def reason(self) -> str:
        return "No access to this instance"

    def to_error(self) -> KeeperError:
        return ForbiddenError(self.reason)


@dataclass(frozen=True)
class Forbidden:
    reason: str

    ok: ClassVar[bool] = False
    status_code: ClassVar[int] = 403

    def to_error(self) -> KeeperError:
        return ForbiddenError(self.reason)


Denied = Union[NotAuthenticated, NoAccess, Forbidden]
AccessOutcome = Union[Granted, NotAuthenticated, NoAccess, Forbidden]


# ── Resolver ────────────────────────────────────────────────


class AccessResolver:
    """Derives effective access for (user, instance) pairs."""

    def __init__(
        self,
        identity_store,
        membership_store,
        bootstrap_gate: Optional[BootstrapGate] = None,
    ) -> None:
        self._identity = identity_store
        self._memberships = membership_store
        self._gate = bootstrap_gate or BootstrapGate(identity_store)

    @property
    def bootstrap_gate(self) -> BootstrapGate:
        return self._gate

    async def resolve_user(
        self, identity_token: Optional[str]
    ) -> Union[User, NotAuthenticated]:
        """Look up the caller from an opaque identity token (the session email)."""
        if not identity_token:
            return NotAuthenticated()
        user = await self._identity.find_user_by_identity(identity_token)
        if user is None:
            return NotAuthenticated("User not found")
        return user

    async def resolve_access(
        self, user: User, tenant_id: str
    ) -> Union[Granted, NoAccess]:
        if user.is_superadmin:
            return Granted(user=user, role=Role.SUPERADMIN, tenant_id=tenant_id)

        membership = await self._memberships.find_membership(user.id, tenant_id)
        if membership is None:
            return NoAccess(tenant_id)
        return Granted(user=user, role=membership.role, tenant_id=tenant_id)

    async def require_role(
        self, user: User, tenant_id: str, minimum: Role
    ) -> Union[Granted, Forbidden]:
        access = await self.resolve_access(user, tenant_id)
        if not access.ok:
            return Forbidden(access.reason)
        if access.role < minimum:
            return Forbidden(f"Instance {minimum.label} role required")
        return access

    async def effective_tenant(
        self, user: User, requested_tenant_id: Optional[str] = None
    ) -> Optional[str]:
        """
        Pick the instance a request operates on.

        An explicit request wins (still subject to require_role). Otherwise
        the caller's first membership, or the oldest instance for SuperAdmins.
        """
        if requested_tenant_id:
            return requested_tenant_id
        if user.is_superadmin:
            instances = await self._memberships.list_instances()
            return instances[0].id if instances else None
        memberships = await self._memberships.list_memberships_for_user(user.id)
        return memberships[0].instance_id if memberships else None

    async def list_accessible_instances(self, user: User) -> List[Tuple[Instance, Role]]:
        """Instances the user can switch to, with the role held on each."""
        if user.is_superadmin:
            return [(inst, Role.ADMIN) for inst in await self._memberships.list_instances()]
        return await self._memberships.list_instances_for_user(user.id)

    # ── Request pipelines ───────────────────────────────────────

    async def authorize(
        self,
        identity_token: Optional[str],
        tenant_id: Optional[str],
        minimum: Role = Role.USER,
        allow_bootstrap: bool = True,
    ) -> AccessOutcome:
        """
        Full check for a tenant-scoped request.

        When tenant_id is None the caller's effective instance is used.
        """
        if allow_bootstrap and await self._gate.is_bootstrapping():
            logger.info("Bootstrap mode: permission check bypassed")
            return Granted(user=None, role=Role.SUPERADMIN, tenant_id=tenant_id, bootstrap=True)

        user = await self.resolve_user(identity_token)
        if isinstance(user, NotAuthenticated):
            return self._record(user)

        effective = await self.effective_tenant(user, tenant_id)
        if effective is None:
            return self._record(NoAccess(None))

        return self._record(await self.require_role(user, effective, minimum))

    async def authorize_superadmin(
        self,
        identity_token: Optional[str],
        allow_bootstrap: bool = False,
    ) -> AccessOutcome:
        """Check for global administration (instances, users)."""
        if allow_bootstrap and await self._gate.is_bootstrapping():
            logger.info("Bootstrap mode: SuperAdmin check bypassed")
            return Granted(user=None, role=Role.SUPERADMIN, bootstrap=True)

        user = await self.resolve_user(identity_token)
        if isinstance(user, NotAuthenticated):
            return self._record(user)
        if not user.is_superadmin:
            return self._record(Forbidden("SuperAdmin role required"))
        return self._record(Granted(user=user, role=Role.SUPERADMIN))

    @staticmethod
    def _record(outcome: AccessOutcome) -> AccessOutcome:
        if outcome.ok:
            keeper_metrics.inc("access_granted")
        else:
            kind = type(outcome).__name__.lower()
            keeper_metrics.inc(f"access_denied:{kind}")
            logger.info("Access denied: %s", kind)
        return outcome
