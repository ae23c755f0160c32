# Copyright (c) 2026 Flowkeeper Contributors. All Rights Reserved.

"""
API Dependencies — Identity extraction and access checks.

Identity:  session cookie (USER_COOKIE) holding the user's email, with an
           ``Authorization: Bearer <email>`` fallback for API clients.
Instance:  ``{instance_id}`` path parameter, else ``X-Instance-Id`` header,
           else the INSTANCE_COOKIE, else the caller's first instance.
"""

from __future__ import annotations

from typing import Optional

from fastapi import Depends, Request

from flowkeeper.core.access import Granted, NotAuthenticated
from flowkeeper.core.context import KeeperContext
from flowkeeper.core.identity import Role, User
from flowkeeper.storage.database import get_db  # noqa: F401  (re-exported for routers)


def get_keeper(request: Request) -> KeeperContext:
    """The composition root built by the application lifespan."""
    return request.app.state.keeper


def get_identity_token(request: Request, keeper: KeeperContext = Depends(get_keeper)) -> Optional[str]:
    token = request.cookies.get(keeper.settings.USER_COOKIE)
    if token:
        return token
    authorization = request.headers.get("Authorization", "")
    parts = authorization.split(" ")
    if len(parts) == 2 and parts[0].lower() == "bearer" and parts[1]:
        return parts[1]
    return None


def get_requested_instance(
    request: Request, keeper: KeeperContext = Depends(get_keeper)
) -> Optional[str]:
    return (
        request.path_params.get("instance_id")
        or request.headers.get("X-Instance-Id")
        or request.cookies.get(keeper.settings.INSTANCE_COOKIE)
        or None
    )


async def get_current_user(
    token: Optional[str] = Depends(get_identity_token),
    keeper: KeeperContext = Depends(get_keeper),
) -> User:
    user = await keeper.resolver.resolve_user(token)
    if isinstance(user, NotAuthenticated):
        raise user.to_error()
    return user


def require_instance_role(minimum: Role, allow_bootstrap: bool = False):
    """
    Dependency factory for instance-scoped routes.

    Usage:

    @router.get("/settings")
    async def read(access: Granted = Depends(require_instance_role(Role.ADMIN))):
        ...
    """

    async def dependency(
        token: Optional[str] = Depends(get_identity_token),
        requested: Optional[str] = Depends(get_requested_instance),
        keeper: KeeperContext = Depends(get_keeper),
    ) -> Granted:
        outcome = await keeper.resolver.authorize(
            token, requested, minimum, allow_bootstrap=allow_bootstrap,
        )
        if not outcome.ok:
            raise outcome.to_error()
        if outcome.tenant_id is None:
            # bootstrap without an explicit instance operates on the default one
            return Granted(
                user=outcome.user,
                role=outcome.role,
                tenant_id=keeper.settings.DEFAULT_INSTANCE_ID,
                bootstrap=outcome.bootstrap,
            )
        return outcome

    return dependency


def require_superadmin(allow_bootstrap: bool = False):
    """Dependency factory for global administration routes."""

    async def dependency(
        token: Optional[str] = Depends(get_identity_token),
        keeper: KeeperContext = Depends(get_keeper),
    ) -> Granted:
        outcome = await keeper.resolver.authorize_superadmin(token, allow_bootstrap=allow_bootstrap)
        if not outcome.ok:
            raise outcome.to_error()
        return outcome

    return dependency
