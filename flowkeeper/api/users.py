# Copyright (c) 2026 Flowkeeper Contributors. All Rights Reserved.

"""
Users API — First-user bootstrap and global user administration.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, Response
from pydantic import BaseModel, Field, field_validator, model_validator
from sqlalchemy.ext.asyncio import AsyncSession

from flowkeeper.api.deps import (
    get_current_user,
    get_db,
    get_identity_token,
    get_keeper,
    require_superadmin,
)
from flowkeeper.core.access import Granted
from flowkeeper.core.context import KeeperContext
from flowkeeper.core.errors import ConflictError, NotFoundError
from flowkeeper.core.identity import MEMBERSHIP_ROLES, Role, User
from flowkeeper.storage.repositories import (
    InstanceRepository,
    MembershipRepository,
    UserRepository,
)

logger = logging.getLogger("flowkeeper.api.users")

router = APIRouter(tags=["users"])


class UserCreateRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=200)
    email: str = Field(..., min_length=3, max_length=320)
    is_superadmin: bool = False
    instance_id: Optional[str] = None
    role: str = "User"

    @field_validator("email")
    @classmethod
    def _check_email(cls, value: str) -> str:
        value = value.strip().lower()
        if "@" not in value:
            raise ValueError("email must contain '@'")
        return value

    @field_validator("role")
    @classmethod
    def _check_role(cls, value: str) -> str:
        if value not in MEMBERSHIP_ROLES:
            raise ValueError(f"role must be one of {', '.join(MEMBERSHIP_ROLES)}")
        return value


USER_STATUSES = ("Active", "Invited")


class UserUpdateRequest(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=200)
    is_superadmin: Optional[bool] = None
    status: Optional[str] = None
    instance_id: Optional[str] = None
    role: Optional[str] = None

    @field_validator("status")
    @classmethod
    def _check_status(cls, value: Optional[str]) -> Optional[str]:
        if value is not None and value not in USER_STATUSES:
            raise ValueError(f"status must be one of {', '.join(USER_STATUSES)}")
        return value

    @field_validator("role")
    @classmethod
    def _check_role(cls, value: Optional[str]) -> Optional[str]:
        if value is not None and value not in MEMBERSHIP_ROLES:
            raise ValueError(f"role must be one of {', '.join(MEMBERSHIP_ROLES)}")
        return value

    @model_validator(mode="after")
    def _membership_pair(self) -> "UserUpdateRequest":
        if (self.instance_id is None) != (self.role is None):
            raise ValueError("instance_id and role must be given together")
        return self


class UserInfo(BaseModel):
    id: str
    name: str
    email: str
    is_superadmin: bool
    status: str
    created_at: Optional[datetime] = None

    @classmethod
    def of(cls, user: User) -> "UserInfo":
        return cls(
            id=user.id,
            name=user.name,
            email=user.email,
            is_superadmin=user.is_superadmin,
            status=user.status,
            created_at=user.created_at,
        )


class MeResponse(BaseModel):
    user: UserInfo
    instance_id: Optional[str] = None
    role: Optional[str] = None


@router.post("/users", response_model=UserInfo, status_code=201)
async def create_user(
    req: UserCreateRequest,
    response: Response,
    token: Optional[str] = Depends(get_identity_token),
    keeper: KeeperContext = Depends(get_keeper),
    db: AsyncSession = Depends(get_db),
):
    """
    Create a user.

    While the system has no users this creates the first one: a SuperAdmin
    who is also Admin of the default instance. Afterwards only SuperAdmins
    may create users.
    """
    gate = keeper.bootstrap_gate
    if await gate.is_bootstrapping():
        return await _bootstrap_first_user(req, response, keeper, db)

    outcome = await keeper.resolver.authorize_superadmin(token)
    if not outcome.ok:
        raise outcome.to_error()

    users = UserRepository(db)
    user = await users.create(req.name, req.email, is_superadmin=req.is_superadmin)
    if req.instance_id:
        if await InstanceRepository(db).get(req.instance_id) is None:
            raise NotFoundError("Instance", req.instance_id)
        await MembershipRepository(db).upsert(user.id, req.instance_id, Role.from_label(req.role))
    logger.info("User created id=%s by=%s", user.id, outcome.user.id if outcome.user else None)
    return UserInfo.of(user)


async def _bootstrap_first_user(
    req: UserCreateRequest,
    response: Response,
    keeper: KeeperContext,
    db: AsyncSession,
) -> UserInfo:
    user = await UserRepository(db).create_first_user(req.name, req.email)
    default = await InstanceRepository(db, keeper.settings.DEFAULT_INSTANCE_ID).ensure_default()
    await MembershipRepository(db).upsert(user.id, default.id, Role.ADMIN)
    # the gate may only close once the first user is durable
    await db.commit()
    keeper.bootstrap_gate.mark_operational()

    response.set_cookie(keeper.settings.USER_COOKIE, user.email, httponly=True, samesite="lax")
    response.set_cookie(keeper.settings.INSTANCE_COOKIE, default.id, httponly=True, samesite="lax")
    return UserInfo.of(user)


@router.get("/users", response_model=List[UserInfo])
async def list_users(
    access: Granted = Depends(require_superadmin()),
    db: AsyncSession = Depends(get_db),
):
    return [UserInfo.of(u) for u in await UserRepository(db).list_all()]


@router.patch("/users/{user_id}", response_model=UserInfo)
async def update_user(
    user_id: str,
    req: UserUpdateRequest,
    access: Granted = Depends(require_superadmin()),
    db: AsyncSession = Depends(get_db),
):
    """
    Rename a user, change their status, grant or revoke SuperAdmin, or change
    the role of a membership they already hold (instance_id + role).
    """
    users = UserRepository(db)
    user = await users.get(user_id)
    if user is None:
        raise NotFoundError("User", user_id)

    if req.is_superadmin is False and access.user is not None and access.user.id == user_id:
        raise ConflictError("You cannot revoke your own SuperAdmin role")

    if req.name is not None:
        user = await users.update_name(user_id, req.name)
    if req.status is not None:
        user = await users.set_status(user_id, req.status)
    if req.is_superadmin is not None and req.is_superadmin != user.is_superadmin:
        user = await users.set_superadmin(user_id, req.is_superadmin)
        logger.info(
            "SuperAdmin %s user=%s by=%s",
            "granted to" if req.is_superadmin else "revoked from",
            user_id,
            access.user.id if access.user else None,
        )
    if req.instance_id is not None:
        updated = await MembershipRepository(db).update_role(
            user_id, req.instance_id, Role.from_label(req.role),
        )
        if updated is None:
            raise NotFoundError("Membership", f"{user_id}@{req.instance_id}")
    return UserInfo.of(user)


@router.delete("/users/{user_id}", status_code=204)
async def delete_user(
    user_id: str,
    access: Granted = Depends(require_superadmin()),
    db: AsyncSession = Depends(get_db),
):
    if access.user is not None and access.user.id == user_id:
        raise ConflictError("You cannot delete your own account")
    if not await UserRepository(db).delete(user_id):
        raise NotFoundError("User", user_id)
    return Response(status_code=204)


@router.get("/me", response_model=MeResponse)
async def whoami(
    user: User = Depends(get_current_user),
    keeper: KeeperContext = Depends(get_keeper),
):
    """The caller, their effective instance and their role on it."""
    tenant_id = await keeper.resolver.effective_tenant(user)
    role = None
    if tenant_id is not None:
        access = await keeper.resolver.resolve_access(user, tenant_id)
        role = access.role.label if access.ok else None
    return MeResponse(user=UserInfo.of(user), instance_id=tenant_id, role=role)
