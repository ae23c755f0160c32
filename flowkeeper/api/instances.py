# Copyright (c) 2026 Flowkeeper Contributors. All Rights Reserved.

"""
Instances API — Instance CRUD, switching and membership management.
"""

from __future__ import annotations

import re
from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, Response
from pydantic import BaseModel, Field, field_validator
from sqlalchemy.ext.asyncio import AsyncSession

from flowkeeper.api.deps import (
    get_current_user,
    get_db,
    get_identity_token,
    get_keeper,
    require_instance_role,
    require_superadmin,
)
from flowkeeper.core.access import Granted
from flowkeeper.core.context import KeeperContext
from flowkeeper.core.errors import NotFoundError
from flowkeeper.core.identity import MEMBERSHIP_ROLES, Instance, Role, User
from flowkeeper.storage.repositories import (
    InstanceRepository,
    MembershipRepository,
    UserRepository,
)

router = APIRouter(prefix="/instances", tags=["instances"])

_SLUG_PATTERN = r"^[a-z0-9][a-z0-9-]*$"


class InstanceCreateRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=200)
    slug: str = Field(..., min_length=1, max_length=128)

    @field_validator("slug", mode="before")
    @classmethod
    def _normalize(cls, value):
        return value.strip().lower() if isinstance(value, str) else value

    @field_validator("slug")
    @classmethod
    def _check_slug(cls, value: str) -> str:
        if not re.match(_SLUG_PATTERN, value):
            raise ValueError("slug may contain lowercase letters, digits and dashes")
        return value


class InstanceUpdateRequest(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=200)
    slug: Optional[str] = Field(default=None, min_length=1, max_length=128)


class InstanceInfo(BaseModel):
    id: str
    name: str
    slug: str
    created_at: Optional[datetime] = None
    role: Optional[str] = None

    @classmethod
    def of(cls, inst: Instance, role: Optional[Role] = None) -> "InstanceInfo":
        return cls(
            id=inst.id,
            name=inst.name,
            slug=inst.slug,
            created_at=inst.created_at,
            role=role.label if role else None,
        )


class SwitchRequest(BaseModel):
    instance_id: str


class MemberRequest(BaseModel):
    role: str = "User"

    @field_validator("role")
    @classmethod
    def _check_role(cls, value: str) -> str:
        if value not in MEMBERSHIP_ROLES:
            raise ValueError(f"role must be one of {', '.join(MEMBERSHIP_ROLES)}")
        return value


class MemberInfo(BaseModel):
    user_id: str
    instance_id: str
    role: str
    email: Optional[str] = None
    name: Optional[str] = None


# ── Instances ───────────────────────────────────────────────


@router.get("", response_model=List[InstanceInfo])
async def list_instances(
    user: User = Depends(get_current_user),
    keeper: KeeperContext = Depends(get_keeper),
):
    """Instances the caller can switch to, with their role on each."""
    pairs = await keeper.resolver.list_accessible_instances(user)
    return [InstanceInfo.of(inst, role) for inst, role in pairs]


@router.post("", response_model=InstanceInfo, status_code=201)
async def create_instance(
    req: InstanceCreateRequest,
    access: Granted = Depends(require_superadmin()),
    db: AsyncSession = Depends(get_db),
):
    created_by = access.user.id if access.user else None
    inst = await InstanceRepository(db).create(req.name, req.slug, created_by=created_by)
    return InstanceInfo.of(inst)


@router.patch("/{instance_id}", response_model=InstanceInfo)
async def update_instance(
    instance_id: str,
    req: InstanceUpdateRequest,
    access: Granted = Depends(require_superadmin()),
    db: AsyncSession = Depends(get_db),
):
    inst = await InstanceRepository(db).update(instance_id, name=req.name, slug=req.slug)
    if inst is None:
        raise NotFoundError("Instance", instance_id)
    return InstanceInfo.of(inst)


@router.delete("/{instance_id}", status_code=204)
async def delete_instance(
    instance_id: str,
    access: Granted = Depends(require_superadmin()),
    keeper: KeeperContext = Depends(get_keeper),
    db: AsyncSession = Depends(get_db),
):
    deleted = await InstanceRepository(db, keeper.settings.DEFAULT_INSTANCE_ID).delete(instance_id)
    if not deleted:
        raise NotFoundError("Instance", instance_id)
    await keeper.pool_cache.invalidate(instance_id)
    return Response(status_code=204)


@router.post("/switch", response_model=InstanceInfo)
async def switch_instance(
    req: SwitchRequest,
    response: Response,
    token: Optional[str] = Depends(get_identity_token),
    keeper: KeeperContext = Depends(get_keeper),
    db: AsyncSession = Depends(get_db),
):
    """Remember the selected instance in a cookie after checking access."""
    outcome = await keeper.resolver.authorize(token, req.instance_id, Role.USER, allow_bootstrap=False)
    if not outcome.ok:
        raise outcome.to_error()
    inst = await InstanceRepository(db).get(req.instance_id)
    if inst is None:
        raise NotFoundError("Instance", req.instance_id)
    response.set_cookie(
        keeper.settings.INSTANCE_COOKIE,
        inst.id,
        httponly=True,
        samesite="lax",
    )
    return InstanceInfo.of(inst, outcome.role)


# ── Members ─────────────────────────────────────────────────


@router.get("/{instance_id}/members", response_model=List[MemberInfo])
async def list_members(
    instance_id: str,
    access: Granted = Depends(require_instance_role(Role.ADMIN)),
    db: AsyncSession = Depends(get_db),
):
    users = UserRepository(db)
    members = []
    for m in await MembershipRepository(db).list_for_instance(instance_id):
        user = await users.get(m.user_id)
        members.append(MemberInfo(
            user_id=m.user_id,
            instance_id=m.instance_id,
            role=m.role.label,
            email=user.email if user else None,
            name=user.name if user else None,
        ))
    return members


@router.put("/{instance_id}/members/{user_id}", response_model=MemberInfo)
async def put_member(
    instance_id: str,
    user_id: str,
    req: MemberRequest,
    access: Granted = Depends(require_instance_role(Role.ADMIN)),
    db: AsyncSession = Depends(get_db),
):
    """Add a user to the instance or change their role."""
    if await InstanceRepository(db).get(instance_id) is None:
        raise NotFoundError("Instance", instance_id)
    user = await UserRepository(db).get(user_id)
    if user is None:
        raise NotFoundError("User", user_id)
    m = await MembershipRepository(db).upsert(user_id, instance_id, Role.from_label(req.role))
    return MemberInfo(
        user_id=m.user_id,
        instance_id=m.instance_id,
        role=m.role.label,
        email=user.email,
        name=user.name,
    )


@router.delete("/{instance_id}/members/{user_id}", status_code=204)
async def remove_member(
    instance_id: str,
    user_id: str,
    access: Granted = Depends(require_instance_role(Role.ADMIN)),
    db: AsyncSession = Depends(get_db),
):
    if not await MembershipRepository(db).remove(user_id, instance_id):
        raise NotFoundError("Membership", f"{user_id}@{instance_id}")
    return Response(status_code=204)
