# Copyright (c) 2026 Flowkeeper Contributors. All Rights Reserved.

"""
Repository Layer — CRUD over the control-plane tables.

Each repository takes an AsyncSession and returns the value objects from
flowkeeper.core.identity. Driver/SQLAlchemy failures surface as StoreError;
unique-constraint violations as ConflictError.
"""

from __future__ import annotations

import functools
import logging
from typing import List, Optional, Tuple

from sqlalchemy import delete, func, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from flowkeeper.core.config import get_settings
from flowkeeper.core.crypto import SecretBox, SecretDecryptionError
from flowkeeper.core.errors import (
    BootstrapClosedError,
    ConflictError,
    DefaultInstanceProtectedError,
    KeeperError,
    StoreError,
    format_app_db_error,
)
from flowkeeper.core.identity import Instance, Membership, Role, User
from flowkeeper.pool.tenant_settings import InstanceSettings, TenantConnectionSettings
from flowkeeper.storage.models import (
    AppSetting,
    AppUser,
    InstanceRow,
    MembershipRow,
    SystemBootstrap,
)

logger = logging.getLogger("flowkeeper.store")


def store_call(fn):
    """Translate infrastructure exceptions into the store error taxonomy."""

    @functools.wraps(fn)
    async def wrapper(*args, **kwargs):
        try:
            return await fn(*args, **kwargs)
        except KeeperError:
            raise
        except IntegrityError as exc:
            raise ConflictError("Record conflicts with an existing one") from exc
        except (SQLAlchemyError, OSError) as exc:
            logger.error("Store call %s failed: %s", fn.__qualname__, exc)
            raise StoreError(format_app_db_error(exc)) from exc

    return wrapper


def _normalize_email(email: str) -> str:
    return email.strip().lower()


def _normalize_slug(slug: str) -> str:
    return slug.strip().lower()


def _to_user(row: AppUser) -> User:
    return User(
        id=row.id,
        name=row.name,
        email=row.email,
        is_superadmin=bool(row.is_superadmin),
        status=row.status,
        has_password=bool(row.password_hash),
        created_at=row.created_at,
    )


def _to_instance(row: InstanceRow) -> Instance:
    return Instance(
        id=row.id,
        name=row.name,
        slug=row.slug,
        created_at=row.created_at,
        created_by=row.created_by,
    )


def _to_membership(row: MembershipRow) -> Membership:
    return Membership(
        user_id=row.user_id,
        instance_id=row.instance_id,
        role=Role.from_label(row.role),
        created_at=row.created_at,
    )


# ── User Repository ─────────────────────────────────────────

class UserRepository:
    def __init__(self, db: AsyncSession):
        self.db = db

    @store_call
    async def find_by_identity(self, token: str) -> Optional[User]:
        """Resolve a session identity token (the user's email)."""
        return await self.get_by_email(token)

    @store_call
    async def get_by_email(self, email: str) -> Optional[User]:
        result = await self.db.execute(
            select(AppUser).where(AppUser.email == _normalize_email(email))
        )
        row = result.scalar_one_or_none()
        return _to_user(row) if row else None

    @store_call
    async def get(self, user_id: str) -> Optional[User]:
        row = await self.db.get(AppUser, user_id)
        return _to_user(row) if row else None

    @store_call
    async def count(self) -> int:
        result = await self.db.execute(select(func.count()).select_from(AppUser))
        return int(result.scalar() or 0)

    @store_call
    async def list_all(self) -> List[User]:
        result = await self.db.execute(select(AppUser).order_by(AppUser.created_at.asc()))
        return [_to_user(r) for r in result.scalars().all()]

    @store_call
    async def create(
        self,
        name: str,
        email: str,
        is_superadmin: bool = False,
        status: str = "Invited",
    ) -> User:
        existing = await self.get_by_email(email)
        if existing:
            raise ConflictError(f"User with email '{email}' already exists")
        row = AppUser(
            name=name.strip(),
            email=_normalize_email(email),
            is_superadmin=is_superadmin,
            status=status,
        )
        self.db.add(row)
        await self.db.flush()
        return _to_user(row)

    async def create_first_user(self, name: str, email: str) -> User:
        """
        Create the first (SuperAdmin) user.

        The singleton system_bootstrap row is written in the same transaction;
        its primary key makes a concurrent second bootstrap fail instead of
        silently creating another SuperAdmin.
        """
        try:
            if await self.count() > 0:
                raise BootstrapClosedError()
            row = AppUser(
                name=name.strip(),
                email=_normalize_email(email),
                is_superadmin=True,
                status="Invited",
            )
            self.db.add(row)
            await self.db.flush()
            self.db.add(SystemBootstrap(id=1, first_user_id=row.id))
            await self.db.flush()
        except IntegrityError as exc:
            raise BootstrapClosedError() from exc
        except SQLAlchemyError as exc:
            raise StoreError(format_app_db_error(exc)) from exc
        logger.info("Bootstrap: first user created id=%s", row.id)
        return _to_user(row)

    @store_call
    async def update_name(self, user_id: str, name: str) -> Optional[User]:
        row = await self.db.get(AppUser, user_id)
        if row is None:
            return None
        row.name = name.strip()
        await self.db.flush()
        return _to_user(row)

    @store_call
    async def set_superadmin(self, user_id: str, is_superadmin: bool) -> Optional[User]:
        row = await self.db.get(AppUser, user_id)
        if row is None:
            return None
        row.is_superadmin = is_superadmin
        await self.db.flush()
        return _to_user(row)

    @store_call
    async def set_status(self, user_id: str, status: str) -> Optional[User]:
        row = await self.db.get(AppUser, user_id)
        if row is None:
            return None
        row.status = status
        await self.db.flush()
        return _to_user(row)

    @store_call
    async def delete(self, user_id: str) -> bool:
        """Delete a user and every membership they hold."""
        await self.db.execute(delete(MembershipRow).where(MembershipRow.user_id == user_id))
        result = await self.db.execute(delete(AppUser).where(AppUser.id == user_id))
        return result.rowcount > 0


# ── Instance Repository ─────────────────────────────────────

class InstanceRepository:
    def __init__(self, db: AsyncSession, default_instance_id: Optional[str] = None):
        self.db = db
        self.default_instance_id = default_instance_id or get_settings().DEFAULT_INSTANCE_ID

    @store_call
    async def list_all(self, limit: Optional[int] = None, offset: int = 0) -> List[Instance]:
        query = (
            select(InstanceRow)
            .order_by(InstanceRow.created_at.asc(), InstanceRow.id.asc())
            .offset(offset)
        )
        if limit is not None:
            query = query.limit(limit)
        result = await self.db.execute(query)
        return [_to_instance(r) for r in result.scalars().all()]

    @store_call
    async def get(self, instance_id: str) -> Optional[Instance]:
        row = await self.db.get(InstanceRow, instance_id)
        return _to_instance(row) if row else None

    @store_call
    async def get_by_slug(self, slug: str) -> Optional[Instance]:
        result = await self.db.execute(
            select(InstanceRow).where(InstanceRow.slug == _normalize_slug(slug))
        )
        row = result.scalar_one_or_none()
        return _to_instance(row) if row else None

    @store_call
    async def create(
        self,
        name: str,
        slug: str,
        created_by: Optional[str] = None,
        instance_id: Optional[str] = None,
    ) -> Instance:
        if await self.get_by_slug(slug):
            raise ConflictError(f"Slug '{_normalize_slug(slug)}' is already in use")
        row = InstanceRow(
            name=name.strip(),
            slug=_normalize_slug(slug),
            created_by=created_by,
        )
        if instance_id:
            row.id = instance_id
        self.db.add(row)
        await self.db.flush()
        return _to_instance(row)

    @store_call
    async def update(
        self,
        instance_id: str,
        name: Optional[str] = None,
        slug: Optional[str] = None,
    ) -> Optional[Instance]:
        row = await self.db.get(InstanceRow, instance_id)
        if row is None:
            return None
        if name is not None:
            row.name = name.strip()
        if slug is not None:
            new_slug = _normalize_slug(slug)
            if new_slug != row.slug:
                clash = await self.get_by_slug(new_slug)
                if clash and clash.id != instance_id:
                    raise ConflictError(f"Slug '{new_slug}' is already in use")
                row.slug = new_slug
        await self.db.flush()
        return _to_instance(row)

    @store_call
    async def delete(self, instance_id: str) -> bool:
        """Delete an instance with its memberships and settings. Never the default one."""
        if instance_id == self.default_instance_id:
            raise DefaultInstanceProtectedError(instance_id)
        await self.db.execute(
            delete(MembershipRow).where(MembershipRow.instance_id == instance_id)
        )
        await self.db.execute(delete(AppSetting).where(AppSetting.key == instance_id))
        result = await self.db.execute(delete(InstanceRow).where(InstanceRow.id == instance_id))
        return result.rowcount > 0

    @store_call
    async def ensure_default(self) -> Instance:
        """Create the reserved default instance if it does not exist yet."""
        existing = await self.get(self.default_instance_id)
        if existing:
            return existing
        row = InstanceRow(
            id=self.default_instance_id,
            name="Default Instance",
            slug="default",
        )
        self.db.add(row)
        await self.db.flush()
        logger.info("Created default instance id=%s", row.id)
        return _to_instance(row)


# ── Membership Repository ───────────────────────────────────

class MembershipRepository:
    def __init__(self, db: AsyncSession):
        self.db = db

    @store_call
    async def find(self, user_id: str, instance_id: str) -> Optional[Membership]:
        row = await self.db.get(MembershipRow, (user_id, instance_id))
        return _to_membership(row) if row else None

    @store_call
    async def list_for_user(self, user_id: str) -> List[Membership]:
        """Memberships ordered by the instance's creation time."""
        result = await self.db.execute(
            select(MembershipRow)
            .join(InstanceRow, InstanceRow.id == MembershipRow.instance_id)
            .where(MembershipRow.user_id == user_id)
            .order_by(InstanceRow.created_at.asc(), InstanceRow.id.asc())
        )
        return [_to_membership(r) for r in result.scalars().all()]

    @store_call
    async def list_instances_for_user(self, user_id: str) -> List[Tuple[Instance, Role]]:
        """Every instance the user is a member of, with the role held, oldest first."""
        result = await self.db.execute(
            select(InstanceRow, MembershipRow.role)
            .join(MembershipRow, MembershipRow.instance_id == InstanceRow.id)
            .where(MembershipRow.user_id == user_id)
            .order_by(InstanceRow.created_at.asc(), InstanceRow.id.asc())
        )
        return [(_to_instance(row), Role.from_label(role)) for row, role in result.all()]

    @store_call
    async def list_for_instance(self, instance_id: str) -> List[Membership]:
        result = await self.db.execute(
            select(MembershipRow)
            .where(MembershipRow.instance_id == instance_id)
            .order_by(MembershipRow.created_at.asc())
        )
        return [_to_membership(r) for r in result.scalars().all()]

    @store_call
    async def upsert(self, user_id: str, instance_id: str, role: Role) -> Membership:
        if not role.is_membership_role:
            raise ValueError("SuperAdmin is a global flag, not a membership role")
        row = await self.db.get(MembershipRow, (user_id, instance_id))
        if row is None:
            row = MembershipRow(user_id=user_id, instance_id=instance_id, role=role.label)
            self.db.add(row)
        else:
            row.role = role.label
        await self.db.flush()
        return _to_membership(row)

    @store_call
    async def update_role(self, user_id: str, instance_id: str, role: Role) -> Optional[Membership]:
        if not role.is_membership_role:
            raise ValueError("SuperAdmin is a global flag, not a membership role")
        row = await self.db.get(MembershipRow, (user_id, instance_id))
        if row is None:
            return None
        row.role = role.label
        await self.db.flush()
        return _to_membership(row)

    @store_call
    async def remove(self, user_id: str, instance_id: str) -> bool:
        result = await self.db.execute(
            delete(MembershipRow).where(
                MembershipRow.user_id == user_id,
                MembershipRow.instance_id == instance_id,
            )
        )
        return result.rowcount > 0


# ── Settings Repository ─────────────────────────────────────

class SettingsRepository:
    def __init__(self, db: AsyncSession, secrets: Optional[SecretBox] = None):
        self.db = db
        self.secrets = secrets or SecretBox(get_settings().ENCRYPTION_KEY)

    @store_call
    async def get_settings(self, instance_id: str) -> InstanceSettings:
        result = await self.db.execute(select(AppSetting).where(AppSetting.key == instance_id))
        row = result.scalar_one_or_none()
        if row is None:
            return InstanceSettings()

        stored = dict(row.value or {})
        db_section = dict(stored.get("db") or {})
        password = db_section.get("password") or ""
        if password and SecretBox.looks_encrypted(password):
            try:
                db_section["password"] = self.secrets.decrypt(password)
            except SecretDecryptionError:
                logger.error("Could not decrypt DB password for instance=%s", instance_id)
                db_section["password"] = ""
        stored["db"] = db_section
        return InstanceSettings.merged(stored)

    async def get_connection_settings(self, instance_id: str) -> TenantConnectionSettings:
        return (await self.get_settings(instance_id)).db

    @store_call
    async def save_settings(self, instance_id: str, settings: InstanceSettings) -> InstanceSettings:
        document = settings.model_dump()
        document["db"]["password"] = self.secrets.encrypt(settings.db.password)

        result = await self.db.execute(select(AppSetting).where(AppSetting.key == instance_id))
        row = result.scalar_one_or_none()
        if row is None:
            self.db.add(AppSetting(key=instance_id, value=document))
        else:
            row.value = document
        await self.db.flush()
        return settings
