# Copyright (c) 2026 Flowkeeper Contributors. All Rights Reserved.

"""
Store Directory — Session-per-call adapter over the repositories.

AccessResolver and PoolCache live for the whole process, so they cannot
hold a request's AsyncSession. StoreDirectory opens a short session for each
lookup and exposes exactly the collaborator calls those components need.
"""

from __future__ import annotations

from typing import Awaitable, Callable, List, Optional, Tuple

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from flowkeeper.core.crypto import SecretBox
from flowkeeper.core.identity import Instance, Membership, Role, User
from flowkeeper.pool.tenant_settings import TenantConnectionSettings
from flowkeeper.storage.database import get_session_factory
from flowkeeper.storage.repositories import (
    InstanceRepository,
    MembershipRepository,
    SettingsRepository,
    UserRepository,
)

SessionFactoryProvider = Callable[[], Awaitable[async_sessionmaker[AsyncSession]]]


class StoreDirectory:
    def __init__(
        self,
        session_factory_provider: SessionFactoryProvider = get_session_factory,
        secrets: Optional[SecretBox] = None,
    ) -> None:
        self._provider = session_factory_provider
        self._secrets = secrets

    async def _session(self) -> AsyncSession:
        factory = await self._provider()
        return factory()

    # ── Identity store ──────────────────────────────────────────

    async def find_user_by_identity(self, token: str) -> Optional[User]:
        async with await self._session() as db:
            return await UserRepository(db).find_by_identity(token)

    async def count_users(self) -> int:
        async with await self._session() as db:
            return await UserRepository(db).count()

    # ── Membership store ────────────────────────────────────────

    async def find_membership(self, user_id: str, instance_id: str) -> Optional[Membership]:
        async with await self._session() as db:
            return await MembershipRepository(db).find(user_id, instance_id)

    async def list_memberships_for_user(self, user_id: str) -> List[Membership]:
        async with await self._session() as db:
            return await MembershipRepository(db).list_for_user(user_id)

    async def list_instances_for_user(self, user_id: str) -> List[Tuple[Instance, Role]]:
        async with await self._session() as db:
            return await MembershipRepository(db).list_instances_for_user(user_id)

    async def list_instances(self) -> List[Instance]:
        async with await self._session() as db:
            return await InstanceRepository(db).list_all()

    # ── Settings store ──────────────────────────────────────────

    async def get_connection_settings(self, instance_id: str) -> TenantConnectionSettings:
        async with await self._session() as db:
            return await SettingsRepository(db, self._secrets).get_connection_settings(instance_id)
