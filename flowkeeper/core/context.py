# Copyright (c) 2026 Flowkeeper Contributors. All Rights Reserved.

"""
Keeper Context — Composition root for the long-lived core components.

Built once in the application lifespan and stored on ``app.state.keeper``;
request handlers receive it through a FastAPI dependency.
"""

from __future__ import annotations

from typing import Any, Awaitable, Callable, Optional

from flowkeeper.core.access import AccessResolver
from flowkeeper.core.config import KeeperSettings, get_settings
from flowkeeper.core.crypto import SecretBox
from flowkeeper.pool.cache import PoolCache
from flowkeeper.pool.tenant_settings import TenantConnectionSettings
from flowkeeper.storage.directory import StoreDirectory


class KeeperContext:
    """Holds the resolver, the tenant pool cache and their store adapter."""

    def __init__(
        self,
        settings: Optional[KeeperSettings] = None,
        directory: Optional[StoreDirectory] = None,
        pool_factory: Optional[Callable[[TenantConnectionSettings], Awaitable[Any]]] = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.secrets = SecretBox(self.settings.ENCRYPTION_KEY)
        self.directory = directory or StoreDirectory(secrets=self.secrets)
        self.resolver = AccessResolver(self.directory, self.directory)
        self.pool_cache = PoolCache(
            self.directory.get_connection_settings,
            capacity=self.settings.MAX_TENANT_POOLS,
            pool_factory=pool_factory,
            default_tenant_id=self.settings.DEFAULT_INSTANCE_ID,
        )

    @property
    def bootstrap_gate(self):
        return self.resolver.bootstrap_gate

    async def close(self) -> None:
        await self.pool_cache.close_all()
