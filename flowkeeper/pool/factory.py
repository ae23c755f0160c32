# Copyright (c) 2026 Flowkeeper Contributors. All Rights Reserved.

"""
Tenant Engine Factory — Build and verify an instance's database pool.
"""

from __future__ import annotations

import logging
from typing import Awaitable, Callable

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine

from flowkeeper.core.config import get_settings
from flowkeeper.pool.tenant_settings import TenantConnectionSettings

logger = logging.getLogger("flowkeeper.pool")

PoolFactory = Callable[[TenantConnectionSettings], Awaitable[AsyncEngine]]


async def create_tenant_engine(conn: TenantConnectionSettings) -> AsyncEngine:
    """
    Create an AsyncEngine for an instance database and prove it connects.

    The engine is disposed before re-raising if the first connection fails,
    so a broken pool never escapes.
    """
    cfg = get_settings()
    engine = create_async_engine(
        conn.to_url(),
        pool_size=cfg.TENANT_POOL_SIZE,
        max_overflow=cfg.TENANT_POOL_MAX_OVERFLOW,
        pool_pre_ping=True,
        connect_args=conn.connect_args(cfg.TENANT_CONNECT_TIMEOUT),
    )
    try:
        async with engine.connect() as db:
            await db.execute(text("SELECT 1"))
    except BaseException:
        await engine.dispose()
        raise
    logger.info("Tenant engine ready host=%s db=%s", conn.host, conn.database)
    return engine
