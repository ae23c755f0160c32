# Copyright (c) 2026 Flowkeeper Contributors. All Rights Reserved.

"""
Settings API — Per-instance database and webhook configuration.

Reads mask the stored password; a blank or masked password on write keeps
the stored one, and ``"clear_password": true`` removes it. Every save
invalidates the instance's cached pool so the next request connects with the
new settings.
"""

from __future__ import annotations

import logging
import time
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, ValidationError
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from flowkeeper.api.deps import get_db, get_keeper, require_instance_role
from flowkeeper.core.access import Granted
from flowkeeper.core.context import KeeperContext
from flowkeeper.core.errors import InvalidSettingsError, TenantConnectionError
from flowkeeper.core.identity import Role
from flowkeeper.pool.tenant_settings import InstanceSettings
from flowkeeper.storage.repositories import SettingsRepository

logger = logging.getLogger("flowkeeper.api.settings")

router = APIRouter(prefix="/settings", tags=["settings"])

MASKED_PASSWORD = "********"

_instance_admin = require_instance_role(Role.ADMIN, allow_bootstrap=True)


class SettingsResponse(BaseModel):
    instance_id: str
    db: Dict[str, Any]
    webhook: Dict[str, Any]


class ConnectionTestResponse(BaseModel):
    ok: bool
    instance_id: str
    latency_ms: Optional[float] = None


def _present(instance_id: str, settings: InstanceSettings) -> SettingsResponse:
    return SettingsResponse(
        instance_id=instance_id,
        db=settings.db.masked(),
        webhook=settings.webhook.model_dump(),
    )


@router.get("", response_model=SettingsResponse)
async def read_settings(
    access: Granted = Depends(_instance_admin),
    keeper: KeeperContext = Depends(get_keeper),
    db: AsyncSession = Depends(get_db),
):
    repo = SettingsRepository(db, keeper.secrets)
    return _present(access.tenant_id, await repo.get_settings(access.tenant_id))


@router.put("", response_model=SettingsResponse)
async def write_settings(
    body: Dict[str, Any],
    access: Granted = Depends(_instance_admin),
    keeper: KeeperContext = Depends(get_keeper),
    db: AsyncSession = Depends(get_db),
):
    repo = SettingsRepository(db, keeper.secrets)
    current = await repo.get_settings(access.tenant_id)

    incoming = dict(body)
    for name in ("db", "webhook"):
        section = incoming.get(name)
        if section is not None and not isinstance(section, dict):
            raise InvalidSettingsError(
                f"Settings section '{name}' must be an object", details={"section": name},
            )
    db_section = dict(incoming.get("db") or {})
    if incoming.get("clear_password") is True:
        db_section["password"] = ""
    elif db_section.get("password") in (None, "", MASKED_PASSWORD):
        db_section["password"] = current.db.password
    incoming["db"] = db_section

    try:
        merged = InstanceSettings.merged({**current.model_dump(), **_sections(incoming, current)})
    except ValidationError as exc:
        raise InvalidSettingsError("Invalid settings", details={"errors": exc.errors(include_url=False, include_context=False)}) from exc
    await repo.save_settings(access.tenant_id, merged)
    await db.commit()

    await keeper.pool_cache.invalidate(access.tenant_id)
    logger.info("Settings saved for instance=%s", access.tenant_id)
    return _present(access.tenant_id, merged)


def _sections(incoming: Dict[str, Any], current: InstanceSettings) -> Dict[str, Any]:
    """Overlay each submitted section on the stored one, field by field."""
    result: Dict[str, Any] = {}
    for name in ("db", "webhook"):
        section = incoming.get(name)
        if isinstance(section, dict):
            result[name] = {**getattr(current, name).model_dump(), **section}
    return result


@router.post("/test-connection", response_model=ConnectionTestResponse)
async def test_connection(
    access: Granted = Depends(_instance_admin),
    keeper: KeeperContext = Depends(get_keeper),
):
    """Open (or reuse) the instance pool and run a trivial query."""
    engine = await keeper.pool_cache.get_pool(access.tenant_id)
    started = time.monotonic()
    try:
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
    except Exception as exc:
        raise TenantConnectionError(access.tenant_id, str(exc)) from exc
    latency = (time.monotonic() - started) * 1000
    return ConnectionTestResponse(ok=True, instance_id=access.tenant_id, latency_ms=round(latency, 2))
