# Copyright (c) 2026 Flowkeeper Contributors. All Rights Reserved.

"""
Flowkeeper Application Entry Point.

FastAPI app with lifespan, middleware and all API routers. The lifespan
prepares the control-plane database, guarantees the default instance and
builds the KeeperContext; on shutdown every tenant pool is disposed.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from flowkeeper.api.errors import keeper_error_handler
from flowkeeper.api.instances import router as instances_router
from flowkeeper.api.middleware import TraceMiddleware
from flowkeeper.api.observability import router as observability_router
from flowkeeper.api.settings import router as settings_router
from flowkeeper.api.users import router as users_router
from flowkeeper.core.config import get_settings
from flowkeeper.core.context import KeeperContext
from flowkeeper.core.errors import KeeperError
from flowkeeper.core.logging import setup_logging
from flowkeeper.storage.database import close_db, get_session_factory, init_db
from flowkeeper.storage.repositories import InstanceRepository

logger = logging.getLogger("flowkeeper.main")


async def _ensure_default_instance(default_instance_id: str) -> None:
    factory = await get_session_factory()
    async with factory() as db:
        await InstanceRepository(db, default_instance_id).ensure_default()
        await db.commit()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Manage startup/shutdown of service resources."""
    # Startup
    settings = get_settings()
    setup_logging(settings.LOG_LEVEL)
    await init_db()
    await _ensure_default_instance(settings.DEFAULT_INSTANCE_ID)
    if getattr(app.state, "keeper", None) is None:
        app.state.keeper = KeeperContext(settings)
    logger.info("[Flowkeeper] Service ready (env=%s)", settings.KEEPER_ENV)
    yield
    # Shutdown
    await app.state.keeper.close()
    await close_db()
    logger.info("[Flowkeeper] Shutdown complete")


def create_app() -> FastAPI:
    app = FastAPI(
        title="Flowkeeper",
        description="n8n workflow version manager: access control and tenant pools",
        version="0.1.0",
        lifespan=lifespan,
    )

    # ── Middleware ───────────────────────────────────────────────
    app.add_middleware(TraceMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # ── Error Handlers ──────────────────────────────────────────
    app.add_exception_handler(KeeperError, keeper_error_handler)

    # ── Routes ──────────────────────────────────────────────────
    app.include_router(instances_router, prefix="/api")
    app.include_router(users_router, prefix="/api")
    app.include_router(settings_router, prefix="/api")
    app.include_router(observability_router)
    return app


app = create_app()
