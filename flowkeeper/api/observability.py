# Copyright (c) 2026 Flowkeeper Contributors. All Rights Reserved.

"""
Observability API — Metrics and health check.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends

from flowkeeper.api.deps import get_keeper
from flowkeeper.core.context import KeeperContext
from flowkeeper.core.metrics import keeper_metrics

router = APIRouter(tags=["observability"])


@router.get("/health")
async def health_check(keeper: KeeperContext = Depends(get_keeper)):
    """Health check with bootstrap state and tenant pool status."""
    state = await keeper.bootstrap_gate.state()
    return {
        "status": "ok",
        "version": "0.1.0",
        "system": state.value,
        "pools": keeper.pool_cache.stats(),
        "metrics": keeper_metrics.snapshot(),
    }


@router.get("/api/metrics")
async def get_metrics():
    """Return current service metrics."""
    return keeper_metrics.snapshot()
