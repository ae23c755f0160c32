# Copyright (c) 2026 Flowkeeper Contributors. All Rights Reserved.

"""
API Error Handling — Unified error structure.

Every KeeperError leaves the service as:
    {"code": ..., "message": ..., "trace_id": ..., "details": {...}}
"""

from __future__ import annotations

import logging
import uuid

from fastapi import Request
from fastapi.responses import JSONResponse

from flowkeeper.core.errors import KeeperError

logger = logging.getLogger("flowkeeper.api")


def _trace_id(request: Request) -> str:
    return getattr(request.state, "trace_id", None) or str(uuid.uuid4())


async def keeper_error_handler(request: Request, exc: KeeperError) -> JSONResponse:
    """Global exception handler for KeeperError."""
    trace_id = _trace_id(request)
    if exc.status_code >= 500:
        logger.error(
            "[api] %s %s failed: %s", request.method, request.url.path, exc.message,
            extra={"trace_id": trace_id},
        )
    return JSONResponse(
        status_code=exc.status_code,
        content={
            "code": exc.code,
            "message": exc.message,
            "trace_id": trace_id,
            "details": exc.details,
        },
    )
