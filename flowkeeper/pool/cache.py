# Copyright (c) 2026 Flowkeeper Contributors. All Rights Reserved.

"""
Pool Cache — At most N live database pools, one per instance.

Each entry is keyed by instance id and remembers the settings fingerprint
it was built from:

  - hit       same fingerprint → touch LRU, return the same pool object
  - stale     fingerprint changed → close old pool, build a new one
  - miss      build, then evict least-recently-used entries to stay < capacity

Settings are fetched fresh on every call so credential rotation is seen on
the next request. Builds run outside the lock; a per-instance in-flight task
makes concurrent callers for a cold instance share one build instead of each
registering (and leaking) their own pool. A failed build is never cached.

All map mutations happen under one asyncio.Lock.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional

from flowkeeper.core.errors import (
    KeeperError,
    MisconfiguredTenantError,
    TenantConnectionError,
)
from flowkeeper.core.metrics import keeper_metrics
from flowkeeper.pool.factory import create_tenant_engine
from flowkeeper.pool.tenant_settings import TenantConnectionSettings

logger = logging.getLogger("flowkeeper.pool")

DEFAULT_MAX_POOLS = 10

SettingsFetcher = Callable[[str], Awaitable[TenantConnectionSettings]]


@dataclass
class PooledConnection:
    """Cache entry. Owned by PoolCache and never handed out itself."""

    tenant_id: str
    pool: Any
    fingerprint: str
    last_used_at: float


@dataclass
class _InFlight:
    fingerprint: str
    task: "asyncio.Task[Any]"


def _mark_retrieved(task: "asyncio.Task[Any]") -> None:
    # Waiters receive the error through the shield; this only keeps asyncio
    # from reporting it as never retrieved when every waiter went away.
    if not task.cancelled():
        task.exception()


class PoolCache:
    """
    Args:
        settings_fetcher: async (tenant_id) -> TenantConnectionSettings
        capacity:         max live pools (MAX_POOLS)
        pool_factory:     async (settings) -> pool with an async dispose()
        clock:            monotonic time source for last_used_at
        default_tenant_id: id used when get_pool() is called without one
    """

    def __init__(
        self,
        settings_fetcher: SettingsFetcher,
        capacity: int = DEFAULT_MAX_POOLS,
        pool_factory: Optional[Callable[[TenantConnectionSettings], Awaitable[Any]]] = None,
        clock: Callable[[], float] = time.monotonic,
        default_tenant_id: str = "default",
    ) -> None:
        if capacity < 1:
            raise ValueError("capacity must be >= 1")
        self._fetch = settings_fetcher
        self._factory = pool_factory or create_tenant_engine
        self._capacity = capacity
        self._clock = clock
        self._default_tenant_id = default_tenant_id
        self._entries: "OrderedDict[str, PooledConnection]" = OrderedDict()
        self._in_flight: Dict[str, _InFlight] = {}
        self._lock = asyncio.Lock()

    @property
    def capacity(self) -> int:
        return self._capacity

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, tenant_id: object) -> bool:
        return tenant_id in self._entries

    # ── Public API ──────────────────────────────────────────────

    async def get_pool(self, tenant_id: Optional[str] = None) -> Any:
        """Return the live pool for an instance, building it if needed."""
        tenant_id = tenant_id or self._default_tenant_id
        conn = await self._fetch(tenant_id)
        missing = conn.missing_fields()
        if missing:
            raise MisconfiguredTenantError(tenant_id, missing)
        fingerprint = conn.fingerprint()

        while True:
            stale: Optional[PooledConnection] = None
            async with self._lock:
                entry = self._entries.get(tenant_id)
                if entry is not None and entry.fingerprint == fingerprint:
                    entry.last_used_at = self._clock()
                    self._entries.move_to_end(tenant_id)
                    keeper_metrics.inc("pool_hit")
                    return entry.pool
                if entry is not None:
                    stale = self._entries.pop(tenant_id)
                flight = self._in_flight.get(tenant_id)
                if flight is None:
                    keeper_metrics.inc("pool_miss")
                    task = asyncio.ensure_future(self._build(tenant_id, conn, fingerprint))
                    task.add_done_callback(_mark_retrieved)
                    flight = _InFlight(fingerprint, task)
                    self._in_flight[tenant_id] = flight

            if stale is not None:
                logger.info("Settings changed for instance=%s; rebuilding pool", tenant_id)
                await self._close(stale, "replaced")

            if flight.fingerprint != fingerprint:
                # A build for other settings is in flight; let it land, then re-check.
                await asyncio.wait({flight.task})
                continue

            return await asyncio.shield(flight.task)

    async def invalidate(self, tenant_id: str) -> bool:
        """Drop and close an instance's pool. Returns True if one existed."""
        async with self._lock:
            entry = self._entries.pop(tenant_id, None)
            keeper_metrics.set_gauge("pools_open", len(self._entries))
        if entry is None:
            return False
        logger.info("Pool invalidated instance=%s", tenant_id, extra={"tenant_id": tenant_id})
        await self._close(entry, "invalidated")
        return True

    async def close_all(self) -> None:
        """Close every pool (process shutdown)."""
        pending = [flight.task for flight in self._in_flight.values()]
        if pending:
            await asyncio.wait(pending)
        async with self._lock:
            entries = list(self._entries.values())
            self._entries.clear()
            keeper_metrics.set_gauge("pools_open", 0)
        for entry in entries:
            await self._close(entry, "shutdown")
        logger.info("Closed %d tenant pools", len(entries))

    def stats(self) -> Dict[str, Any]:
        return {
            "size": len(self._entries),
            "capacity": self._capacity,
            "building": sorted(self._in_flight),
            "tenants": list(self._entries),
        }

    # ── Internals ───────────────────────────────────────────────

    async def _build(
        self, tenant_id: str, conn: TenantConnectionSettings, fingerprint: str
    ) -> Any:
        start = time.perf_counter()
        try:
            pool = await self._factory(conn)
        except BaseException as exc:
            self._in_flight.pop(tenant_id, None)
            if not isinstance(exc, Exception):
                raise
            keeper_metrics.inc("pool_build_failed")
            logger.error("Pool build failed instance=%s: %s", tenant_id, exc, exc_info=True)
            if isinstance(exc, KeeperError):
                raise
            raise TenantConnectionError(tenant_id, str(exc)) from exc

        keeper_metrics.observe("pool_build", (time.perf_counter() - start) * 1000)
        evicted = []
        async with self._lock:
            self._in_flight.pop(tenant_id, None)
            replaced = self._entries.pop(tenant_id, None)
            while len(self._entries) >= self._capacity:
                # iteration order is recency order, so ties go to the least recent
                victim = min(self._entries.values(), key=lambda e: e.last_used_at)
                del self._entries[victim.tenant_id]
                evicted.append(victim)
            self._entries[tenant_id] = PooledConnection(
                tenant_id=tenant_id,
                pool=pool,
                fingerprint=fingerprint,
                last_used_at=self._clock(),
            )
            keeper_metrics.set_gauge("pools_open", len(self._entries))

        logger.info(
            "Pool created instance=%s (%d/%d)", tenant_id, len(self._entries), self._capacity,
            extra={"tenant_id": tenant_id},
        )
        if replaced is not None:
            await self._close(replaced, "replaced")
        for victim in evicted:
            logger.info("Evicting least recently used pool instance=%s", victim.tenant_id)
            await self._close(victim, "evicted")
        return pool

    async def _close(self, entry: PooledConnection, reason: str) -> None:
        keeper_metrics.inc(f"pool_{reason}")
        try:
            await entry.pool.dispose()
        except Exception:
            logger.warning(
                "Error while closing pool instance=%s (%s)", entry.tenant_id, reason,
                exc_info=True,
            )
            return
        keeper_metrics.inc("pool_closed")
