# Copyright (c) 2026 Flowkeeper Contributors. All Rights Reserved.

"""
Bootstrap Gate — The one-way BOOTSTRAPPING → OPERATIONAL transition.

While no user exists, permission checks are relaxed so the first
administrator can be created. The gate asks the identity store for a user
count only while still bootstrapping; once a user is seen the OPERATIONAL
state is cached for the life of the process and never re-queried.
"""

from __future__ import annotations

import logging
from enum import Enum

logger = logging.getLogger("flowkeeper.bootstrap")


class SystemState(str, Enum):
    BOOTSTRAPPING = "bootstrapping"
    OPERATIONAL = "operational"


class BootstrapGate:
    """
    Args:
        identity_store: Object with an async count_users() method.
    """

    def __init__(self, identity_store) -> None:
        self._store = identity_store
        self._operational = False

    async def state(self) -> SystemState:
        if self._operational:
            return SystemState.OPERATIONAL
        if await self._store.count_users() > 0:
            self.mark_operational()
            return SystemState.OPERATIONAL
        return SystemState.BOOTSTRAPPING

    async def is_bootstrapping(self) -> bool:
        return await self.state() is SystemState.BOOTSTRAPPING

    def mark_operational(self) -> None:
        """Close the bootstrap window for good (called after the first user insert)."""
        if not self._operational:
            logger.info("Bootstrap window closed; system is operational")
        self._operational = True

    @property
    def is_operational(self) -> bool:
        return self._operational
