"""
Poller leader election over the single-row lease table.

Only the leader probes. Acquire and renew are conditional UPDATEs, so two
nodes racing for an expired lease cannot both win it. Any storage error makes
this node standby for the cycle: under-executing is preferred to running the
same batch twice.
"""

import asyncio
from datetime import datetime, timedelta
from functools import partial
from typing import Optional

import structlog

from .database import CheckDatabase
from .metrics import POLLER_LEADER

log = structlog.get_logger()

LEADER = "leader"
STANDBY = "standby"


class LeaderElector:
    """Acquires or renews the poller lease for one node."""

    def __init__(self, db: CheckDatabase, node_id: str, ttl_seconds: int):
        self._db = db
        self.node_id = node_id
        self.ttl = timedelta(seconds=ttl_seconds)
        self.role = STANDBY
        self._row_ready = False

    @property
    def is_leader(self) -> bool:
        return self.role == LEADER

    async def _run(self, func, *args):
        return await asyncio.get_running_loop().run_in_executor(None, partial(func, *args))

    async def ensure_lease_row(self):
        await self._run(self._db.ensure_lease_row)
        self._row_ready = True

    async def try_acquire_or_renew(self, now: datetime,
                                   ttl: Optional[timedelta] = None) -> bool:
        """Return True when this node holds the lease after the call."""
        expires_at = now + (ttl or self.ttl)
        try:
            if not self._row_ready:
                await self.ensure_lease_row()
            acquired = await self._run(self._db.try_acquire_lease, self.node_id, now, expires_at)
            if not acquired:
                acquired = await self._run(self._db.try_renew_lease, self.node_id, now, expires_at)
        except Exception as e:
            log.error("leader_election_failed", node_id=self.node_id, error=str(e))
            acquired = False

        self._set_role(LEADER if acquired else STANDBY)
        return acquired

    def _set_role(self, role: str):
        if role != self.role:
            log.info("poller_role_changed", node_id=self.node_id,
                     previous=self.role, role=role)
        self.role = role
        POLLER_LEADER.set(1 if role == LEADER else 0)
