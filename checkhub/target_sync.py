"""
Target store access and config-file sync.

1. TargetStore: async, read-only view of enabled targets for the poller
2. TargetSync: upserts the `targets:` list from config.yaml into SQLite
   (only active when the config file declares targets; otherwise the table
   is managed by the admin tooling)
"""

import asyncio
from functools import partial
from typing import Optional

import structlog

from .database import CheckDatabase
from .models import ProviderType, Target

log = structlog.get_logger()

REQUIRED_FIELDS = ("id", "name", "type", "model")


class TargetStore:
    """Reads enabled targets without blocking the event loop."""

    def __init__(self, db: CheckDatabase):
        self._db = db

    async def list_enabled_targets(self) -> list[Target]:
        return await asyncio.get_running_loop().run_in_executor(
            None, self._db.list_enabled_targets
        )


class TargetSync:
    """Pushes targets declared in config.yaml into the target table."""

    def __init__(self, targets: Optional[list], db: CheckDatabase):
        self._targets = targets
        self._db = db

    async def sync(self) -> int:
        """Upsert declared targets and disable the ones no longer listed."""
        if self._targets is None:
            return 0
        return await asyncio.get_running_loop().run_in_executor(
            None, partial(self._sync_blocking, list(self._targets))
        )

    def _sync_blocking(self, targets: list) -> int:
        log.info("target_sync_start", declared=len(targets))
        active_ids = set()

        for t in targets:
            if not isinstance(t, dict) or any(not t.get(f) for f in REQUIRED_FIELDS):
                log.warning("target_sync_skip_invalid", target=_redact(t))
                continue
            try:
                ProviderType(t["type"])
            except ValueError:
                log.warning("target_sync_skip_unknown_type", target_id=t["id"], type=t["type"])
                continue
            if not t.get("enabled", True):
                continue
            self._db.upsert_target(t)
            active_ids.add(str(t["id"]))

        self._db.deactivate_missing(active_ids)
        log.info("target_sync_done", total_declared=len(targets), active=len(active_ids))
        return len(active_ids)


def _redact(target) -> object:
    if isinstance(target, dict) and "api_key" in target:
        return {**target, "api_key": "***"}
    return target
