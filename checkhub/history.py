"""
History store — async interface over the SQLite check history.

Blocking SQLite calls run in the default executor so probing and the API
never wait on disk I/O. Storage failures are logged here and never propagate
into a scheduler tick.
"""

import asyncio
from datetime import datetime, timedelta, timezone
from functools import partial
from typing import Iterable, Optional

import structlog

from .config import RETENTION_DAYS_RANGE, clamp
from .database import CheckDatabase
from .models import AvailabilityStat, CheckResult, HistorySnapshot

log = structlog.get_logger()

MAX_POINTS_PER_TARGET = 60
AVAILABILITY_PERIODS = (7, 15, 30)


class HistoryStore:
    """Append, read and prune probe outcomes."""

    def __init__(self, db: CheckDatabase, retention_days: int = 30,
                 max_points_per_target: int = MAX_POINTS_PER_TARGET):
        self._db = db
        self.retention_days = clamp(retention_days, *RETENTION_DAYS_RANGE)
        self.max_points_per_target = max_points_per_target

    async def _run(self, func, *args):
        return await asyncio.get_running_loop().run_in_executor(None, partial(func, *args))

    async def append_batch(self, results: list[CheckResult]) -> bool:
        """Persist outcomes, then prune. Returns False if the write failed."""
        if not results:
            return True
        try:
            await self._run(self._db.insert_history, list(results))
        except Exception as e:
            log.error("history_append_failed", count=len(results), error=str(e))
            return False
        await self.prune()
        return True

    async def fetch_recent(self, limit_per_target: Optional[int] = None,
                           target_ids: Optional[Iterable[str]] = None) -> HistorySnapshot:
        """Recent outcomes per target, newest first. Empty on storage failure."""
        ids = _normalize_ids(target_ids)
        if ids is not None and not ids:
            return {}
        limit = limit_per_target or self.max_points_per_target
        try:
            return await self._run(self._db.fetch_recent, limit, ids)
        except Exception as e:
            log.error("history_fetch_failed", error=str(e))
            return {}

    async def prune(self, retention_days: Optional[int] = None) -> int:
        """Delete outcomes older than the retention window. Non-fatal on failure."""
        days = clamp(retention_days or self.retention_days, *RETENTION_DAYS_RANGE)
        cutoff = datetime.now(timezone.utc) - timedelta(days=days)
        try:
            removed = await self._run(self._db.prune_history, cutoff)
        except Exception as e:
            log.error("history_prune_failed", retention_days=days, error=str(e))
            return 0
        if removed:
            log.info("history_pruned", removed=removed, retention_days=days)
        return removed

    async def availability(self, target_ids: Optional[Iterable[str]] = None,
                           periods: tuple[int, ...] = AVAILABILITY_PERIODS
                           ) -> dict[str, list[AvailabilityStat]]:
        """Share of operational/degraded checks per target over each period."""
        ids = _normalize_ids(target_ids)
        if ids is not None and not ids:
            return {}
        now = datetime.now(timezone.utc)
        stats: dict[str, list[AvailabilityStat]] = {}
        try:
            for days in periods:
                counts = await self._run(
                    self._db.availability_counts, now - timedelta(days=days), ids
                )
                for target_id, (total, available) in counts.items():
                    stats.setdefault(target_id, []).append(AvailabilityStat(
                        period_days=days,
                        total_checks=total,
                        available_checks=available,
                        availability_pct=round(available * 100.0 / total, 2) if total else None,
                    ))
        except Exception as e:
            log.error("availability_query_failed", error=str(e))
            return {}
        return stats


def _normalize_ids(ids: Optional[Iterable[str]]) -> Optional[list[str]]:
    if ids is None:
        return None
    return [i for i in ids if i]
