"""
Snapshot cache and the read side used by the dashboard/API.

The cache is single-flight: while a refresh for a key is running, every other
caller awaits that same task instead of starting a second probe batch.
"""

import asyncio
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Iterable, Optional

import structlog

from .config import interval_label
from .history import HistoryStore
from .metrics import SNAPSHOT_CACHE
from .models import (
    CheckResult, DashboardSnapshot, HealthStatus, HistorySnapshot, OfficialStatusResult,
    ProviderType, RefreshMode, Target, TargetTimeline, utcnow,
)
from .providers import CheckRunner
from .target_sync import TargetStore

log = structlog.get_logger()

CACHE_MAX_ENTRIES = 10
CACHE_ENTRY_TTL = 10 * 60
MAINTENANCE_MESSAGE = "under maintenance"


@dataclass
class SnapshotCacheEntry:
    last_refreshed_at: float = 0.0
    value: Optional[HistorySnapshot] = None
    inflight: Optional[asyncio.Task] = None


def snapshot_cache_key(interval_seconds: int, target_ids: Iterable[str]) -> str:
    ids = sorted(set(target_ids))
    return f"{interval_seconds}:{'|'.join(ids) if ids else '__empty__'}"


class SnapshotCache:
    """TTL-bound, single-flight read-through cache keyed by target set."""

    def __init__(self, ttl_seconds: float, clock: Callable[[], float] = time.monotonic):
        self.ttl = ttl_seconds
        self._clock = clock
        self._entries: dict[str, SnapshotCacheEntry] = {}

    def _entry(self, key: str) -> SnapshotCacheEntry:
        entry = self._entries.get(key)
        if entry is None:
            entry = self._entries[key] = SnapshotCacheEntry()
        self._prune(keep=key)
        return entry

    def _prune(self, keep: str):
        now = self._clock()
        idle = [
            k for k, e in self._entries.items()
            if k != keep and e.inflight is None
        ]
        for key in idle:
            if now - self._entries[key].last_refreshed_at > CACHE_ENTRY_TTL:
                del self._entries[key]
        excess = len(self._entries) - CACHE_MAX_ENTRIES
        if excess > 0:
            oldest = sorted(
                (k for k in idle if k in self._entries),
                key=lambda k: self._entries[k].last_refreshed_at,
            )
            for key in oldest[:excess]:
                del self._entries[key]

    async def get_or_refresh(self, key: str,
                             refresh: Callable[[], Awaitable[HistorySnapshot]]) -> HistorySnapshot:
        entry = self._entry(key)

        if entry.value is not None and self._clock() - entry.last_refreshed_at < self.ttl:
            SNAPSHOT_CACHE.labels(result="hit").inc()
            return entry.value

        if entry.inflight is not None:
            SNAPSHOT_CACHE.labels(result="joined").inc()
            return await asyncio.shield(entry.inflight)

        SNAPSHOT_CACHE.labels(result="miss").inc()

        async def run() -> HistorySnapshot:
            try:
                value = await refresh()
                entry.value = value
                entry.last_refreshed_at = self._clock()
                return value
            finally:
                entry.inflight = None

        entry.inflight = asyncio.create_task(run())
        # a cancelled caller must not cancel the refresh other callers joined
        return await asyncio.shield(entry.inflight)

    def invalidate(self, key: Optional[str] = None):
        """Drop cached values so the next read goes back to the store."""
        entries = [self._entries[key]] if key in self._entries else []
        if key is None:
            entries = list(self._entries.values())
        for entry in entries:
            entry.value = None
            entry.last_refreshed_at = 0.0



class SnapshotService:
    """Builds the dashboard snapshot from history, probing only when asked."""

    def __init__(self, targets: TargetStore, history: HistoryStore, runner: CheckRunner,
                 cache: SnapshotCache, interval_seconds: int,
                 official_status: Optional[Callable[[ProviderType], Optional[OfficialStatusResult]]] = None):
        self._targets = targets
        self._history = history
        self._runner = runner
        self.cache = cache
        self.interval = interval_seconds
        self._official_status = official_status

    async def get_snapshot(self, refresh_mode: RefreshMode = RefreshMode.MISSING) -> DashboardSnapshot:
        refresh_mode = RefreshMode(refresh_mode)
        targets = await self._targets.list_enabled_targets()
        ids = [t.id for t in targets]
        key = snapshot_cache_key(self.interval, ids)

        history = await self._history.fetch_recent(target_ids=ids)

        if ids and (refresh_mode == RefreshMode.ALWAYS or
                    (refresh_mode == RefreshMode.MISSING and not history)):
            history = await self.cache.get_or_refresh(key, lambda: self._probe_and_reload(targets))

        availability = await self._history.availability(ids)
        return self._build(targets, history, availability)

    async def _probe_and_reload(self, targets: list[Target]) -> HistorySnapshot:
        ids = [t.id for t in targets]
        probe_targets = [t for t in targets if not t.is_maintenance]
        results = await self._runner.run_checks(probe_targets)
        if results:
            await self._history.append_batch(results)
        log.info("snapshot_refreshed", probed=len(results), targets=len(ids))
        return await self._history.fetch_recent(target_ids=ids)

    def _build(self, targets: list[Target], history: HistorySnapshot,
               availability: dict) -> DashboardSnapshot:
        by_id = {t.id: t for t in targets}
        timelines = []

        for target_id, items in history.items():
            target = by_id.get(target_id)
            if target is None or not items:
                continue
            items = sorted(items, key=lambda r: r.checked_at, reverse=True)
            latest = self._latest(target, items[0])
            timelines.append(TargetTimeline(
                id=target_id, items=items, latest=latest,
                availability=availability.get(target_id, []),
            ))

        # maintenance targets stay visible even before their first check
        seen = {t.id for t in timelines}
        for target in targets:
            if target.is_maintenance and target.id not in seen:
                latest = self._latest(target, None)
                timelines.append(TargetTimeline(id=target.id, items=[], latest=latest))

        timelines.sort(key=lambda t: t.latest.name)
        checked = [item.checked_at for t in timelines for item in t.items]

        return DashboardSnapshot(
            timelines=timelines,
            last_updated=max(checked) if checked else None,
            total=len(timelines),
            poll_interval_seconds=self.interval,
            poll_interval_label=interval_label(self.interval),
            generated_at=utcnow(),
        )

    def _latest(self, target: Target, latest: Optional[CheckResult]) -> CheckResult:
        if target.is_maintenance:
            latest = CheckResult.for_target(
                target, HealthStatus.MAINTENANCE,
                latest.latency_ms if latest else None, MAINTENANCE_MESSAGE,
                latest.ping_latency_ms if latest else None,
            )
        official = self._official_status(target.type) if self._official_status else None
        if official is not None:
            latest = latest.model_copy(update={"official_status": official})
        return latest
