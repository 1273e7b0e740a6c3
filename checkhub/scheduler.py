"""
Check Scheduler — the background poller.

Each tick:
1. Renews or acquires the poller lease; standby nodes stop here
2. Skips entirely if the previous tick is still running
3. Loads enabled targets, drops maintenance ones, keeps those that are due
4. Probes the due targets and records when each was checked
5. Appends the outcomes to history and invalidates the snapshot cache
6. Arms a one-shot supplementary tick for targets with an interval shorter
   than the global one

All mutable poller state lives in a PollerContext owned by the scheduler.
"""

import asyncio
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Optional

import structlog

from .config import interval_label
from .history import HistoryStore
from .leader import LeaderElector
from .metrics import POLLER_TICKS
from .models import CheckResult, HealthStatus, Target
from .polling import effective_interval_seconds
from .providers import CheckRunner
from .target_sync import TargetStore

log = structlog.get_logger()

# Supplementary ticks never fire sooner than this
MIN_SUPPLEMENTARY_DELAY = 5.0
# ...and are skipped when this close to the next global tick
SUPPLEMENTARY_MARGIN = 2.0
# Added when arming the timer so the target is due when it fires
SUPPLEMENTARY_SLACK = 0.25


@dataclass
class PollerContext:
    """Process-local poller state, created on start and dropped on stop."""
    running: bool = False
    last_tick_started_at: Optional[float] = None
    last_checked: dict[str, float] = field(default_factory=dict)
    supplementary: Optional[asyncio.Task] = None
    supplementary_at: Optional[float] = None


def filter_due_targets(targets: list[Target], last_checked: dict[str, float],
                       now: float, global_interval: float) -> list[Target]:
    """Targets never checked, or whose interval has fully elapsed at `now`."""
    due = []
    for target in targets:
        interval = effective_interval_seconds(target.metadata, global_interval)
        last = last_checked.get(target.id)
        if last is None or now - last >= interval:
            due.append(target)
    return due


def next_supplementary_delay(targets: list[Target], last_checked: dict[str, float],
                             now: float, global_interval: float) -> Optional[float]:
    """
    Seconds until the earliest short-interval target is due again.

    Only targets with an interval shorter than the global one count. Returns
    None when no supplementary tick is needed or the next global tick would
    come first anyway.
    """
    earliest = None
    for target in targets:
        interval = effective_interval_seconds(target.metadata, global_interval)
        if interval >= global_interval:
            continue
        last = last_checked.get(target.id)
        if last is None:
            continue
        due_at = last + interval
        if earliest is None or due_at < earliest:
            earliest = due_at

    if earliest is None:
        return None

    delay = max(MIN_SUPPLEMENTARY_DELAY, earliest - now)
    if delay >= global_interval - SUPPLEMENTARY_MARGIN:
        return None
    return delay


class CheckScheduler:
    """Timer-driven poller gated by the leader lease."""

    def __init__(self, targets: TargetStore, runner: CheckRunner, history: HistoryStore,
                 elector: LeaderElector, interval_seconds: int,
                 on_results: Optional[Callable[[list[CheckResult]], None]] = None,
                 clock: Callable[[], float] = time.time,
                 run_on_start: bool = False):
        self._targets = targets
        self._runner = runner
        self._history = history
        self._elector = elector
        self.interval = interval_seconds
        self._on_results = on_results
        self._clock = clock
        self._run_on_start = run_on_start
        self.context = PollerContext()
        self._loop_task: Optional[asyncio.Task] = None
        self._tick_tasks: set[asyncio.Task] = set()

    @property
    def role(self) -> str:
        return self._elector.role

    @property
    def node_id(self) -> str:
        return self._elector.node_id

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def start(self):
        if self._loop_task is not None:
            log.warning("poller_already_running")
            return
        self.context = PollerContext()
        self._loop_task = asyncio.create_task(self.run_loop())

    async def stop(self):
        tasks = [t for t in (self._loop_task, self.context.supplementary) if t]
        tasks.extend(self._tick_tasks)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._loop_task = None
        self._tick_tasks.clear()
        self.context = PollerContext()
        log.info("poller_stopped", node_id=self.node_id)

    async def run_loop(self):
        """Fire a tick every interval; overlapping ticks are rejected by tick()."""
        log.info("poller_started",
                 node_id=self.node_id,
                 interval=interval_label(self.interval),
                 concurrency=self._runner.concurrency,
                 retention_days=self._history.retention_days,
                 run_on_start=self._run_on_start)
        if not self._run_on_start:
            await asyncio.sleep(self.interval)
        while True:
            self._spawn_tick()
            await asyncio.sleep(self.interval)

    def _spawn_tick(self):
        task = asyncio.create_task(self.tick())
        self._tick_tasks.add(task)
        task.add_done_callback(self._tick_tasks.discard)

    # -------------------------------------------------------------------------
    # Tick
    # -------------------------------------------------------------------------

    async def tick(self) -> list[CheckResult]:
        """Run one poll cycle. Never raises."""
        try:
            return await self._tick()
        except Exception as e:
            log.error("poller_tick_failed", error=str(e), exc_info=True)
            POLLER_TICKS.labels(result="error").inc()
            return []

    async def _tick(self) -> list[CheckResult]:
        ctx = self.context
        now = self._clock()

        try:
            is_leader = await self._elector.try_acquire_or_renew(
                datetime.fromtimestamp(now, tz=timezone.utc)
            )
        except Exception as e:
            log.error("poller_election_failed", node_id=self.node_id, error=str(e))
            POLLER_TICKS.labels(result="election_failed").inc()
            return []

        if not is_leader:
            log.info("poller_standby", node_id=self.node_id)
            POLLER_TICKS.labels(result="standby").inc()
            return []

        if ctx.running:
            started = ctx.last_tick_started_at
            log.info("poller_tick_skipped",
                     reason="previous tick still running",
                     running_ms=int((now - started) * 1000) if started else None)
            POLLER_TICKS.labels(result="overlap").inc()
            return []

        ctx.running = True
        ctx.last_tick_started_at = now
        try:
            return await self._execute(now)
        finally:
            ctx.running = False

    async def _execute(self, now: float) -> list[CheckResult]:
        ctx = self.context
        targets = await self._targets.list_enabled_targets()
        active = [t for t in targets if not t.is_maintenance]
        if not active:
            POLLER_TICKS.labels(result="idle").inc()
            return []

        active_ids = {t.id for t in active}
        for target_id in list(ctx.last_checked):
            if target_id not in active_ids:
                del ctx.last_checked[target_id]

        due = filter_due_targets(active, ctx.last_checked, now, self.interval)
        if not due:
            self._schedule_supplementary(active, self._clock())
            POLLER_TICKS.labels(result="idle").inc()
            return []

        log.info("poller_tick_started",
                 at=datetime.fromtimestamp(now, tz=timezone.utc).isoformat(),
                 interval=self.interval,
                 due=len(due),
                 skipped=len(active) - len(due))

        results = await self._runner.run_checks(due)

        # the tick's captured "now" keeps due times aligned with the tick grid
        for result in results:
            ctx.last_checked[result.id] = now

        self._log_results(results, due)

        await self._history.append_batch(results)
        if self._on_results:
            self._on_results(results)

        counts = {status.value: 0 for status in HealthStatus}
        for result in results:
            counts[result.status.value] += 1
        log.info("poller_tick_done",
                 elapsed_ms=int((self._clock() - now) * 1000),
                 checked=len(results),
                 **counts)
        POLLER_TICKS.labels(result="executed").inc()

        self._schedule_supplementary(active, self._clock())
        return results

    def _log_results(self, results: list[CheckResult], due: list[Target]):
        by_id = {t.id: t for t in due}
        for result in results:
            target = by_id.get(result.id)
            interval = effective_interval_seconds(target.metadata if target else None, self.interval)
            message = " ".join((result.message or "").split())[:200]
            log.info("check_result",
                     target=result.name,
                     provider=result.type.value,
                     model=result.model,
                     status=result.status.value,
                     latency_ms=result.latency_ms,
                     ping_ms=result.ping_latency_ms,
                     interval=interval,
                     message=message or None)

    # -------------------------------------------------------------------------
    # Supplementary timer
    # -------------------------------------------------------------------------

    def _schedule_supplementary(self, active: list[Target], now: float):
        ctx = self.context
        if ctx.supplementary is not None:
            ctx.supplementary.cancel()
            ctx.supplementary = None
        ctx.supplementary_at = None

        delay = next_supplementary_delay(active, ctx.last_checked, now, self.interval)
        if delay is None:
            return

        delay += SUPPLEMENTARY_SLACK
        log.debug("poller_supplementary_armed", delay_s=round(delay, 2))
        ctx.supplementary_at = now + delay
        ctx.supplementary = asyncio.create_task(self._delayed_tick(delay))

    async def _delayed_tick(self, delay: float):
        await asyncio.sleep(delay)
        # detach, then run the tick as a tracked task
        self.context.supplementary = None
        self.context.supplementary_at = None
        self._spawn_tick()
