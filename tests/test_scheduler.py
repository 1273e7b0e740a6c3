import asyncio
from datetime import datetime, timedelta, timezone

import pytest
from structlog.testing import capture_logs

from checkhub.database import CheckDatabase
from checkhub.history import HistoryStore
from checkhub.leader import LeaderElector
from checkhub.models import HealthStatus
from checkhub.scheduler import CheckScheduler, filter_due_targets, next_supplementary_delay
from checkhub.target_sync import TargetStore
from conftest import make_result, make_target

START = 1_700_000_000.0


class FakeRunner:
    """Records every batch and answers operational."""

    concurrency = 5

    def __init__(self, gate: asyncio.Event = None):
        self.batches = []
        self.gate = gate
        self.entered = asyncio.Event()

    async def run_checks(self, targets):
        self.batches.append(sorted(t.id for t in targets))
        self.entered.set()
        if self.gate is not None:
            await self.gate.wait()
        return [make_result(t, HealthStatus.OPERATIONAL) for t in sorted(targets, key=lambda t: t.name)]


def seed(db: CheckDatabase, target_id: str, **fields):
    db.upsert_target({
        "id": target_id,
        "name": fields.pop("name", target_id),
        "type": "openai",
        "model": "gpt-4o-mini",
        **fields,
    })


def make_scheduler(db, runner, clock, node_id="node-a", interval=60) -> CheckScheduler:
    return CheckScheduler(
        TargetStore(db), runner, HistoryStore(db),
        LeaderElector(db, node_id, ttl_seconds=180),
        interval_seconds=interval,
        clock=clock,
    )


# =============================================================================
# Due filter
# =============================================================================

def test_due_filter_boundary():
    target = make_target()
    last_checked = {target.id: 100.0}

    assert filter_due_targets([target], last_checked, 159.999, 60) == []
    assert filter_due_targets([target], last_checked, 160.0, 60) == [target]


def test_never_checked_targets_are_due():
    target = make_target()
    assert filter_due_targets([target], {}, 0.0, 60) == [target]


def test_due_filter_uses_interval_override():
    fast = make_target("fast", metadata={"pollIntervalSeconds": 20})
    slow = make_target("slow")
    last_checked = {"fast": 100.0, "slow": 100.0}

    assert filter_due_targets([fast, slow], last_checked, 120.0, 60) == [fast]


def test_out_of_range_override_inherits_global_interval():
    target = make_target(metadata={"poll_interval_seconds": 5})
    assert filter_due_targets([target], {target.id: 100.0}, 120.0, 60) == []


def test_supplementary_delay():
    fast = make_target("fast", metadata={"poll_interval_seconds": 20})
    slow = make_target("slow")

    assert next_supplementary_delay([fast, slow], {"fast": 0.0, "slow": 0.0}, 1.0, 60) == 19.0
    # never sooner than 5 s
    assert next_supplementary_delay([fast], {"fast": 0.0}, 18.0, 60) == 5.0
    # only targets with a shorter interval count
    assert next_supplementary_delay([slow], {"slow": 0.0}, 1.0, 60) is None
    # unchecked targets are picked up by the next global tick
    assert next_supplementary_delay([fast], {}, 1.0, 60) is None


def test_supplementary_skipped_close_to_global_tick():
    almost = make_target("almost", metadata={"poll_interval_seconds": 59})
    assert next_supplementary_delay([almost], {"almost": 0.0}, 0.5, 60) is None


# =============================================================================
# Ticks
# =============================================================================

@pytest.mark.asyncio
async def test_tick_probes_due_targets_and_stores_history(db, clock):
    clock.now = START
    seed(db, "a")
    seed(db, "b")
    runner = FakeRunner()
    scheduler = make_scheduler(db, runner, clock)

    results = await scheduler.tick()

    assert [r.id for r in results] == ["a", "b"]
    assert scheduler.role == "leader"
    assert scheduler.context.last_checked == {"a": START, "b": START}
    history = db.fetch_recent(10)
    assert set(history) == {"a", "b"}

    # nothing is due again until a full interval has passed
    clock.advance(30)
    assert await scheduler.tick() == []
    assert len(runner.batches) == 1

    await scheduler.stop()


@pytest.mark.asyncio
async def test_maintenance_targets_are_never_probed(db, clock):
    clock.now = START
    seed(db, "live")
    seed(db, "paused", is_maintenance=True)
    runner = FakeRunner()
    scheduler = make_scheduler(db, runner, clock)

    await scheduler.tick()

    assert runner.batches == [["live"]]
    await scheduler.stop()


@pytest.mark.asyncio
async def test_last_checked_pruned_for_removed_targets(db, clock):
    clock.now = START
    seed(db, "a")
    seed(db, "b")
    scheduler = make_scheduler(db, FakeRunner(), clock)
    await scheduler.tick()

    db.deactivate_missing({"a"})
    clock.advance(60)
    await scheduler.tick()

    assert set(scheduler.context.last_checked) == {"a"}
    await scheduler.stop()


@pytest.mark.asyncio
async def test_overlapping_tick_is_skipped(db, clock):
    clock.now = START
    seed(db, "a")
    runner = FakeRunner(gate=asyncio.Event())
    scheduler = make_scheduler(db, runner, clock)

    first = asyncio.create_task(scheduler.tick())
    await runner.entered.wait()

    with capture_logs() as logs:
        assert await scheduler.tick() == []
    assert any(e["event"] == "poller_tick_skipped" for e in logs)

    runner.gate.set()
    results = await first
    assert len(results) == 1
    assert len(runner.batches) == 1
    assert scheduler.context.running is False
    await scheduler.stop()


@pytest.mark.asyncio
async def test_stop_cancels_running_supplementary_tick(db, clock):
    clock.now = START
    seed(db, "a")
    runner = FakeRunner(gate=asyncio.Event())
    scheduler = make_scheduler(db, runner, clock)

    scheduler.context.supplementary = asyncio.create_task(scheduler._delayed_tick(0))
    await runner.entered.wait()

    await scheduler.stop()
    runner.gate.set()
    await asyncio.sleep(0.05)

    assert db.fetch_recent(10) == {}
    assert not scheduler._tick_tasks


@pytest.mark.asyncio
async def test_standby_node_skips_probing(db, clock):
    clock.now = START
    seed(db, "a")
    now = datetime.fromtimestamp(START, tz=timezone.utc)
    db.ensure_lease_row()
    assert db.try_acquire_lease("node-b", now, now + timedelta(minutes=5))

    runner = FakeRunner()
    scheduler = make_scheduler(db, runner, clock)

    with capture_logs() as logs:
        assert await scheduler.tick() == []

    assert runner.batches == []
    assert scheduler.role == "standby"
    assert any(e["event"] == "poller_standby" for e in logs)


@pytest.mark.asyncio
async def test_tick_survives_runner_failure(db, clock):
    clock.now = START
    seed(db, "a")

    class BrokenRunner(FakeRunner):
        async def run_checks(self, targets):
            raise RuntimeError("boom")

    scheduler = make_scheduler(db, BrokenRunner(), clock)

    assert await scheduler.tick() == []
    assert scheduler.context.running is False


@pytest.mark.asyncio
async def test_simultaneous_nodes_only_one_probes(tmp_path, clock):
    clock.now = START
    path = str(tmp_path / "shared.db")
    db_a = CheckDatabase(path)
    db_b = CheckDatabase(path)
    seed(db_a, "a")
    runner_a, runner_b = FakeRunner(), FakeRunner()
    node_a = make_scheduler(db_a, runner_a, clock, node_id="a")
    node_b = make_scheduler(db_b, runner_b, clock, node_id="b")

    try:
        with capture_logs() as logs:
            await asyncio.gather(node_a.tick(), node_b.tick())

        assert len(runner_a.batches) + len(runner_b.batches) == 1
        assert sorted([node_a.role, node_b.role]) == ["leader", "standby"]
        assert sum(1 for e in logs if e["event"] == "poller_standby") == 1
    finally:
        await node_a.stop()
        await node_b.stop()
        db_a.close()
        db_b.close()


@pytest.mark.asyncio
async def test_short_interval_target_follows_its_own_interval(db, clock):
    """Over three minutes a 20 s target is probed about every 20 s, not every 60 s."""
    clock.now = START
    seed(db, "fast", metadata={"pollIntervalSeconds": 20})
    seed(db, "slow")
    scheduler = make_scheduler(db, FakeRunner(), clock)

    probes = {"fast": [], "slow": []}
    next_global = START + 60
    end = next_global + 180

    try:
        while True:
            ctx = scheduler.context
            supplementary = ctx.supplementary_at
            if supplementary is not None and supplementary < next_global:
                at = supplementary
                # fire the armed timer by hand instead of waiting for it
                ctx.supplementary.cancel()
                ctx.supplementary = None
                ctx.supplementary_at = None
            else:
                at = next_global
                next_global += 60
            if at >= end:
                break

            clock.now = at
            for result in await scheduler.tick():
                probes[result.id].append(at)
    finally:
        await scheduler.stop()

    gaps = [b - a for a, b in zip(probes["fast"], probes["fast"][1:])]
    assert len(probes["slow"]) == 3
    assert len(probes["fast"]) >= 8
    assert min(gaps) >= 20
    assert max(gaps) <= 25
