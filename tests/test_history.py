from datetime import datetime, timedelta, timezone

import pytest

from checkhub.database import from_db_time, to_db_time
from checkhub.history import HistoryStore
from checkhub.models import HealthStatus
from conftest import make_result, make_target

BASE = datetime(2025, 3, 1, 8, 0, tzinfo=timezone.utc)


def seed_history(db, target_ids=("a", "b", "c"), points=5):
    results = []
    for target_id in target_ids:
        target = make_target(target_id)
        for i in range(points):
            status = HealthStatus.FAILED if i % 2 else HealthStatus.OPERATIONAL
            results.append(make_result(target, status, checked_at=BASE + timedelta(minutes=i)))
    db.insert_history(results)


def test_db_time_round_trip_keeps_order():
    early = datetime(2025, 1, 1, 0, 0, 0, 5, tzinfo=timezone.utc)
    late = datetime(2025, 1, 1, 0, 0, 1, tzinfo=timezone.utc)

    assert to_db_time(early) < to_db_time(late)
    assert from_db_time(to_db_time(early)) == early


def test_fetch_recent_newest_first_and_limited(db):
    seed_history(db)

    history = db.fetch_recent(3)

    assert set(history) == {"a", "b", "c"}
    items = history["a"]
    assert len(items) == 3
    assert [r.checked_at for r in items] == [BASE + timedelta(minutes=m) for m in (4, 3, 2)]


def test_fetch_recent_fallback_matches_window_query(db):
    seed_history(db)
    windowed = db.fetch_recent(3, ["a", "c"])

    db.window_functions = False
    fallback = db.fetch_recent(3, ["a", "c"])

    assert fallback == windowed
    assert set(fallback) == {"a", "c"}


def test_fetch_recent_empty_id_list(db):
    seed_history(db)
    assert db.fetch_recent(3, []) == {}


@pytest.mark.asyncio
async def test_append_and_read_back(db):
    store = HistoryStore(db)
    target = make_target("x", group_name="core")

    assert await store.append_batch([make_result(target, HealthStatus.DEGRADED, 7000)])

    history = await store.fetch_recent(target_ids=["x"])
    stored = history["x"][0]
    assert stored.status == HealthStatus.DEGRADED
    assert stored.latency_ms == 7000
    assert stored.group_name == "core"


@pytest.mark.asyncio
async def test_prune_removes_old_rows(db):
    store = HistoryStore(db, retention_days=7)
    target = make_target()
    now = datetime.now(timezone.utc)
    db.insert_history([
        make_result(target, checked_at=now - timedelta(days=8)),
        make_result(target, checked_at=now - timedelta(days=1)),
    ])

    removed = await store.prune()

    assert removed == 1
    assert len((await store.fetch_recent())[target.id]) == 1


@pytest.mark.asyncio
async def test_storage_failure_is_not_raised(db, monkeypatch):
    store = HistoryStore(db)

    def broken(*_args, **_kwargs):
        raise RuntimeError("database is locked")

    monkeypatch.setattr(db, "insert_history", broken)
    monkeypatch.setattr(db, "fetch_recent", broken)

    assert await store.append_batch([make_result(make_target())]) is False
    assert await store.fetch_recent() == {}


@pytest.mark.asyncio
async def test_availability_counts_operational_and_degraded(db):
    store = HistoryStore(db)
    target = make_target()
    now = datetime.now(timezone.utc)
    db.insert_history([
        make_result(target, HealthStatus.OPERATIONAL, checked_at=now - timedelta(hours=1)),
        make_result(target, HealthStatus.DEGRADED, checked_at=now - timedelta(hours=2)),
        make_result(target, HealthStatus.FAILED, checked_at=now - timedelta(hours=3)),
        make_result(target, HealthStatus.ERROR, checked_at=now - timedelta(days=10)),
    ])

    stats = {s.period_days: s for s in (await store.availability([target.id]))[target.id]}

    assert stats[7].total_checks == 3
    assert stats[7].available_checks == 2
    assert stats[7].availability_pct == 66.67
    assert stats[15].total_checks == 4
