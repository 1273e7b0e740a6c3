import asyncio
from datetime import datetime, timedelta, timezone

import pytest
from structlog.testing import capture_logs

from checkhub.database import EPOCH
from checkhub.leader import LEADER, STANDBY, LeaderElector

NOW = datetime(2025, 1, 1, 12, 0, tzinfo=timezone.utc)


def test_lease_row_created_expired(db):
    db.ensure_lease_row()
    db.ensure_lease_row()

    lease = db.get_lease()
    assert lease["leader_id"] is None
    assert lease["lease_expires_at"] == EPOCH


@pytest.mark.asyncio
async def test_acquire_then_renew(db):
    elector = LeaderElector(db, "a", ttl_seconds=180)

    assert await elector.try_acquire_or_renew(NOW)
    assert await elector.try_acquire_or_renew(NOW + timedelta(seconds=60))

    lease = db.get_lease()
    assert lease["leader_id"] == "a"
    assert lease["lease_expires_at"] == NOW + timedelta(seconds=240)
    assert elector.role == LEADER


@pytest.mark.asyncio
async def test_live_lease_blocks_other_nodes(db):
    a = LeaderElector(db, "a", ttl_seconds=180)
    b = LeaderElector(db, "b", ttl_seconds=180)

    assert await a.try_acquire_or_renew(NOW)
    assert not await b.try_acquire_or_renew(NOW + timedelta(seconds=179))
    assert b.role == STANDBY


@pytest.mark.asyncio
async def test_expired_lease_taken_over(db):
    a = LeaderElector(db, "a", ttl_seconds=180)
    b = LeaderElector(db, "b", ttl_seconds=180)
    await a.try_acquire_or_renew(NOW)

    later = NOW + timedelta(seconds=181)
    assert await b.try_acquire_or_renew(later)
    # the previous holder cannot renew a lease it no longer owns
    assert not await a.try_acquire_or_renew(later + timedelta(seconds=1))
    assert db.get_lease()["leader_id"] == "b"


@pytest.mark.asyncio
async def test_concurrent_claims_yield_exactly_one_leader(db):
    electors = [LeaderElector(db, f"node-{i}", ttl_seconds=180) for i in range(8)]
    for elector in electors:
        await elector.ensure_lease_row()

    outcomes = await asyncio.gather(*(e.try_acquire_or_renew(NOW) for e in electors))

    assert outcomes.count(True) == 1
    winner = electors[outcomes.index(True)]
    assert db.get_lease()["leader_id"] == winner.node_id


@pytest.mark.asyncio
async def test_store_error_means_standby(db, monkeypatch):
    elector = LeaderElector(db, "a", ttl_seconds=180)
    assert await elector.try_acquire_or_renew(NOW)

    def broken(*_args, **_kwargs):
        raise RuntimeError("disk I/O error")

    monkeypatch.setattr(db, "try_acquire_lease", broken)

    with capture_logs() as logs:
        assert not await elector.try_acquire_or_renew(NOW + timedelta(seconds=60))

    assert elector.role == STANDBY
    events = [e["event"] for e in logs]
    assert "leader_election_failed" in events
    assert "poller_role_changed" in events


@pytest.mark.asyncio
async def test_role_change_logged_once(db):
    elector = LeaderElector(db, "a", ttl_seconds=180)

    with capture_logs() as logs:
        await elector.try_acquire_or_renew(NOW)
        await elector.try_acquire_or_renew(NOW + timedelta(seconds=30))

    assert [e["event"] for e in logs].count("poller_role_changed") == 1
