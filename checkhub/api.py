"""
Check Hub API — read-only HTTP endpoints for downstream readers.

Endpoints:
  GET /health           — Liveness plus this node's poller role
  GET /dashboard        — Snapshot of recent history (?refresh=never|missing|always)
  GET /official-status  — Latest vendor status page readings
  GET /poller           — Scheduler state of this node
  GET /metrics          — Prometheus metrics
"""

from contextlib import asynccontextmanager
from datetime import datetime, timezone

from fastapi import FastAPI, HTTPException, Query, Request
from prometheus_client import make_asgi_app
import structlog

from .config import AppConfig
from .database import CheckDatabase
from .history import HistoryStore
from .leader import LeaderElector
from .models import DashboardSnapshot, PollerStatusResponse, RefreshMode
from .official_status import OfficialStatusPoller
from .providers import CheckRunner
from .scheduler import CheckScheduler
from .snapshot import SnapshotCache, SnapshotService
from .target_sync import TargetStore, TargetSync

log = structlog.get_logger()


def create_app(config: AppConfig) -> FastAPI:
    """Create and configure the FastAPI application."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        db = CheckDatabase(config.history.db_path)
        await TargetSync(config.targets, db).sync()

        targets = TargetStore(db)
        history = HistoryStore(
            db,
            retention_days=config.history.retention_days,
            max_points_per_target=config.history.max_points_per_target,
        )
        runner = CheckRunner(concurrency=config.poller.concurrency)
        elector = LeaderElector(db, config.poller.node_id, config.lease_ttl_seconds)
        await elector.ensure_lease_row()

        official = OfficialStatusPoller(
            interval_seconds=config.official_status.interval_seconds,
            timeout=config.official_status.timeout,
        )
        cache = SnapshotCache(ttl_seconds=config.poller.interval_seconds)
        snapshots = SnapshotService(
            targets, history, runner, cache,
            interval_seconds=config.poller.interval_seconds,
            official_status=official.get,
        )
        scheduler = CheckScheduler(
            targets, runner, history, elector,
            interval_seconds=config.poller.interval_seconds,
            on_results=lambda _results: cache.invalidate(),
            run_on_start=config.poller.run_on_start,
        )

        app.state.config = config
        app.state.db = db
        app.state.snapshots = snapshots
        app.state.scheduler = scheduler
        app.state.official = official

        scheduler.start()
        if config.official_status.enabled:
            official.start()

        log.info("checkhub_starting", node_id=config.poller.node_id)
        yield
        await scheduler.stop()
        await official.stop()
        db.close()
        log.info("checkhub_shutdown")

    app = FastAPI(
        title="Check Hub",
        description="LLM API availability monitor",
        version="1.0.0",
        lifespan=lifespan,
    )

    app.add_api_route("/health", health, methods=["GET"])
    app.add_api_route("/dashboard", dashboard, methods=["GET"],
                      response_model=DashboardSnapshot)
    app.add_api_route("/official-status", official_status, methods=["GET"])
    app.add_api_route("/poller", poller_status, methods=["GET"],
                      response_model=PollerStatusResponse)

    app.mount("/metrics", make_asgi_app())

    return app


# =============================================================================
# Endpoints
# =============================================================================

async def health(request: Request):
    scheduler: CheckScheduler = request.app.state.scheduler
    return {"status": "healthy", "node_id": scheduler.node_id, "role": scheduler.role}


async def dashboard(request: Request, refresh: str = Query(RefreshMode.MISSING.value)):
    """
    Snapshot of recent outcomes per target.

    `never` only reads history, `missing` probes when there is none yet and
    `always` forces a probe batch (shared with concurrent callers and reused
    for one poll interval).
    """
    try:
        mode = RefreshMode(refresh)
    except ValueError:
        raise HTTPException(
            status_code=422,
            detail=f"refresh must be one of: {', '.join(m.value for m in RefreshMode)}",
        )
    snapshots: SnapshotService = request.app.state.snapshots
    return await snapshots.get_snapshot(mode)


async def official_status(request: Request):
    official: OfficialStatusPoller = request.app.state.official
    return {
        "enabled": request.app.state.config.official_status.enabled,
        "statuses": {p.value: s.model_dump(mode="json") for p, s in official.all().items()},
    }


async def poller_status(request: Request):
    scheduler: CheckScheduler = request.app.state.scheduler
    ctx = scheduler.context
    started = ctx.last_tick_started_at
    return PollerStatusResponse(
        node_id=scheduler.node_id,
        role=scheduler.role,
        running=ctx.running,
        last_tick_started_at=datetime.fromtimestamp(started, tz=timezone.utc) if started else None,
        interval_seconds=scheduler.interval,
        tracked_targets=len(ctx.last_checked),
    )
