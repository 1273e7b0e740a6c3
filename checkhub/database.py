"""
SQLite persistence for targets, check history and the poller lease.

Thread-safe — one connection shared via check_same_thread=False and explicit
locking, so the async layer can call in from executor threads. The DB file is
created automatically.
"""

import sqlite3
import json
import threading
from datetime import datetime, timezone
from typing import Iterable, Optional

import structlog

from .models import CheckResult, HealthStatus, ProviderType, Target

log = structlog.get_logger()

DB_PATH = "checkhub.db"  # overridden by config.history.db_path

LEASE_KEY = "poller"
EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)

_SCHEMA = """
CREATE TABLE IF NOT EXISTS check_configs (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    type TEXT NOT NULL,
    model TEXT NOT NULL,
    endpoint TEXT NOT NULL DEFAULT '',
    api_key TEXT NOT NULL DEFAULT '',
    enabled INTEGER NOT NULL DEFAULT 1,
    is_maintenance INTEGER NOT NULL DEFAULT 0,
    request_header TEXT,
    group_name TEXT,
    metadata TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS check_history (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    config_id TEXT NOT NULL,
    name TEXT NOT NULL,
    type TEXT NOT NULL,
    model TEXT NOT NULL,
    endpoint TEXT NOT NULL DEFAULT '',
    group_name TEXT,
    status TEXT NOT NULL,
    latency_ms INTEGER,
    ping_latency_ms INTEGER,
    checked_at TEXT NOT NULL,
    message TEXT
);

CREATE INDEX IF NOT EXISTS idx_check_history_config_checked
    ON check_history(config_id, checked_at);
CREATE INDEX IF NOT EXISTS idx_check_history_checked_at
    ON check_history(checked_at);

CREATE TABLE IF NOT EXISTS check_poller_leases (
    lease_key TEXT PRIMARY KEY,
    leader_id TEXT,
    lease_expires_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);
"""

# Statuses counted as "available" in availability stats
AVAILABLE_STATUSES = (HealthStatus.OPERATIONAL.value, HealthStatus.DEGRADED.value)


def to_db_time(value: datetime) -> str:
    """Fixed-width UTC timestamp so that text comparison matches time order."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ")


def from_db_time(value: str) -> datetime:
    return datetime.strptime(value, "%Y-%m-%dT%H:%M:%S.%fZ").replace(tzinfo=timezone.utc)


class CheckDatabase:
    """Thread-safe SQLite store backing the target, history and lease collaborators."""

    def __init__(self, db_path: str = DB_PATH):
        self._db_path = db_path
        self._lock = threading.Lock()
        self._conn = sqlite3.connect(db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        if db_path != ":memory:":
            self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.executescript(_SCHEMA)
        # ROW_NUMBER() needs SQLite >= 3.25; older builds use the per-target query
        self.window_functions = sqlite3.sqlite_version_info >= (3, 25, 0)
        log.info("database_initialized", path=db_path, window_functions=self.window_functions)

    def close(self):
        if self._conn:
            self._conn.close()
            self._conn = None

    # =========================================================================
    # Targets
    # =========================================================================

    def upsert_target(self, target: dict):
        """Insert or update a target definition."""
        now = to_db_time(datetime.now(timezone.utc))
        ProviderType(target["type"])
        headers = json.dumps(target["request_headers"]) if target.get("request_headers") else None
        metadata = json.dumps(target["metadata"]) if target.get("metadata") else None

        with self._lock:
            self._conn.execute(
                """INSERT INTO check_configs
                   (id, name, type, model, endpoint, api_key, enabled,
                    is_maintenance, request_header, group_name, metadata,
                    created_at, updated_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                   ON CONFLICT(id) DO UPDATE SET
                     name=excluded.name, type=excluded.type, model=excluded.model,
                     endpoint=excluded.endpoint, api_key=excluded.api_key,
                     enabled=excluded.enabled, is_maintenance=excluded.is_maintenance,
                     request_header=excluded.request_header,
                     group_name=excluded.group_name, metadata=excluded.metadata,
                     updated_at=excluded.updated_at""",
                (
                    str(target["id"]), target["name"], target["type"], target["model"],
                    target.get("endpoint") or "", target.get("api_key") or "",
                    1 if target.get("enabled", True) else 0,
                    1 if target.get("is_maintenance", False) else 0,
                    headers, target.get("group_name"), metadata, now, now,
                )
            )
            self._conn.commit()

    def deactivate_missing(self, active_ids: set[str]):
        """Disable targets that are no longer declared."""
        with self._lock:
            rows = self._conn.execute(
                "SELECT id FROM check_configs WHERE enabled = 1"
            ).fetchall()
            for row in rows:
                if row["id"] not in active_ids:
                    self._conn.execute(
                        "UPDATE check_configs SET enabled = 0 WHERE id = ?",
                        (row["id"],)
                    )
            self._conn.commit()

    def list_enabled_targets(self) -> list[Target]:
        """All enabled targets, maintenance ones included."""
        with self._lock:
            rows = self._conn.execute(
                "SELECT * FROM check_configs WHERE enabled = 1 ORDER BY id"
            ).fetchall()
        targets = []
        for row in rows:
            try:
                targets.append(self._row_to_target(row))
            except ValueError as e:
                log.warning("target_row_invalid", target_id=row["id"], error=str(e))
        return targets

    @staticmethod
    def _row_to_target(row: sqlite3.Row) -> Target:
        return Target(
            id=row["id"],
            name=row["name"],
            type=ProviderType(row["type"]),
            model=row["model"],
            endpoint=row["endpoint"],
            api_key=row["api_key"],
            enabled=bool(row["enabled"]),
            is_maintenance=bool(row["is_maintenance"]),
            request_headers=json.loads(row["request_header"]) if row["request_header"] else None,
            group_name=row["group_name"],
            metadata=json.loads(row["metadata"]) if row["metadata"] else None,
        )

    # =========================================================================
    # History
    # =========================================================================

    def insert_history(self, results: list[CheckResult]):
        """Append a batch of outcomes in one transaction."""
        if not results:
            return
        with self._lock:
            self._conn.executemany(
                """INSERT INTO check_history
                   (config_id, name, type, model, endpoint, group_name,
                    status, latency_ms, ping_latency_ms, checked_at, message)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                [
                    (
                        r.id, r.name, r.type.value, r.model, r.endpoint, r.group_name,
                        r.status.value, r.latency_ms, r.ping_latency_ms,
                        to_db_time(r.checked_at), r.message,
                    )
                    for r in results
                ]
            )
            self._conn.commit()

    def fetch_recent(self, limit_per_target: int,
                     target_ids: Optional[list[str]] = None) -> dict[str, list[CheckResult]]:
        """
        Latest outcomes per target, newest first.

        target_ids=None means every target; an empty list means none.
        """
        if target_ids is not None and len(target_ids) == 0:
            return {}

        if self.window_functions:
            try:
                rows = self._fetch_recent_windowed(limit_per_target, target_ids)
                return self._rows_to_history(rows)
            except sqlite3.OperationalError as e:
                log.warning("history_window_query_unavailable", error=str(e))
                self.window_functions = False

        rows = self._fetch_recent_per_target(limit_per_target, target_ids)
        return self._rows_to_history(rows)

    def _fetch_recent_windowed(self, limit: int, target_ids: Optional[list[str]]) -> list:
        where = ""
        params: list = []
        if target_ids is not None:
            where = f"WHERE config_id IN ({', '.join('?' for _ in target_ids)})"
            params.extend(target_ids)
        params.append(limit)

        with self._lock:
            return self._conn.execute(
                f"""SELECT * FROM (
                      SELECT h.*, ROW_NUMBER() OVER (
                        PARTITION BY h.config_id
                        ORDER BY h.checked_at DESC, h.id DESC
                      ) AS rn
                      FROM check_history h
                      {where}
                    )
                    WHERE rn <= ?
                    ORDER BY config_id, checked_at DESC, id DESC""",
                params
            ).fetchall()

    def _fetch_recent_per_target(self, limit: int, target_ids: Optional[list[str]]) -> list:
        with self._lock:
            if target_ids is None:
                target_ids = [
                    r["config_id"] for r in self._conn.execute(
                        "SELECT DISTINCT config_id FROM check_history"
                    ).fetchall()
                ]
            rows = []
            for target_id in target_ids:
                rows.extend(self._conn.execute(
                    """SELECT * FROM check_history
                       WHERE config_id = ?
                       ORDER BY checked_at DESC, id DESC
                       LIMIT ?""",
                    (target_id, limit)
                ).fetchall())
        return rows

    def _rows_to_history(self, rows) -> dict[str, list[CheckResult]]:
        history: dict[str, list[CheckResult]] = {}
        for row in rows:
            try:
                result = self._row_to_result(row)
            except ValueError as e:
                log.warning("history_row_invalid", row_id=row["id"], error=str(e))
                continue
            history.setdefault(result.id, []).append(result)
        for items in history.values():
            items.sort(key=lambda r: r.checked_at, reverse=True)
        return history

    def prune_history(self, cutoff: datetime) -> int:
        """Delete history rows older than cutoff. Returns rows removed."""
        with self._lock:
            cur = self._conn.execute(
                "DELETE FROM check_history WHERE checked_at < ?",
                (to_db_time(cutoff),)
            )
            self._conn.commit()
        return cur.rowcount

    def availability_counts(self, since: datetime,
                            target_ids: Optional[list[str]] = None) -> dict[str, tuple[int, int]]:
        """Per target: (total checks, available checks) since the given time."""
        where = "WHERE checked_at >= ?"
        params: list = [to_db_time(since)]
        if target_ids is not None:
            if not target_ids:
                return {}
            where += f" AND config_id IN ({', '.join('?' for _ in target_ids)})"
            params.extend(target_ids)

        with self._lock:
            rows = self._conn.execute(
                f"""SELECT config_id,
                           COUNT(*) AS total,
                           SUM(CASE WHEN status IN (?, ?) THEN 1 ELSE 0 END) AS available
                    FROM check_history
                    {where}
                    GROUP BY config_id""",
                [*AVAILABLE_STATUSES, *params]
            ).fetchall()
        return {row["config_id"]: (row["total"], row["available"] or 0) for row in rows}

    @staticmethod
    def _row_to_result(row: sqlite3.Row) -> CheckResult:
        return CheckResult(
            id=row["config_id"],
            name=row["name"],
            type=ProviderType(row["type"]),
            model=row["model"],
            endpoint=row["endpoint"],
            group_name=row["group_name"],
            status=HealthStatus(row["status"]),
            latency_ms=row["latency_ms"],
            ping_latency_ms=row["ping_latency_ms"],
            checked_at=from_db_time(row["checked_at"]),
            message=row["message"] or "",
        )

    # =========================================================================
    # Poller lease
    # =========================================================================

    def ensure_lease_row(self):
        """Create the singleton lease row if it does not exist yet."""
        with self._lock:
            self._conn.execute(
                """INSERT OR IGNORE INTO check_poller_leases
                   (lease_key, leader_id, lease_expires_at, updated_at)
                   VALUES (?, NULL, ?, ?)""",
                (LEASE_KEY, to_db_time(EPOCH), to_db_time(datetime.now(timezone.utc)))
            )
            self._conn.commit()

    def try_acquire_lease(self, node_id: str, now: datetime, expires_at: datetime) -> bool:
        """Claim the lease if it has expired. True when this call won it."""
        now_s = to_db_time(now)
        with self._lock:
            cur = self._conn.execute(
                """UPDATE check_poller_leases
                   SET leader_id = ?, lease_expires_at = ?, updated_at = ?
                   WHERE lease_key = ? AND lease_expires_at < ?""",
                (node_id, to_db_time(expires_at), now_s, LEASE_KEY, now_s)
            )
            self._conn.commit()
        return cur.rowcount > 0

    def try_renew_lease(self, node_id: str, now: datetime, expires_at: datetime) -> bool:
        """Extend the lease if node_id still holds it."""
        now_s = to_db_time(now)
        with self._lock:
            cur = self._conn.execute(
                """UPDATE check_poller_leases
                   SET lease_expires_at = ?, updated_at = ?
                   WHERE lease_key = ? AND leader_id = ? AND lease_expires_at > ?""",
                (to_db_time(expires_at), now_s, LEASE_KEY, node_id, now_s)
            )
            self._conn.commit()
        return cur.rowcount > 0

    def get_lease(self) -> Optional[dict]:
        with self._lock:
            row = self._conn.execute(
                "SELECT * FROM check_poller_leases WHERE lease_key = ?",
                (LEASE_KEY,)
            ).fetchone()
        if not row:
            return None
        return {
            "lease_key": row["lease_key"],
            "leader_id": row["leader_id"],
            "lease_expires_at": from_db_time(row["lease_expires_at"]),
            "updated_at": from_db_time(row["updated_at"]),
        }
