"""
Prometheus metrics for Check Hub.
"""

from prometheus_client import Counter, Gauge, Histogram

# Probe outcomes (by vendor and final status)
CHECKS_COMPLETED = Counter(
    "checkhub_checks_total",
    "Total probes recorded, by vendor and status",
    ["provider", "status"],
)

# Probes retried after an aborted transport
CHECK_RETRIES = Counter(
    "checkhub_check_retries_total",
    "Probe retries, by reason",
    ["reason"],
)

# First-token latency of successful probes
CHECK_LATENCY = Histogram(
    "checkhub_first_token_latency_seconds",
    "Time from request to first streamed content chunk",
    ["provider"],
    buckets=[0.25, 0.5, 1, 2, 3, 4, 6, 8, 12, 20, 30, 45, 60],
)

# Scheduler ticks (by result)
POLLER_TICKS = Counter(
    "checkhub_poller_ticks_total",
    "Scheduler ticks, by result",
    ["result"],
)

# 1 when this node holds the poller lease
POLLER_LEADER = Gauge(
    "checkhub_poller_leader",
    "Whether this node currently holds the poller lease",
)

# Vendor status page health: 0 operational, 1 degraded, 2 down, 3 unknown
OFFICIAL_STATUS = Gauge(
    "checkhub_official_status",
    "Vendor status page health (0 operational, 1 degraded, 2 down, 3 unknown)",
    ["provider"],
)

# Snapshot cache lookups
SNAPSHOT_CACHE = Counter(
    "checkhub_snapshot_cache_total",
    "Snapshot cache lookups, by result",
    ["result"],
)
