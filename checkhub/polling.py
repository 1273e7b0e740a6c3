"""
Per-target overrides read from target metadata.

Metadata values may be numbers or numeric strings. Anything missing,
non-numeric or outside the allowed range falls back to the default.
"""

import math
from typing import Any, Optional

DEFAULT_TIMEOUT_MS = 45_000
TIMEOUT_MS_RANGE = (1_000, 300_000)

DEFAULT_DEGRADED_THRESHOLD_MS = 6_000
DEGRADED_THRESHOLD_MS_RANGE = (100, 120_000)

POLL_INTERVAL_OVERRIDE_RANGE = (15, 3600)

# snake_case key -> accepted camelCase alias
OVERRIDE_KEYS = {
    "timeout_ms": "timeoutMs",
    "degraded_threshold_ms": "degradedThresholdMs",
    "poll_interval_seconds": "pollIntervalSeconds",
}


def _lookup(metadata: Optional[dict[str, Any]], key: str) -> Any:
    if not metadata:
        return None
    value = metadata.get(key)
    if value is None:
        value = metadata.get(OVERRIDE_KEYS.get(key, key))
    return value


def get_numeric_override(metadata: Optional[dict[str, Any]], key: str,
                         low: float, high: float) -> Optional[float]:
    """Return the override if present, numeric and within [low, high]."""
    raw = _lookup(metadata, key)
    if raw is None or isinstance(raw, bool):
        return None
    try:
        value = float(raw)
    except (TypeError, ValueError):
        return None
    if not math.isfinite(value) or value < low or value > high:
        return None
    return value


def timeout_ms(metadata: Optional[dict[str, Any]]) -> int:
    value = get_numeric_override(metadata, "timeout_ms", *TIMEOUT_MS_RANGE)
    return int(value) if value is not None else DEFAULT_TIMEOUT_MS


def degraded_threshold_ms(metadata: Optional[dict[str, Any]]) -> int:
    value = get_numeric_override(metadata, "degraded_threshold_ms", *DEGRADED_THRESHOLD_MS_RANGE)
    return int(value) if value is not None else DEFAULT_DEGRADED_THRESHOLD_MS


def poll_interval_override(metadata: Optional[dict[str, Any]]) -> Optional[float]:
    """Custom poll interval in seconds, or None to inherit the global one."""
    return get_numeric_override(metadata, "poll_interval_seconds", *POLL_INTERVAL_OVERRIDE_RANGE)


def effective_interval_seconds(metadata: Optional[dict[str, Any]], global_interval: float) -> float:
    custom = poll_interval_override(metadata)
    return custom if custom is not None else float(global_interval)


def is_override_key(key: str) -> bool:
    return key in OVERRIDE_KEYS or key in OVERRIDE_KEYS.values()
