"""
Configuration loader — reads config.yaml and environment variables.

Environment variables override config.yaml values. Numeric settings are
clamped to their allowed ranges after loading, so a bad value degrades to the
nearest bound instead of stopping the poller.
"""

import os
import logging
import socket
from dataclasses import dataclass, field, fields as dataclass_fields
from pathlib import Path
from typing import Optional

import yaml

log = logging.getLogger(__name__)


class ConfigError(Exception):
    """Raised when the configuration file cannot be read."""


# Allowed ranges (inclusive)
POLL_INTERVAL_RANGE = (15, 600)
CONCURRENCY_RANGE = (1, 20)
RETENTION_DAYS_RANGE = (7, 365)
OFFICIAL_STATUS_INTERVAL_RANGE = (60, 3600)
LEASE_TTL_RANGE = (30, 3600)
MAX_POINTS_RANGE = (1, 1000)
OFFICIAL_STATUS_TIMEOUT_RANGE = (1, 120)


@dataclass
class PollerConfig:
    interval_seconds: int = 60
    concurrency: int = 5
    node_id: str = ""
    lease_ttl_seconds: Optional[int] = None
    run_on_start: bool = False


@dataclass
class HistoryConfig:
    db_path: str = "checkhub.db"
    retention_days: int = 30
    max_points_per_target: int = 60


@dataclass
class OfficialStatusConfig:
    enabled: bool = True
    interval_seconds: int = 300
    timeout: float = 15.0


@dataclass
class APIConfig:
    host: str = "0.0.0.0"
    port: int = 8080


@dataclass
class LoggingConfig:
    level: str = "INFO"
    format: str = "console"


@dataclass
class AppConfig:
    poller: PollerConfig = field(default_factory=PollerConfig)
    history: HistoryConfig = field(default_factory=HistoryConfig)
    official_status: OfficialStatusConfig = field(default_factory=OfficialStatusConfig)
    api: APIConfig = field(default_factory=APIConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    # Targets declared in the config file; None means the table is managed elsewhere
    targets: Optional[list] = None

    @property
    def lease_ttl_seconds(self) -> int:
        """Lease lifetime. Defaults to three poll intervals so the leader renews in time."""
        ttl = self.poller.lease_ttl_seconds
        if not ttl:
            ttl = self.poller.interval_seconds * 3
        return clamp(ttl, *LEASE_TTL_RANGE)


def clamp(value, low, high):
    return max(low, min(high, value))


def interval_label(seconds: int) -> str:
    """Human-friendly interval, e.g. '1 min' or '45 s'."""
    if seconds % 60 == 0:
        return f"{seconds // 60} min"
    return f"{seconds} s"


def default_node_id() -> str:
    return os.getenv("HOSTNAME") or socket.gethostname() or "local"


def load_config(config_path: str = None) -> AppConfig:
    """
    Load configuration from YAML file, then override with environment variables.

    Priority: env vars > config.yaml > defaults
    """
    config = AppConfig()

    if config_path is None:
        config_path = os.getenv("CONFIG_PATH", "config.yaml")

    path = Path(config_path)
    if path.exists():
        try:
            with open(path) as f:
                data = yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError) as e:
            raise ConfigError(f"Cannot read config file {path}: {e}") from e

        config.poller = _build_dataclass(PollerConfig, data.get("poller", {}), "poller")
        config.history = _build_dataclass(HistoryConfig, data.get("history", {}), "history")
        config.official_status = _build_dataclass(
            OfficialStatusConfig, data.get("official_status", {}), "official_status"
        )
        config.api = _build_dataclass(APIConfig, data.get("api", {}), "api")
        config.logging = _build_dataclass(LoggingConfig, data.get("logging", {}), "logging")

        if "targets" in data:
            config.targets = list(data.get("targets") or [])

    _apply_env_overrides(config)
    _apply_bounds(config)

    return config


def _build_dataclass(cls, data: dict, section_name: str):
    """Build a dataclass instance, warning on unknown keys."""
    valid_keys = {f.name for f in dataclass_fields(cls)}
    filtered = {}
    for k, v in data.items():
        if k not in valid_keys:
            log.warning(
                "Unknown config key '%s' in section '%s'. "
                "Valid keys: %s", k, section_name, sorted(valid_keys)
            )
        elif v is not None:
            filtered[k] = v
    return cls(**filtered)


def _parse_bool(value: str) -> bool:
    return value.lower() in ("true", "1", "yes")


def _apply_env_overrides(config: AppConfig):
    """Override config values with environment variables when set."""
    env_map = {
        "CHECK_POLL_INTERVAL_SECONDS": (config.poller, "interval_seconds", int),
        "CHECK_CONCURRENCY": (config.poller, "concurrency", int),
        "CHECK_NODE_ID": (config.poller, "node_id", str),
        "CHECK_LEASE_TTL_SECONDS": (config.poller, "lease_ttl_seconds", int),
        "CHECK_RUN_ON_START": (config.poller, "run_on_start", _parse_bool),
        "DB_PATH": (config.history, "db_path", str),
        "HISTORY_RETENTION_DAYS": (config.history, "retention_days", int),
        "OFFICIAL_STATUS_CHECK_INTERVAL_SECONDS": (config.official_status, "interval_seconds", int),
        "OFFICIAL_STATUS_ENABLED": (config.official_status, "enabled", _parse_bool),
        "API_HOST": (config.api, "host", str),
        "API_PORT": (config.api, "port", int),
        "LOG_LEVEL": (config.logging, "level", str),
        "LOG_FORMAT": (config.logging, "format", str),
    }

    for env_key, (obj, attr, cast) in env_map.items():
        value = os.getenv(env_key)
        if value is not None and value != "":
            try:
                setattr(obj, attr, cast(value))
            except ValueError:
                log.warning("Ignoring invalid value for %s: %r", env_key, value)


def _apply_bounds(config: AppConfig):
    """Clamp numeric settings into their allowed ranges."""
    config.poller.interval_seconds = clamp(int(config.poller.interval_seconds), *POLL_INTERVAL_RANGE)
    config.poller.concurrency = clamp(int(config.poller.concurrency), *CONCURRENCY_RANGE)
    config.history.retention_days = clamp(int(config.history.retention_days), *RETENTION_DAYS_RANGE)
    config.history.max_points_per_target = clamp(
        int(config.history.max_points_per_target), *MAX_POINTS_RANGE
    )
    config.official_status.interval_seconds = clamp(
        int(config.official_status.interval_seconds), *OFFICIAL_STATUS_INTERVAL_RANGE
    )
    config.official_status.timeout = clamp(
        float(config.official_status.timeout), *OFFICIAL_STATUS_TIMEOUT_RANGE
    )
    if not config.poller.node_id:
        config.poller.node_id = default_node_id()
