"""
Data models for Check Hub.

A CheckResult is created once per probe and never modified afterwards;
downstream readers only ever see the statuses defined in HealthStatus.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field


# =============================================================================
# Enums
# =============================================================================

class ProviderType(str, Enum):
    """Vendor families that can be probed."""
    OPENAI = "openai"
    ANTHROPIC = "anthropic"
    GEMINI = "gemini"


DEFAULT_ENDPOINTS = {
    ProviderType.OPENAI: "https://api.openai.com/v1/chat/completions",
    ProviderType.ANTHROPIC: "https://api.anthropic.com/v1/messages",
    ProviderType.GEMINI: "https://generativelanguage.googleapis.com/v1beta/openai/chat/completions",
}


class HealthStatus(str, Enum):
    OPERATIONAL = "operational"
    DEGRADED = "degraded"
    VALIDATION_FAILED = "validation_failed"
    FAILED = "failed"
    ERROR = "error"
    MAINTENANCE = "maintenance"


class OfficialHealthStatus(str, Enum):
    """Health reported by a vendor's public status page."""
    OPERATIONAL = "operational"
    DEGRADED = "degraded"
    DOWN = "down"
    UNKNOWN = "unknown"


class RefreshMode(str, Enum):
    """How a snapshot read may trigger probing."""
    ALWAYS = "always"
    MISSING = "missing"
    NEVER = "never"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# =============================================================================
# Targets and outcomes
# =============================================================================

class Target(BaseModel):
    """A monitored endpoint/model pair, as stored in check_configs."""
    id: str
    name: str
    type: ProviderType
    model: str
    endpoint: str = ""
    api_key: str = ""
    enabled: bool = True
    is_maintenance: bool = False
    request_headers: Optional[dict[str, str]] = None
    group_name: Optional[str] = None
    metadata: Optional[dict[str, Any]] = None

    @property
    def effective_endpoint(self) -> str:
        return (self.endpoint or "").strip() or DEFAULT_ENDPOINTS[self.type]


class OfficialStatusResult(BaseModel):
    """Latest reading of a vendor's public status page."""
    model_config = ConfigDict(frozen=True)

    status: OfficialHealthStatus
    message: str
    checked_at: datetime = Field(default_factory=utcnow)
    affected_components: list[str] = Field(default_factory=list)


class CheckResult(BaseModel):
    """Outcome of one probe against one target."""
    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    type: ProviderType
    model: str
    endpoint: str
    group_name: Optional[str] = None
    status: HealthStatus
    latency_ms: Optional[int] = None
    ping_latency_ms: Optional[int] = None
    checked_at: datetime = Field(default_factory=utcnow)
    message: str = ""
    official_status: Optional[OfficialStatusResult] = None

    @classmethod
    def for_target(cls, target: Target, status: HealthStatus, latency_ms: Optional[int],
                   message: str, ping_latency_ms: Optional[int] = None) -> "CheckResult":
        """Build an outcome carrying the target's display metadata."""
        return cls(
            id=target.id,
            name=target.name,
            type=target.type,
            model=target.model,
            endpoint=target.effective_endpoint,
            group_name=target.group_name,
            status=status,
            latency_ms=latency_ms,
            ping_latency_ms=ping_latency_ms,
            message=message,
        )


# history keyed by target id, newest first
HistorySnapshot = dict[str, list[CheckResult]]


# =============================================================================
# Snapshot / API Models
# =============================================================================

class AvailabilityStat(BaseModel):
    period_days: int
    total_checks: int
    available_checks: int
    availability_pct: Optional[float] = None


class TargetTimeline(BaseModel):
    id: str
    items: list[CheckResult]
    latest: CheckResult
    availability: list[AvailabilityStat] = Field(default_factory=list)


class DashboardSnapshot(BaseModel):
    """Aggregated view served to downstream readers."""
    timelines: list[TargetTimeline]
    last_updated: Optional[datetime] = None
    total: int
    poll_interval_seconds: int
    poll_interval_label: str
    generated_at: datetime = Field(default_factory=utcnow)


class PollerStatusResponse(BaseModel):
    node_id: str
    role: str
    running: bool
    last_tick_started_at: Optional[datetime] = None
    interval_seconds: int
    tracked_targets: int
