"""
Official Status Poller — reads vendors' public status pages.

Runs on its own timer, independent of the probe scheduler. The latest reading
per vendor is kept in memory and attached to snapshots by the read side.
"""

import asyncio
from typing import Awaitable, Callable, Optional

import httpx
import structlog

from .metrics import OFFICIAL_STATUS
from .models import OfficialHealthStatus, OfficialStatusResult, ProviderType

log = structlog.get_logger()

OPENAI_STATUS_URL = "https://status.openai.com/proxy/status.openai.com"
ANTHROPIC_STATUS_URL = "https://status.anthropic.com/api/v2/summary.json"

DEFAULT_TIMEOUT = 15.0
DOWN_MARKERS = ("down", "outage", "major")
MAX_LISTED_COMPONENTS = 3

# Gauge encoding for OFFICIAL_STATUS
STATUS_GAUGE_VALUES = {
    OfficialHealthStatus.OPERATIONAL: 0,
    OfficialHealthStatus.DEGRADED: 1,
    OfficialHealthStatus.DOWN: 2,
    OfficialHealthStatus.UNKNOWN: 3,
}

# Statuspage indicators
STATUSPAGE_INDICATORS = {
    "none": OfficialHealthStatus.OPERATIONAL,
    "minor": OfficialHealthStatus.DEGRADED,
    "maintenance": OfficialHealthStatus.DEGRADED,
    "major": OfficialHealthStatus.DOWN,
    "critical": OfficialHealthStatus.DOWN,
}


def unknown(message: str) -> OfficialStatusResult:
    return OfficialStatusResult(status=OfficialHealthStatus.UNKNOWN, message=message)


def _is_down(status: Optional[str]) -> bool:
    status = (status or "").lower()
    return any(marker in status for marker in DOWN_MARKERS)


def _components_message(names: list[str]) -> str:
    listed = ", ".join(names[:MAX_LISTED_COMPONENTS])
    more = "..." if len(names) > MAX_LISTED_COMPONENTS else ""
    return f"{len(names)} components affected: {listed}{more}"


# =============================================================================
# Parsers
# =============================================================================

def parse_openai_status(data: dict) -> OfficialStatusResult:
    """Classify the status.openai.com proxy payload."""
    summary = data.get("summary")
    if not isinstance(summary, dict):
        raise ValueError("missing summary")

    components = summary.get("components") or []
    affected = summary.get("affected_components") or []
    incidents = summary.get("ongoing_incidents") or []

    if not affected and not incidents:
        return OfficialStatusResult(
            status=OfficialHealthStatus.OPERATIONAL,
            message="all systems operational",
        )

    names_by_id = {c.get("id"): c.get("name") for c in components}
    affected_ids = []
    down = False

    for comp in affected:
        affected_ids.append(comp.get("component_id"))
        down = down or _is_down(comp.get("status"))

    for incident in incidents:
        down = down or _is_down(incident.get("status"))
        for comp in incident.get("affected_components") or []:
            affected_ids.append(comp.get("component_id"))

    names = []
    for component_id in dict.fromkeys(affected_ids):
        name = names_by_id.get(component_id)
        if name:
            names.append(name)

    status = OfficialHealthStatus.DOWN if down else OfficialHealthStatus.DEGRADED
    if names:
        message = _components_message(names)
    else:
        message = "service outage" if down else "degraded performance"

    return OfficialStatusResult(status=status, message=message, affected_components=names)


def parse_statuspage_summary(data: dict) -> OfficialStatusResult:
    """Classify an Atlassian Statuspage summary.json / status.json payload."""
    page_status = data.get("status")
    if not isinstance(page_status, dict):
        raise ValueError("missing status")

    indicator = page_status.get("indicator") or ""
    status = STATUSPAGE_INDICATORS.get(indicator)
    if status is None:
        raise ValueError(f"unknown indicator: {indicator!r}")

    names = [
        c.get("name") for c in data.get("components") or []
        if c.get("name") and c.get("status") not in (None, "operational")
        and not c.get("group")
    ]

    if names:
        message = _components_message(names)
    else:
        message = page_status.get("description") or "all systems operational"

    return OfficialStatusResult(status=status, message=message, affected_components=names)


# =============================================================================
# Fetching
# =============================================================================

async def fetch_status(url: str, parser: Callable[[dict], OfficialStatusResult],
                       timeout: float = DEFAULT_TIMEOUT,
                       transport: Optional[httpx.AsyncBaseTransport] = None) -> OfficialStatusResult:
    """Fetch and classify one status page. Never raises."""
    try:
        async with httpx.AsyncClient(timeout=timeout, transport=transport) as client:
            response = await client.get(url, headers={"Accept": "application/json"})
    except httpx.TimeoutException:
        log.warning("official_status_timeout", url=url, timeout=timeout)
        return unknown("status check timed out")
    except httpx.HTTPError as e:
        log.warning("official_status_request_failed", url=url, error=str(e))
        return unknown(f"status check failed: {e}")

    if response.status_code != 200:
        return unknown(f"HTTP {response.status_code}")

    try:
        return parser(response.json())
    except (ValueError, TypeError, AttributeError) as e:
        log.warning("official_status_parse_failed", url=url, error=str(e))
        return unknown("unreadable status payload")


class OfficialStatusPoller:
    """Periodically refreshes the official status of every vendor."""

    def __init__(self, interval_seconds: int = 300, timeout: float = DEFAULT_TIMEOUT,
                 transport: Optional[httpx.AsyncBaseTransport] = None):
        self.interval = interval_seconds
        self.timeout = timeout
        self._transport = transport
        self._statuses: dict[ProviderType, OfficialStatusResult] = {}
        self._running = False
        self._task: Optional[asyncio.Task] = None
        self._checkers: dict[ProviderType, Callable[[], Awaitable[OfficialStatusResult]]] = {
            ProviderType.OPENAI: lambda: fetch_status(
                OPENAI_STATUS_URL, parse_openai_status, self.timeout, self._transport),
            ProviderType.ANTHROPIC: lambda: fetch_status(
                ANTHROPIC_STATUS_URL, parse_statuspage_summary, self.timeout, self._transport),
            ProviderType.GEMINI: self._not_configured,
        }

    @staticmethod
    async def _not_configured() -> OfficialStatusResult:
        return unknown("official status not configured")

    def get(self, provider: ProviderType) -> Optional[OfficialStatusResult]:
        return self._statuses.get(ProviderType(provider))

    def all(self) -> dict[ProviderType, OfficialStatusResult]:
        return dict(self._statuses)

    async def check_all(self) -> dict[ProviderType, OfficialStatusResult]:
        """Refresh every vendor once; a second concurrent call is a no-op."""
        if self._running:
            log.info("official_status_check_skipped", reason="previous check still running")
            return self.all()

        self._running = True
        try:
            providers = list(self._checkers)
            results = await asyncio.gather(*(self._checkers[p]() for p in providers))
            for provider, result in zip(providers, results):
                self._statuses[provider] = result
                OFFICIAL_STATUS.labels(provider=provider.value).set(STATUS_GAUGE_VALUES[result.status])
                log.info("official_status",
                         provider=provider.value,
                         status=result.status.value,
                         message=result.message)
        finally:
            self._running = False
        return self.all()

    async def run_loop(self):
        while True:
            try:
                await self.check_all()
            except Exception as e:
                log.error("official_status_loop_error", error=str(e))
            await asyncio.sleep(self.interval)

    def start(self):
        if self._task is not None:
            return
        log.info("official_status_poller_started", interval=self.interval)
        self._task = asyncio.create_task(self.run_loop())

    async def stop(self):
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        log.info("official_status_poller_stopped")
