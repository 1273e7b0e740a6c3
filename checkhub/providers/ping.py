"""
Endpoint ping — round-trip time of a HEAD request to the endpoint's origin.

Runs alongside the probe and only measures connectivity; any HTTP status
counts as reachable.
"""

import time
from typing import Optional
from urllib.parse import urlsplit

import httpx
import structlog

log = structlog.get_logger()

PING_TIMEOUT_S = 5.0


def endpoint_origin(url: str) -> Optional[str]:
    parts = urlsplit(url)
    if not parts.scheme or not parts.netloc:
        return None
    return f"{parts.scheme}://{parts.netloc}"


async def measure_endpoint_ping(url: str, timeout: float = PING_TIMEOUT_S,
                                transport: Optional[httpx.AsyncBaseTransport] = None) -> Optional[int]:
    """Milliseconds for a HEAD round trip, or None when unreachable."""
    origin = endpoint_origin(url)
    if not origin:
        return None

    started = time.monotonic()
    try:
        async with httpx.AsyncClient(timeout=timeout, transport=transport) as client:
            await client.head(origin)
    except httpx.HTTPError as e:
        log.debug("endpoint_ping_failed", origin=origin, error=str(e))
        return None
    return int((time.monotonic() - started) * 1000)
