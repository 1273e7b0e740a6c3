"""
Common probe flow shared by every vendor strategy.

1. Build the vendor request around a fresh arithmetic challenge
2. Stream the reply, timing the first content chunk
3. Ping the endpoint origin concurrently
4. Validate the collected text and classify the outcome

A strategy never raises past probe(); every failure becomes a CheckResult.
"""

from __future__ import annotations

import abc
import asyncio
import json
import re
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

import httpx
import structlog

from .. import __version__
from ..challenge import Challenge, generate_challenge, validate_response
from ..models import CheckResult, HealthStatus, ProviderType, Target
from .. import polling
from .ping import measure_endpoint_ping

log = structlog.get_logger()

USER_AGENT = f"checkhub/{__version__}"

# Stop collecting once this much text has arrived; the answer is a short number
MAX_COLLECTED_CHARS = 4000

TIMEOUT_MESSAGE = "request timed out"
ABORTED_MESSAGE = "request was aborted"
EMPTY_REPLY_MESSAGE = "empty reply"

# Metadata keys owned by the probe itself; never merged into the request body
RESERVED_BODY_KEYS = {
    "model", "messages", "input", "prompt", "stream", "abortSignal",
}

_DIRECTIVE_RE = re.compile(r"^(.*?)[@#](mini|minimal|low|medium|high)$", re.IGNORECASE)
_MESSAGE_RE = re.compile(r'"message"\s*:\s*"([^"]+)"')


class ProviderHTTPError(Exception):
    """Vendor answered with a non-2xx status or an error event."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code

    def __str__(self):
        msg = super().__str__()
        return f"[{self.status_code}] {msg}" if self.status_code else msg


@dataclass
class ProbeRequest:
    url: str
    headers: dict[str, str]
    body: dict[str, Any]


@dataclass
class StreamEvent:
    """Text and/or error carried by one streamed event."""
    text: str = ""
    error: Optional[str] = None
    done: bool = False


@dataclass
class StreamReading:
    text: str = ""
    first_token_ms: Optional[int] = None
    elapsed_ms: int = 0
    events: int = 0
    chunks: list[str] = field(default_factory=list)


def parse_model_directive(model: str) -> tuple[str, Optional[str]]:
    """Split 'o3@high' into ('o3', 'high'). No directive gives (model, None)."""
    trimmed = (model or "").strip()
    if not trimmed:
        return model, None
    match = _DIRECTIVE_RE.match(trimmed)
    if match:
        base, effort = match.groups()
        return base.strip() or trimmed, effort.lower()
    return trimmed, None


def request_body_extras(metadata: Optional[dict[str, Any]]) -> dict[str, Any]:
    """Metadata entries that are passed through as extra body parameters."""
    if not metadata:
        return {}
    return {
        k: v for k, v in metadata.items()
        if k not in RESERVED_BODY_KEYS and not polling.is_override_key(k)
    }


def extract_error_message(body: str) -> Optional[str]:
    """Best-effort human message from a vendor error body."""
    if not body:
        return None
    try:
        data = json.loads(body)
    except ValueError:
        data = None
    if isinstance(data, dict):
        err = data.get("error")
        if isinstance(err, dict) and err.get("message"):
            return str(err["message"])
        if isinstance(err, str) and err:
            return err
        if data.get("message"):
            return str(data["message"])
    if isinstance(data, list) and data and isinstance(data[0], dict):
        return extract_error_message(json.dumps(data[0]))
    match = _MESSAGE_RE.search(body)
    return match.group(1) if match else None


def classify_latency(latency_ms: int, threshold_ms: int) -> HealthStatus:
    """Operational up to and including the threshold, degraded above it."""
    return HealthStatus.OPERATIONAL if latency_ms <= threshold_ms else HealthStatus.DEGRADED


def ensure_api_path(endpoint: str, suffixes: tuple[str, ...], default_suffix: str) -> str:
    """Append the API path when the endpoint is a bare base URL."""
    base, sep, query = endpoint.partition("?")
    stripped = base.rstrip("/")
    if any(stripped.endswith(s) for s in suffixes):
        return endpoint
    return f"{stripped}{default_suffix}{sep}{query}"


class ProbeStrategy(abc.ABC):
    """One vendor family's request shape and stream parsing."""

    provider: ProviderType

    def __init__(self, transport: Optional[httpx.AsyncBaseTransport] = None,
                 clock: Callable[[], float] = time.monotonic,
                 challenge_factory: Callable[[], Challenge] = generate_challenge,
                 ping_enabled: bool = True):
        self._transport = transport
        self._clock = clock
        self._challenge_factory = challenge_factory
        self._ping_enabled = ping_enabled

    # -------------------------------------------------------------------------
    # Vendor hooks
    # -------------------------------------------------------------------------

    @abc.abstractmethod
    def build_request(self, target: Target, challenge: Challenge) -> ProbeRequest:
        """Vendor-specific URL, headers and body."""

    @abc.abstractmethod
    def parse_event(self, data: dict) -> StreamEvent:
        """Turn one decoded SSE data payload into text/error."""

    def base_headers(self, target: Target, auth: dict[str, str]) -> dict[str, str]:
        headers = {
            "User-Agent": USER_AGENT,
            "Content-Type": "application/json",
            "Accept": "text/event-stream",
            **auth,
        }
        headers.update(target.request_headers or {})
        return headers

    @staticmethod
    def merge_body(target: Target, base: dict[str, Any]) -> dict[str, Any]:
        """Extra metadata parameters under the base fields; base fields always win."""
        return {**request_body_extras(target.metadata), **base}

    # -------------------------------------------------------------------------
    # Probe
    # -------------------------------------------------------------------------

    async def probe(self, target: Target) -> CheckResult:
        timeout_s = polling.timeout_ms(target.metadata) / 1000
        threshold_ms = polling.degraded_threshold_ms(target.metadata)
        endpoint = target.effective_endpoint

        ping_task = None
        if self._ping_enabled:
            ping_task = asyncio.create_task(
                measure_endpoint_ping(endpoint, transport=self._transport)
            )

        challenge = self._challenge_factory()
        try:
            status, latency_ms, message = await self._probe_once(
                target, challenge, timeout_s, threshold_ms
            )
        except asyncio.CancelledError:
            if ping_task is not None:
                ping_task.cancel()
            raise
        except Exception as e:  # last line of defence; probe() must not raise
            log.error("probe_unexpected_error", target=target.name, error=str(e))
            status, latency_ms, message = HealthStatus.ERROR, None, str(e) or type(e).__name__

        ping_ms = await _collect_ping(ping_task)
        return CheckResult.for_target(target, status, latency_ms, message, ping_ms)

    async def _probe_once(self, target: Target, challenge: Challenge,
                          timeout_s: float, threshold_ms: int):
        try:
            reading = await asyncio.wait_for(self._stream(target, challenge), timeout_s)
        except (asyncio.TimeoutError, httpx.TimeoutException):
            return HealthStatus.FAILED, None, TIMEOUT_MESSAGE
        except ProviderHTTPError as e:
            return HealthStatus.ERROR, None, str(e)
        except httpx.TransportError as e:
            return HealthStatus.FAILED, None, f"{ABORTED_MESSAGE}: {str(e) or type(e).__name__}"

        self._log_exchange(target, challenge, reading.text)

        text = reading.text.strip()
        if not text:
            return HealthStatus.FAILED, reading.elapsed_ms, EMPTY_REPLY_MESSAGE

        validation = validate_response(text, challenge.expected_answer)
        latency_ms = reading.first_token_ms if reading.first_token_ms is not None else reading.elapsed_ms
        if not validation.valid:
            extracted = ", ".join(validation.extracted_numbers)
            return (
                HealthStatus.VALIDATION_FAILED,
                latency_ms,
                f"validation failed: expected={challenge.expected_answer}, extracted=[{extracted}]",
            )

        status = classify_latency(latency_ms, threshold_ms)
        if status == HealthStatus.DEGRADED:
            message = f"slow response: {latency_ms}ms (threshold {threshold_ms}ms)"
        else:
            message = f"verified ({latency_ms}ms)"
        return status, latency_ms, message

    async def _stream(self, target: Target, challenge: Challenge) -> StreamReading:
        """Send the request and read the event stream until it ends."""
        request = self.build_request(target, challenge)
        reading = StreamReading()
        started = self._clock()

        async with httpx.AsyncClient(timeout=None, transport=self._transport) as client:
            async with client.stream("POST", request.url, headers=request.headers,
                                     json=request.body) as response:
                if response.status_code >= 400:
                    body = (await response.aread()).decode("utf-8", errors="replace")
                    detail = extract_error_message(body) or f"HTTP {response.status_code}"
                    raise ProviderHTTPError(detail, response.status_code)

                async for line in response.aiter_lines():
                    event = self._decode_line(line)
                    if event is None:
                        continue
                    reading.events += 1
                    if event.error:
                        raise ProviderHTTPError(event.error)
                    if event.text:
                        if reading.first_token_ms is None:
                            reading.first_token_ms = round((self._clock() - started) * 1000)
                        reading.chunks.append(event.text)
                        if sum(len(c) for c in reading.chunks) >= MAX_COLLECTED_CHARS:
                            break
                    if event.done:
                        break

        reading.text = "".join(reading.chunks)
        reading.elapsed_ms = round((self._clock() - started) * 1000)
        return reading

    def _decode_line(self, line: str) -> Optional[StreamEvent]:
        line = line.strip()
        if not line.startswith("data:"):
            return None
        payload = line[5:].strip()
        if not payload:
            return None
        if payload == "[DONE]":
            return StreamEvent(done=True)
        try:
            data = json.loads(payload)
        except ValueError:
            return None
        if not isinstance(data, dict):
            return None
        return self.parse_event(data)

    def _log_exchange(self, target: Target, challenge: Challenge, reply: str):
        log.debug("probe_exchange",
                  provider=self.provider.value,
                  target=target.name,
                  group=target.group_name or "default",
                  question=challenge.prompt,
                  reply=(reply or "")[:200],
                  expected=challenge.expected_answer)


async def _collect_ping(task: Optional[asyncio.Task]) -> Optional[int]:
    if task is None:
        return None
    try:
        return await task
    except Exception:
        return None
