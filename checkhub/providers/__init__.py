"""
Probe strategies and the batch runner.

The runner owns concurrency and retries; strategies only know how to talk to
one vendor family:

- a probe that fails with an aborted transport is retried once immediately
- after the whole batch, every target still `failed` is re-run once together
- at most `concurrency` probes are in flight at any time
"""

import asyncio
import re
from typing import Optional

import httpx
import structlog

from ..metrics import CHECK_LATENCY, CHECK_RETRIES, CHECKS_COMPLETED
from ..models import CheckResult, HealthStatus, ProviderType, Target
from .anthropic import AnthropicStrategy
from .base import ProbeStrategy
from .gemini import GeminiStrategy
from .openai import OpenAIStrategy

log = structlog.get_logger()

MAX_ABORT_RETRIES = 1
FAILURE_CONFIRM_RETRIES = 1
REQUEST_ABORTED_PATTERN = re.compile(r"request was aborted", re.IGNORECASE)

STRATEGIES: dict[ProviderType, type[ProbeStrategy]] = {
    ProviderType.OPENAI: OpenAIStrategy,
    ProviderType.ANTHROPIC: AnthropicStrategy,
    ProviderType.GEMINI: GeminiStrategy,
}


def build_strategies(transport: Optional[httpx.AsyncBaseTransport] = None,
                     **kwargs) -> dict[ProviderType, ProbeStrategy]:
    """One strategy instance per vendor family."""
    return {ptype: cls(transport=transport, **kwargs) for ptype, cls in STRATEGIES.items()}


def is_aborted(message: Optional[str]) -> bool:
    return bool(message) and bool(REQUEST_ABORTED_PATTERN.search(message))


class CheckRunner:
    """Runs probe batches with bounded fan-out and the two-layer retry policy."""

    def __init__(self, concurrency: int = 5,
                 strategies: Optional[dict[ProviderType, ProbeStrategy]] = None):
        self.concurrency = max(1, concurrency)
        self._strategies = strategies or build_strategies()

    def strategy_for(self, target: Target) -> ProbeStrategy:
        strategy = self._strategies.get(target.type)
        if strategy is None:
            raise ValueError(f"Unsupported provider: {target.type}")
        return strategy

    async def check_with_retry(self, target: Target) -> CheckResult:
        """Probe once, retrying immediately only on an aborted transport."""
        for attempt in range(MAX_ABORT_RETRIES + 1):
            can_retry = attempt < MAX_ABORT_RETRIES
            try:
                result = await self.strategy_for(target).probe(target)
            except Exception as e:
                message = str(e) or type(e).__name__
                if is_aborted(message) and can_retry:
                    self._log_retry(target, attempt)
                    continue
                log.error("check_failed", target=target.name,
                          provider=target.type.value, error=message)
                return CheckResult.for_target(target, HealthStatus.FAILED, None, message)

            if result.status == HealthStatus.FAILED and is_aborted(result.message) and can_retry:
                self._log_retry(target, attempt)
                continue
            return result

        # unreachable: the last attempt always returns
        raise RuntimeError("retry loop exited without a result")

    @staticmethod
    def _log_retry(target: Target, attempt: int):
        CHECK_RETRIES.labels(reason="aborted").inc()
        log.warning("check_aborted_retrying", target=target.name, attempt=attempt + 2)

    async def run_checks(self, targets: list[Target]) -> list[CheckResult]:
        """Probe every target; results sorted by target name."""
        if not targets:
            return []

        semaphore = asyncio.Semaphore(self.concurrency)

        async def bounded(target: Target) -> CheckResult:
            async with semaphore:
                return await self.check_with_retry(target)

        results = list(await asyncio.gather(*(bounded(t) for t in targets)))

        for attempt in range(FAILURE_CONFIRM_RETRIES):
            failed = [i for i, r in enumerate(results) if r.status == HealthStatus.FAILED]
            if not failed:
                break

            log.warning("check_failures_confirming", count=len(failed), attempt=attempt + 1)
            CHECK_RETRIES.labels(reason="confirm").inc(len(failed))
            retried = await asyncio.gather(*(bounded(targets[i]) for i in failed))

            remaining = False
            for index, result in zip(failed, retried):
                results[index] = result
                if result.status == HealthStatus.FAILED:
                    remaining = True
            if not remaining:
                break

        for result in results:
            CHECKS_COMPLETED.labels(provider=result.type.value, status=result.status.value).inc()
            if result.latency_ms is not None and result.status in (
                    HealthStatus.OPERATIONAL, HealthStatus.DEGRADED):
                CHECK_LATENCY.labels(provider=result.type.value).observe(result.latency_ms / 1000)

        return sorted(results, key=lambda r: r.name)


__all__ = [
    "CheckRunner",
    "ProbeStrategy",
    "OpenAIStrategy",
    "AnthropicStrategy",
    "GeminiStrategy",
    "STRATEGIES",
    "build_strategies",
    "is_aborted",
]
