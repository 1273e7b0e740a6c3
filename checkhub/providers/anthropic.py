"""
Anthropic probe — Messages API streaming.
"""

from ..challenge import Challenge
from ..models import ProviderType, Target
from .base import ProbeRequest, ProbeStrategy, StreamEvent, ensure_api_path, parse_model_directive

ANTHROPIC_VERSION = "2023-06-01"

# Enough room for a short numeric answer
MAX_TOKENS = 64


class AnthropicStrategy(ProbeStrategy):
    provider = ProviderType.ANTHROPIC

    def build_request(self, target: Target, challenge: Challenge) -> ProbeRequest:
        endpoint = target.effective_endpoint
        base = endpoint.split("?", 1)[0].rstrip("/")
        suffix = "/messages" if base.endswith("/v1") else "/v1/messages"
        url = ensure_api_path(endpoint, ("/messages",), suffix)

        model_id, _ = parse_model_directive(target.model)
        body = {
            "model": model_id,
            "max_tokens": MAX_TOKENS,
            "messages": [{"role": "user", "content": challenge.prompt}],
            "stream": True,
        }
        headers = self.base_headers(target, {
            "x-api-key": target.api_key,
            "anthropic-version": ANTHROPIC_VERSION,
        })
        return ProbeRequest(url=url, headers=headers, body=self.merge_body(target, body))

    def parse_event(self, data: dict) -> StreamEvent:
        kind = data.get("type")
        if kind == "content_block_delta":
            delta = data.get("delta") or {}
            return StreamEvent(text=delta.get("text") or "")
        if kind == "message_stop":
            return StreamEvent(done=True)
        if kind == "error":
            err = data.get("error") or {}
            return StreamEvent(error=err.get("message") or err.get("type") or "stream error")
        return StreamEvent()
