"""
OpenAI probe — Chat Completions, or the Responses API when the endpoint
path ends with /responses.
"""

import re
from typing import Optional

from ..challenge import Challenge
from ..models import ProviderType, Target
from .base import ProbeRequest, ProbeStrategy, StreamEvent, ensure_api_path, parse_model_directive

EFFORT_ALIASES = {
    "mini": "minimal",
    "minimal": "minimal",
    "low": "low",
    "medium": "medium",
    "high": "high",
}

# Some OpenAI-compatible gateways reject reasoning models without an explicit effort
REASONING_MODEL_HINTS = [
    re.compile(r"codex", re.IGNORECASE),
    re.compile(r"\bgpt-5", re.IGNORECASE),
    re.compile(r"\bo[1-9](?:-|$)", re.IGNORECASE),
    re.compile(r"deepseek-r1", re.IGNORECASE),
    re.compile(r"qwq", re.IGNORECASE),
]

_RESPONSES_RE = re.compile(r"/responses/?$")


def is_responses_endpoint(endpoint: str) -> bool:
    path = (endpoint or "").split("?", 1)[0]
    return bool(_RESPONSES_RE.search(path))


def resolve_model(model: str) -> tuple[str, Optional[str]]:
    """Model id to send and the reasoning effort to request, if any."""
    model_id, effort = parse_model_directive(model)
    if effort:
        return model_id, EFFORT_ALIASES[effort]
    if any(p.search(model_id) for p in REASONING_MODEL_HINTS):
        return model_id, "medium"
    return model_id, None


def _error_text(err) -> str:
    if isinstance(err, dict):
        return str(err.get("message") or err.get("code") or err)
    return str(err)


class OpenAIStrategy(ProbeStrategy):
    """Streams /chat/completions or /responses with Bearer auth."""

    provider = ProviderType.OPENAI
    supports_reasoning_effort = True

    def build_request(self, target: Target, challenge: Challenge) -> ProbeRequest:
        headers = self.base_headers(target, {"Authorization": f"Bearer {target.api_key}"})
        if self.supports_reasoning_effort:
            model_id, effort = resolve_model(target.model)
        else:
            model_id, effort = parse_model_directive(target.model)[0], None

        endpoint = target.effective_endpoint
        if self.supports_reasoning_effort and is_responses_endpoint(endpoint):
            body = {
                "model": model_id,
                "input": challenge.prompt,
                "stream": True,
            }
            if effort:
                body["reasoning"] = {"effort": effort}
            return ProbeRequest(url=endpoint, headers=headers, body=self.merge_body(target, body))

        body = {
            "model": model_id,
            "messages": [{"role": "user", "content": challenge.prompt}],
            "stream": True,
        }
        if effort:
            body["reasoning_effort"] = effort
        url = ensure_api_path(endpoint, ("/chat/completions",), "/chat/completions")
        return ProbeRequest(url=url, headers=headers, body=self.merge_body(target, body))

    def parse_event(self, data: dict) -> StreamEvent:
        kind = data.get("type")
        if kind:
            return self._parse_responses_event(kind, data)

        if data.get("error"):
            return StreamEvent(error=_error_text(data["error"]))
        text = ""
        for choice in data.get("choices") or []:
            content = (choice.get("delta") or {}).get("content")
            if isinstance(content, str):
                text += content
        return StreamEvent(text=text)

    @staticmethod
    def _parse_responses_event(kind: str, data: dict) -> StreamEvent:
        if kind == "response.output_text.delta":
            return StreamEvent(text=data.get("delta") or "")
        if kind == "response.completed":
            return StreamEvent(done=True)
        if kind in ("error", "response.failed"):
            err = data.get("error") or (data.get("response") or {}).get("error")
            return StreamEvent(error=_error_text(err) if err else data.get("message") or kind)
        return StreamEvent()
