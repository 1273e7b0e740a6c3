import json

import httpx
import pytest

from checkhub.challenge import Challenge
from checkhub.database import CheckDatabase
from checkhub.models import CheckResult, HealthStatus, ProviderType, Target


class FakeClock:
    """Monotonic clock the tests move by hand."""

    def __init__(self, start: float = 0.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


def fixed_challenge() -> Challenge:
    return Challenge(prompt="What is 40 + 2? Reply with the number only.", expected_answer="42")


def openai_sse(*chunks: str) -> str:
    events = [
        {"choices": [{"index": 0, "delta": {"content": chunk}}]}
        for chunk in chunks
    ]
    return "".join(f"data: {json.dumps(e)}\n\n" for e in events) + "data: [DONE]\n\n"


def anthropic_sse(*chunks: str) -> str:
    events = [{"type": "message_start", "message": {"id": "msg_1"}}]
    events += [
        {"type": "content_block_delta", "index": 0, "delta": {"type": "text_delta", "text": c}}
        for c in chunks
    ]
    events.append({"type": "message_stop"})
    return "".join(f"event: {e['type']}\ndata: {json.dumps(e)}\n\n" for e in events)


def stream_response(body: str, status_code: int = 200) -> httpx.Response:
    return httpx.Response(status_code, text=body, headers={"content-type": "text/event-stream"})


def make_target(target_id: str = "t1", provider: ProviderType = ProviderType.OPENAI,
                **kwargs) -> Target:
    fields = {
        "id": target_id,
        "name": kwargs.pop("name", f"target-{target_id}"),
        "type": provider,
        "model": "gpt-4o-mini",
        "endpoint": "https://llm.example.test/v1/chat/completions",
        "api_key": "sk-test",
    }
    fields.update(kwargs)
    return Target(**fields)


def make_result(target: Target, status: HealthStatus = HealthStatus.OPERATIONAL,
                latency_ms=1200, **kwargs) -> CheckResult:
    result = CheckResult.for_target(target, status, latency_ms, kwargs.pop("message", "ok"))
    if kwargs:
        result = result.model_copy(update=kwargs)
    return result


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def db(tmp_path):
    database = CheckDatabase(str(tmp_path / "checkhub.db"))
    yield database
    database.close()


@pytest.fixture
def target():
    return make_target()
