from __future__ import annotations

import json
from collections.abc import Callable
from datetime import datetime, timedelta, timezone

import httpx
import pytest

from llmgate.gateway.config_provider import ProviderSettings, StaticConfigurationProvider
from llmgate.gateway.gateway import LlmGateway
from llmgate.gateway.types import ProviderId


class FakeClock:
    """Monotonic clock driven by the test."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeDateClock:
    """UTC wall clock driven by the test."""

    def __init__(self, start: datetime | None = None):
        self.now = start or datetime(2025, 3, 12, 10, 30, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class RecordingTransport(httpx.MockTransport):
    """MockTransport that remembers every request it served."""

    def __init__(self, handler: Callable[[httpx.Request], httpx.Response]):
        self.requests: list[httpx.Request] = []

        def _handler(request: httpx.Request) -> httpx.Response:
            self.requests.append(request)
            return handler(request)

        super().__init__(_handler)

    @property
    def calls(self) -> int:
        return len(self.requests)

    def last_json(self) -> dict:
        return json.loads(self.requests[-1].content)


def provider_settings(**overrides) -> ProviderSettings:
    values = dict(
        api_key="test-key",
        base_url="https://api.test.local/v1",
        default_model="test-model",
        timeout=5.0,
        max_retries=2,
        base_retry_delay=0.0,
        max_retry_delay=0.0,
    )
    values.update(overrides)
    return ProviderSettings(**values)


def openai_chat_body(content: str = "Hello!", prompt_tokens: int = 5, completion_tokens: int = 3) -> dict:
    return {
        "id": "chatcmpl-1",
        "model": "gpt-4o-mini",
        "choices": [{"index": 0, "message": {"role": "assistant", "content": content}, "finish_reason": "stop"}],
        "usage": {
            "prompt_tokens": prompt_tokens,
            "completion_tokens": completion_tokens,
            "total_tokens": prompt_tokens + completion_tokens,
        },
    }


def openai_sse_body(parts: list[str], usage: dict | None = None) -> bytes:
    lines = []
    for i, part in enumerate(parts):
        finish = "stop" if i == len(parts) - 1 else None
        frame = {"choices": [{"index": 0, "delta": {"content": part}, "finish_reason": finish}]}
        lines.append(f"data: {json.dumps(frame)}\n\n")
    if usage:
        lines.append(f"data: {json.dumps({'choices': [], 'usage': usage})}\n\n")
    lines.append("data: [DONE]\n\n")
    return "".join(lines).encode()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def date_clock() -> FakeDateClock:
    return FakeDateClock()


@pytest.fixture
def make_gateway():
    """Build a gateway over a MockTransport serving ``handler``."""

    def _make(
        handler: Callable[[httpx.Request], httpx.Response],
        providers: dict[ProviderId, ProviderSettings] | None = None,
        **components,
    ) -> tuple[LlmGateway, RecordingTransport]:
        transport = RecordingTransport(handler)
        config = StaticConfigurationProvider(
            providers or {ProviderId.OPENAI: provider_settings(default_model="gpt-4o-mini")}
        )
        return LlmGateway(config, transport=transport, **components), transport

    return _make
