"""Shared fixtures: a controllable clock, a sleep that never waits, and a
scripted provider that answers from a handler function.
"""

import asyncio
import random
from typing import Callable, Optional

import pytest

from genorch.config import (
    BatchConfig,
    ProviderConfig,
    RateLimitConfig,
    ReconcilerConfig,
    RetryConfig,
    Settings,
    ThrottleConfig,
)
from genorch.schemas.generation import GenerationRequest, ProviderResponse
from genorch.services.provider.base import GenerationProvider

START_MS = 1_700_000_000_000.0
IMAGE_ENDPOINT = "POST:https://provider.test/v1/images/generations"


class FakeClock:
    """Millisecond clock that only moves when told to."""

    def __init__(self, start: float = START_MS):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, ms: float) -> None:
        self.now += ms


class FakeSleep:
    """Records requested sleeps (seconds) and advances the clock instead of waiting."""

    def __init__(self, clock: Optional[FakeClock] = None):
        self.calls: list[float] = []
        self.clock = clock

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)
        if self.clock is not None:
            self.clock.advance(seconds * 1000)
        # Still yield so sibling tasks interleave
        await asyncio.sleep(0)


class ScriptedProvider(GenerationProvider):
    """Provider whose answers come from send_handler / task_handler.

    Handlers receive the request (or task id) and return a ProviderResponse
    or raise. Every call is recorded.
    """

    def __init__(
        self,
        send_handler: Callable[[GenerationRequest], ProviderResponse],
        task_handler: Optional[Callable[[str], ProviderResponse]] = None,
    ):
        self.send_handler = send_handler
        self.task_handler = task_handler
        self.sent: list[GenerationRequest] = []
        self.polled: list[str] = []
        self.closed = False

    async def send(self, request: GenerationRequest) -> ProviderResponse:
        self.sent.append(request)
        await asyncio.sleep(0)
        return self.send_handler(request)

    async def get_task(self, task_id: str) -> ProviderResponse:
        self.polled.append(task_id)
        await asyncio.sleep(0)
        return self.task_handler(task_id)

    def endpoint_key(self, request: GenerationRequest) -> str:
        return f"POST:https://provider.test/v1/{request.type}s/generations"

    async def close(self) -> None:
        self.closed = True


def ok(body=None, **headers) -> ProviderResponse:
    return ProviderResponse(status_code=200, headers=headers, body=body if body is not None else {})


def too_many_requests(retry_after: Optional[str] = None) -> ProviderResponse:
    headers = {"Retry-After": retry_after} if retry_after is not None else {}
    return ProviderResponse(
        status_code=429,
        headers=headers,
        body={"error": {"message": "Too Many Requests"}},
    )


def make_requests(n: int, type: str = "image", config_id: str = "cfg-1") -> list[GenerationRequest]:
    return [
        GenerationRequest(prompt=f"prompt {i}", scene_id=f"scene-{i}", config_id=config_id, type=type)
        for i in range(n)
    ]


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def sleep(clock) -> FakeSleep:
    return FakeSleep(clock)


@pytest.fixture
def rng() -> random.Random:
    return random.Random(1234)


@pytest.fixture
def test_settings() -> Settings:
    """Settings with defaults only, independent of config.yaml and env."""
    return Settings.model_construct(
        provider=ProviderConfig(base_url="https://provider.test", api_key="test-key"),
        retry=RetryConfig(max_retries=2, base_delay_ms=100, max_delay_ms=1000),
        poll_retry=RetryConfig(max_retries=1, base_delay_ms=50, max_delay_ms=500),
        rate_limit=RateLimitConfig(),
        throttle=ThrottleConfig(),
        batch=BatchConfig(),
        reconciler=ReconcilerConfig(),
    )
