"""
Shared fixtures: fake Redis, a controllable clock, fake delivery backends.
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from typing import List, Optional, Tuple

import fakeredis
import pytest

from backend.app.core.config import Settings
from backend.app.core.errors import BackendDeliveryError
from backend.app.notifications.backends.base import DeliveryBackend
from backend.app.notifications.chain import ProviderChain
from backend.app.notifications.models import Channel, RenderedContent
from backend.app.retry.store import RetryPolicy, RetryStore


class FrozenClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: Optional[datetime] = None):
        self.current = start or datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.current

    def advance(self, seconds: float) -> None:
        self.current += timedelta(seconds=seconds)

    def ago(self, seconds: float) -> datetime:
        return self.current - timedelta(seconds=seconds)


class FakeBackend(DeliveryBackend):
    """
    Scripted backend.

    mode: "ok" succeeds, "fail" raises BackendDeliveryError,
    "boom" raises RuntimeError, "hang" never returns.
    """

    def __init__(self, name: str, mode: str = "ok", channel: Channel = Channel.EMAIL):
        self.name = name
        self.mode = mode
        self.channel = channel
        self.calls: List[Tuple[str, RenderedContent]] = []

    async def send(self, destination: str, content: RenderedContent) -> None:
        self.calls.append((destination, content))
        if self.mode == "fail":
            raise BackendDeliveryError(self.name, "provider rejected")
        if self.mode == "boom":
            raise RuntimeError("socket exploded")
        if self.mode == "hang":
            await asyncio.sleep(3600)


def make_settings(**overrides) -> Settings:
    """Settings isolated from any local .env file."""
    return Settings(_env_file=None, **overrides)


def make_chain(channel: Channel, *backends: DeliveryBackend) -> ProviderChain:
    return ProviderChain(channel=channel, backends=tuple(backends))


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock()


@pytest.fixture
def redis_server():
    return fakeredis.FakeServer()


@pytest.fixture
async def redis_client(redis_server):
    client = fakeredis.FakeAsyncRedis(server=redis_server, decode_responses=True)
    yield client
    await client.aclose()


@pytest.fixture
def store(redis_client, clock) -> RetryStore:
    return RetryStore(redis_client, RetryPolicy(), clock=clock)
