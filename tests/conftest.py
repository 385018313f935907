"""Shared fixtures for the webhook pipeline test suite."""

from __future__ import annotations

import pytest

from webhook_pipeline.core.config import Settings
from webhook_pipeline.core.rate_limiter import limiter
from webhook_pipeline.integrations.memory_queue import InMemoryQueue
from webhook_pipeline.schemas.queue_models import QueuePolicy

DAY = 86400.0


class FakeClock:
    """Manually advanced wall clock for queue visibility and retention."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def dlq(clock) -> InMemoryQueue:
    return InMemoryQueue("webhook-dlq", QueuePolicy(retention_seconds=14 * DAY, max_receive_count=None), clock=clock)


@pytest.fixture()
def queue(clock, dlq) -> InMemoryQueue:
    return InMemoryQueue("webhook-queue", QueuePolicy(retention_seconds=7 * DAY, max_receive_count=3), dlq, clock=clock)


@pytest.fixture()
def make_settings():
    """Settings isolated from the environment's .env file."""

    def _make(**overrides) -> Settings:
        values = {"QUEUE_BACKEND": "memory", "DISPATCHER_ENABLED": False}
        values.update(overrides)
        return Settings(_env_file=None, **values)

    return _make


@pytest.fixture(autouse=True)
def _reset_rate_limiter():
    limiter.reset()
    yield
