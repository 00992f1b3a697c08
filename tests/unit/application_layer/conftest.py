"""
Shared fixtures for application-layer tests.
"""

import pytest

from signbot.application.context import ResilienceContext
from signbot.core.resilience.rate_limiter import RateLimiter
from signbot.core.resilience.retry import RetryExecutor


class RecordingHandler:
    def __init__(self, fail_on: set[str] | None = None):
        self.events = []
        self.fail_on = fail_on or set()

    async def handle(self, event, context):
        if event.idempotency_key in self.fail_on:
            raise RuntimeError("handler exploded")
        self.events.append(event)


@pytest.fixture
def handler():
    return RecordingHandler()


@pytest.fixture
def context(settings, memory_store, fake_clock, recording_sleep):
    return ResilienceContext(
        settings=settings,
        store=memory_store,
        rate_limiter=RateLimiter(limit=3, window_seconds=60, max_entries=100, clock=fake_clock),
        sender_limiter=RateLimiter(limit=3, window_seconds=60, max_entries=100, clock=fake_clock),
        executor=RetryExecutor(sleep=recording_sleep),
        clock=fake_clock,
    )

