"""
Pytest Configuration and Shared Test Fixtures

This module provides reusable fixtures for all tests.
All fixtures defined here are automatically available to all test files.
"""

import pytest

from signbot.core.config.settings import Settings
from signbot.infrastructure.store.memory_store import InMemoryStore

# pytest-asyncio runs in auto mode (see pyproject.toml), so async tests and
# async fixtures need no extra decoration.


# ============================================================================
# Time
# ============================================================================


class FakeClock:
    """Manually advanced monotonic clock (seconds)."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def fake_clock():
    return FakeClock()


class RecordingSleep:
    """Drop-in for asyncio.sleep that records delays instead of waiting."""

    def __init__(self):
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


@pytest.fixture
def recording_sleep():
    return RecordingSleep()


# ============================================================================
# Configuration
# ============================================================================


@pytest.fixture
def settings(tmp_path):
    """
    Settings isolated from the developer's .env and pointing the audit
    backup at a per-test temp file.
    """
    return Settings(
        _env_file=None,
        REDIS_ENABLED=False,
        AUDIT_BACKUP_PATH=str(tmp_path / "audit_backup.json"),
        LOG_FORMAT="console",
    )


# ============================================================================
# Infrastructure
# ============================================================================


@pytest.fixture
def memory_store():
    return InMemoryStore()
