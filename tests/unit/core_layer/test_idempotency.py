"""
Unit Tests for IdempotencyGuard

Covers the two tiers (recent keys in memory, durable store), delivery
counting, the per-event-type fail policy when the store is down, and the
in-process race where two deliveries of one key arrive together.
"""

import asyncio
from unittest.mock import AsyncMock

import pytest

from signbot.core.config.constants import EventType
from signbot.core.exceptions import StoreUnavailableError
from signbot.core.interfaces.store import RegistrationResult
from signbot.core.observability.audit import AuditLog
from signbot.core.resilience.idempotency import (
    DuplicateSource,
    FailPolicy,
    IdempotencyGuard,
    IdempotencyPolicy,
    RecentKeys,
)


@pytest.fixture
def guard(memory_store):
    return IdempotencyGuard(store=memory_store)


@pytest.fixture
def failing_store():
    store = AsyncMock()
    store.register_if_absent.side_effect = StoreUnavailableError("redis down")
    return store


@pytest.mark.unit
class TestIdempotencyGuard:
    async def test_first_sighting_is_not_duplicate(self, guard):
        result = await guard.check_and_register("wamid.123")

        assert not result.is_duplicate
        assert result.delivery_count == 0
        assert result.source == DuplicateSource.STORE

    async def test_redelivery_is_duplicate_with_count(self, guard):
        await guard.check_and_register("wamid.123")

        result = await guard.check_and_register("wamid.123")

        assert result.is_duplicate
        assert result.delivery_count == 1
        assert result.source == DuplicateSource.MEMORY

    async def test_store_tier_catches_duplicates_from_other_instances(self, memory_store):
        first_instance = IdempotencyGuard(store=memory_store)
        second_instance = IdempotencyGuard(store=memory_store)

        await first_instance.check_and_register("wamid.456")
        result = await second_instance.check_and_register("wamid.456")

        assert result.is_duplicate
        assert result.delivery_count == 1
        assert result.source == DuplicateSource.STORE

    async def test_concurrent_deliveries_admit_exactly_one(self, guard):
        results = await asyncio.gather(*(guard.check_and_register("wamid.789") for _ in range(5)))

        assert sum(not r.is_duplicate for r in results) == 1

    async def test_default_guard_uses_private_memory_store(self):
        guard = IdempotencyGuard()

        assert not (await guard.check_and_register("k")).is_duplicate
        assert (await guard.check_and_register("k")).is_duplicate

    async def test_recent_keys_bounded(self, memory_store):
        guard = IdempotencyGuard(store=memory_store, max_keys=2)
        for key in ("a", "b", "c"):
            await guard.check_and_register(key)

        assert len(guard.recent_keys) == 2
        assert "a" not in guard.recent_keys
        result = await guard.check_and_register("a")
        assert result.is_duplicate
        assert result.source == DuplicateSource.STORE


@pytest.mark.unit
class TestFailPolicy:
    async def test_fail_open_processes_event(self, failing_store):
        audit = AuditLog()
        guard = IdempotencyGuard(store=failing_store, audit=audit)

        result = await guard.check_and_register("wamid.1", EventType.MESSAGE)

        assert not result.is_duplicate
        assert result.source == DuplicateSource.FAIL_OPEN
        assert [e.event_type for e in audit.pending()] == ["IDEMPOTENCY_FAIL_OPEN"]

    async def test_fail_closed_drops_event_and_forgets_key(self, failing_store):
        audit = AuditLog()
        policy = IdempotencyPolicy.fail_closed_for([EventType.SURVEY_RESPONSE])
        guard = IdempotencyGuard(store=failing_store, policy=policy, audit=audit)

        result = await guard.check_and_register("wamid.2", EventType.SURVEY_RESPONSE)

        assert result.is_duplicate
        assert result.source == DuplicateSource.FAIL_CLOSED
        assert "wamid.2" not in guard.recent_keys
        assert [e.event_type for e in audit.pending()] == ["IDEMPOTENCY_FAIL_CLOSED"]
        assert audit.pending()[0].details["event_class"] == "survey_response"

    async def test_fail_closed_key_processed_after_store_recovers(self, failing_store):
        policy = IdempotencyPolicy.fail_closed_for(["survey_response"])
        guard = IdempotencyGuard(store=failing_store, policy=policy)
        await guard.check_and_register("wamid.3", EventType.SURVEY_RESPONSE)

        failing_store.register_if_absent.side_effect = None
        failing_store.register_if_absent.return_value = RegistrationResult(inserted=True, count=0)

        result = await guard.check_and_register("wamid.3", EventType.SURVEY_RESPONSE)
        assert not result.is_duplicate

    def test_policy_lookup(self):
        policy = IdempotencyPolicy.fail_closed_for(["survey_response"])

        assert policy.for_event(EventType.SURVEY_RESPONSE) == FailPolicy.FAIL_CLOSED
        assert policy.for_event("message") == FailPolicy.FAIL_OPEN
        assert policy.for_event("unknown") == FailPolicy.FAIL_OPEN

    def test_policy_from_settings(self, settings):
        policy = IdempotencyPolicy.from_settings(settings)

        assert policy.for_event(EventType.SURVEY_RESPONSE) == FailPolicy.FAIL_CLOSED
        assert policy.for_event(EventType.DOCUSIGN_EVENT) == FailPolicy.FAIL_OPEN


@pytest.mark.unit
class TestRecentKeys:
    def test_touch_counts_redeliveries(self):
        keys = RecentKeys(10)
        keys.add("k")

        assert keys.touch("k") == 1
        assert keys.touch("k") == 2
        assert keys.touch("missing") is None

    def test_lru_eviction_respects_touch(self):
        keys = RecentKeys(2)
        keys.add("a")
        keys.add("b")
        keys.touch("a")
        keys.add("c")

        assert "a" in keys
        assert "b" not in keys
