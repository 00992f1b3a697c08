"""
Unit Tests for OptimisticUpdater

Covers versioned read-modify-write, conflict retries, racing writers on
the same key, and give-up behaviour when every attempt loses.
"""

import asyncio
from unittest.mock import AsyncMock

import pytest

from signbot.core.exceptions import ConcurrencyError, StoreUnavailableError
from signbot.core.interfaces.store import VersionedState
from signbot.core.observability.audit import AuditLog
from signbot.core.resilience.optimistic import OptimisticUpdater
from signbot.core.resilience.retry import RetryExecutor, RetryPolicy


@pytest.fixture
def updater(memory_store, recording_sleep):
    return OptimisticUpdater(store=memory_store, executor=RetryExecutor(sleep=recording_sleep))


def add_step(step):
    def mutate(payload):
        payload.setdefault("steps", []).append(step)
        return payload

    return mutate


@pytest.mark.unit
class TestOptimisticUpdater:
    async def test_absent_key_reads_empty_at_version_zero(self, updater):
        state = await updater.read("5215512345678")

        assert state.payload == {}
        assert state.version == 0

    async def test_update_commits_new_version(self, updater):
        state = await updater.update_with_optimistic_retry("user", add_step("greeting"))

        assert state.version == 1
        assert state.payload == {"steps": ["greeting"]}
        assert (await updater.read("user")).payload == {"steps": ["greeting"]}

    async def test_async_mutate_fn(self, updater):
        async def mutate(payload):
            payload["flow"] = "survey"
            return payload

        state = await updater.update_with_optimistic_retry("user", mutate)

        assert state.payload == {"flow": "survey"}

    async def test_mutate_receives_a_copy(self, updater, memory_store):
        await updater.update_with_optimistic_retry("user", add_step("one"))

        def mutate_then_fail(payload):
            payload["steps"].append("leaked")
            raise ValueError("abort")

        with pytest.raises(ValueError):
            await updater.update_with_optimistic_retry("user", mutate_then_fail)

        assert (await memory_store.read_versioned("user")).payload == {"steps": ["one"]}

    async def test_racing_writers_both_commit(self, memory_store, recording_sleep):
        await memory_store.write_versioned("user", {"steps": []}, 0)
        for version in range(1, 5):
            await memory_store.write_versioned("user", {"steps": []}, version)
        assert (await memory_store.read_versioned("user")).version == 5

        barrier = asyncio.Barrier(2)
        updater = OptimisticUpdater(store=memory_store, executor=RetryExecutor(sleep=recording_sleep))

        async def writer(step):
            first_attempt = True

            async def mutate(payload):
                nonlocal first_attempt
                if first_attempt:
                    first_attempt = False
                    await barrier.wait()
                payload["steps"].append(step)
                return payload

            return await updater.update_with_optimistic_retry("user", mutate)

        results = await asyncio.gather(writer("a"), writer("b"))

        assert sorted(r.version for r in results) == [6, 7]
        final = await memory_store.read_versioned("user")
        assert final.version == 7
        assert sorted(final.payload["steps"]) == ["a", "b"]
        assert len(recording_sleep.delays) == 1

    async def test_gives_up_after_max_attempts(self, recording_sleep):
        store = AsyncMock()
        store.read_versioned.return_value = VersionedState(key="user", payload={}, version=3)
        store.write_versioned.side_effect = ConcurrencyError("user", 3, 4)
        updater = OptimisticUpdater(
            store=store,
            policy=RetryPolicy(max_attempts=3, base_delay=0.01, max_delay=0.1),
            executor=RetryExecutor(sleep=recording_sleep),
        )

        with pytest.raises(ConcurrencyError):
            await updater.update_with_optimistic_retry("user", add_step("x"))

        assert store.write_versioned.await_count == 3

    async def test_give_up_is_audited(self, recording_sleep):
        store = AsyncMock()
        store.read_versioned.return_value = VersionedState(key="user", payload={}, version=1)
        store.write_versioned.side_effect = ConcurrencyError("user", 1, 2)
        audit = AuditLog()
        updater = OptimisticUpdater(
            store=store,
            policy=RetryPolicy(max_attempts=2, base_delay=0.01, max_delay=0.1),
            executor=RetryExecutor(sleep=recording_sleep),
            audit=audit,
        )

        with pytest.raises(ConcurrencyError):
            await updater.update_with_optimistic_retry("session:5215512345678", add_step("x"))

        [event] = audit.pending()
        assert event.event_type == "SESSION_CONFLICT"
        assert event.details == {"key": "session:5215512345678", "attempts": 2}

    async def test_committed_update_is_not_audited(self, memory_store):
        audit = AuditLog()
        updater = OptimisticUpdater(store=memory_store, audit=audit)

        await updater.update_with_optimistic_retry("user", add_step("x"))

        assert audit.pending() == []

    async def test_other_errors_are_not_retried(self, recording_sleep):
        store = AsyncMock()
        store.read_versioned.side_effect = StoreUnavailableError("redis down")
        updater = OptimisticUpdater(store=store, executor=RetryExecutor(sleep=recording_sleep))

        with pytest.raises(StoreUnavailableError):
            await updater.update_with_optimistic_retry("user", add_step("x"))

        assert store.read_versioned.await_count == 1
        assert recording_sleep.delays == []

    def test_from_settings(self, settings, memory_store):
        updater = OptimisticUpdater.from_settings(settings, store=memory_store)

        assert updater._policy.max_attempts == settings.SESSION_RETRY_MAX_ATTEMPTS

