"""
Integration Tests for RedisStore

Runs the registration and versioned-write scripts on a real server
(database 15, keys namespaced per test run).
"""

import asyncio
import uuid

import pytest

from signbot.application.context import ResilienceContext
from signbot.core.config.constants import EventType
from signbot.core.config.settings import Settings
from signbot.core.exceptions import ConcurrencyError, StoreUnavailableError
from signbot.infrastructure.store.redis_store import RedisStore

pytestmark = pytest.mark.integration


@pytest.fixture
def redis_settings(tmp_path):
    return Settings(
        _env_file=None,
        REDIS_ENABLED=True,
        REDIS_DB=15,
        REDIS_SOCKET_CONNECT_TIMEOUT=1,
        AUDIT_BACKUP_PATH=str(tmp_path / "audit_backup.json"),
        LOG_FORMAT="console",
    )


@pytest.fixture
async def redis_store(redis_settings):
    store = RedisStore(redis_settings, session_ttl=60)
    try:
        await store.connect()
    except StoreUnavailableError:
        pytest.skip("Redis not reachable")
    yield store
    await store.close()


@pytest.fixture
def key():
    return f"it-{uuid.uuid4().hex}"


class TestRegisterIfAbsent:
    async def test_first_sighting_then_counted_redeliveries(self, redis_store, key):
        first = await redis_store.register_if_absent(key)
        second = await redis_store.register_if_absent(key)
        third = await redis_store.register_if_absent(key)

        assert (first.inserted, first.count) == (True, 0)
        assert (second.inserted, second.count) == (False, 1)
        assert (third.inserted, third.count) == (False, 2)

    async def test_concurrent_registrations_insert_once(self, redis_store, key):
        results = await asyncio.gather(*(redis_store.register_if_absent(key) for _ in range(10)))

        assert sum(r.inserted for r in results) == 1
        assert sorted(r.count for r in results) == list(range(10))


class TestVersionedWrites:
    async def test_absent_session_reads_as_version_zero(self, redis_store, key):
        state = await redis_store.read_versioned(key)

        assert (state.payload, state.version) == ({}, 0)

    async def test_write_then_read(self, redis_store, key):
        await redis_store.write_versioned(key, {"step": "consent"}, expected_version=0)

        state = await redis_store.read_versioned(key)

        assert state.payload == {"step": "consent"}
        assert state.version == 1

    async def test_stale_write_rejected(self, redis_store, key):
        await redis_store.write_versioned(key, {"step": "consent"}, expected_version=0)

        with pytest.raises(ConcurrencyError) as exc_info:
            await redis_store.write_versioned(key, {"step": "signed"}, expected_version=0)

        assert exc_info.value.actual_version == 1


class TestSharedStoreAcrossContexts:
    async def test_second_instance_sees_duplicate(self, redis_store, redis_settings, key):
        first = ResilienceContext(settings=redis_settings, store=redis_store)
        second = ResilienceContext(settings=redis_settings, store=redis_store)

        a = await first.idempotency.check_and_register(key, EventType.MESSAGE)
        b = await second.idempotency.check_and_register(key, EventType.MESSAGE)

        assert not a.is_duplicate
        assert b.is_duplicate
        assert b.delivery_count == 1

    async def test_audit_events_persisted(self, redis_store, redis_settings):
        context = ResilienceContext(settings=redis_settings, store=redis_store)
        context.audit.record("CIRCUIT_RESET", breaker="whatsapp")

        assert await context.audit.drain() == 1
        assert len(context.audit) == 0


class TestDeadLetters:
    async def ids_due(self, store, now):
        return [row["id"] for row in await store.due_dead_letters(now, limit=1000)]

    async def test_schedule_reschedule_and_delete(self, redis_store, key):
        await redis_store.put_dead_letter(key, {"id": key, "retry_count": 0}, 100.0)

        assert key not in await self.ids_due(redis_store, 99.0)
        assert key in await self.ids_due(redis_store, 100.0)

        await redis_store.put_dead_letter(key, {"id": key, "retry_count": 3, "status": "FAILED"}, None)
        assert key not in await self.ids_due(redis_store, 1e12)

        await redis_store.delete_dead_letter(key)
        assert await redis_store._client.hget("signbot:dlq:entries", key) is None
