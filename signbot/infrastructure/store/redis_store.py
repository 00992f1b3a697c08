"""
Redis Durable Store

Architecture:
    RedisStore (DurableStore)
        ├── Connection pool lifecycle (connect / close / ping)
        ├── register_if_absent  → Lua script on a hash {first_seen, count}
        ├── read/write_versioned → HMGET + Lua compare-and-set on {payload, version}
        └── dead letters       → hash of entries + sorted set scheduled by next_retry_at

Both write paths are single Lua scripts, which Redis runs atomically, so
concurrent instances cannot interleave inside a check-and-write.

Key layout:
    signbot:idem:<key>     hash  first_seen, count   (TTL = retention)
    signbot:session:<key>  hash  payload (JSON), version
    signbot:audit          list  audit events (JSON), capped
    signbot:dlq:entries    hash  entry id -> entry (JSON)
    signbot:dlq:due        zset  entry id scored by next_retry_at
"""

import time
from typing import Any

import orjson
import redis.asyncio as redis
from redis.asyncio.connection import ConnectionPool
from redis.exceptions import RedisError

from signbot.core.config.constants import (
    AUDIT_LIST_MAX_LENGTH,
    REDIS_KEY_AUDIT,
    REDIS_KEY_DEAD_LETTER,
    REDIS_KEY_IDEMPOTENCY,
    REDIS_KEY_SESSION,
)
from signbot.core.config.settings import Settings, get_settings
from signbot.core.exceptions import ConcurrencyError, StoreUnavailableError
from signbot.core.interfaces.store import RegistrationResult, VersionedState
from signbot.core.logging.logger import get_logger

logger = get_logger(__name__)


REGISTER_IF_ABSENT_LUA = """
if redis.call('EXISTS', KEYS[1]) == 0 then
  redis.call('HSET', KEYS[1], 'first_seen', ARGV[1], 'count', 0)
  redis.call('EXPIRE', KEYS[1], tonumber(ARGV[2]))
  return {1, 0}
end
local count = redis.call('HINCRBY', KEYS[1], 'count', 1)
return {0, count}
"""

WRITE_VERSIONED_LUA = """
local current = tonumber(redis.call('HGET', KEYS[1], 'version') or '0')
if current ~= tonumber(ARGV[2]) then
  return {0, current}
end
local next_version = current + 1
redis.call('HSET', KEYS[1], 'payload', ARGV[1], 'version', next_version)
if tonumber(ARGV[3]) > 0 then
  redis.call('EXPIRE', KEYS[1], tonumber(ARGV[3]))
end
return {1, next_version}
"""


class RedisStore:
    """
    Redis-backed DurableStore.

    Args:
        settings: Application settings (connection and retention)
        client: Pre-built client; when given, ``connect`` does not create a pool
        session_ttl: Seconds to keep session state after the last write (0 = forever)
    """

    def __init__(
        self,
        settings: Settings | None = None,
        client: redis.Redis | None = None,
        session_ttl: int = 0,
    ):
        self._settings = settings or get_settings()
        self._client = client
        self._pool: ConnectionPool | None = None
        self._retention = self._settings.idempotency.IDEMPOTENCY_RETENTION_SECONDS
        self._session_ttl = session_ttl
        self._register_script = None
        self._write_script = None
        if client is not None:
            self._register_scripts(client)

    async def connect(self) -> None:
        """
        Create the connection pool and verify it with PING.

        STAGE-REDIS.1: Connection establishment

        Raises:
            StoreUnavailableError: If Redis cannot be reached
        """
        if self._client is not None:
            return

        cfg = self._settings.redis
        self._pool = ConnectionPool(
            host=cfg.REDIS_HOST,
            port=cfg.REDIS_PORT,
            db=cfg.REDIS_DB,
            password=cfg.REDIS_PASSWORD,
            max_connections=cfg.REDIS_MAX_CONNECTIONS,
            socket_connect_timeout=cfg.REDIS_SOCKET_CONNECT_TIMEOUT,
            socket_timeout=cfg.REDIS_SOCKET_TIMEOUT,
            retry_on_timeout=True,
            health_check_interval=cfg.REDIS_HEALTH_CHECK_INTERVAL,
            decode_responses=True,
        )
        client = redis.Redis(connection_pool=self._pool)
        try:
            await client.ping()
        except RedisError as e:
            logger.error("Failed to connect to Redis", stage="REDIS.1", error=str(e))
            await client.aclose()
            await self._pool.disconnect()
            self._pool = None
            raise StoreUnavailableError.from_exception(
                e, message=f"Failed to connect to Redis: {e}", host=cfg.REDIS_HOST, port=cfg.REDIS_PORT
            ) from e

        self._client = client
        self._register_scripts(client)
        logger.info(
            "Redis connected successfully",
            stage="REDIS.1",
            host=cfg.REDIS_HOST,
            port=cfg.REDIS_PORT,
            max_connections=cfg.REDIS_MAX_CONNECTIONS,
        )

    async def close(self) -> None:
        """
        STAGE-REDIS.3: Connection cleanup
        """
        if self._client is not None:
            await self._client.aclose()
            self._client = None
        if self._pool is not None:
            await self._pool.disconnect()
            self._pool = None
        logger.info("Redis disconnected", stage="REDIS.3")

    async def ping(self) -> bool:
        if self._client is None:
            return False
        try:
            return bool(await self._client.ping())
        except RedisError:
            return False

    async def register_if_absent(self, key: str) -> RegistrationResult:
        script = self._require(self._register_script)
        try:
            inserted, count = await script(
                keys=[f"{REDIS_KEY_IDEMPOTENCY}:{key}"],
                args=[f"{time.time():.3f}", self._retention],
            )
        except RedisError as e:
            raise StoreUnavailableError.from_exception(e, operation="register_if_absent") from e
        return RegistrationResult(inserted=bool(int(inserted)), count=int(count))

    async def read_versioned(self, key: str) -> VersionedState:
        client = self._require(self._client)
        try:
            payload, version = await client.hmget(f"{REDIS_KEY_SESSION}:{key}", ["payload", "version"])
        except RedisError as e:
            raise StoreUnavailableError.from_exception(e, operation="read_versioned") from e
        if payload is None:
            return VersionedState(key=key, version=int(version or 0))
        return VersionedState(key=key, payload=orjson.loads(payload), version=int(version or 0))

    async def write_versioned(
        self, key: str, payload: dict[str, Any], expected_version: int
    ) -> VersionedState:
        script = self._require(self._write_script)
        try:
            committed, version = await script(
                keys=[f"{REDIS_KEY_SESSION}:{key}"],
                args=[orjson.dumps(payload).decode(), expected_version, self._session_ttl],
            )
        except RedisError as e:
            raise StoreUnavailableError.from_exception(e, operation="write_versioned") from e
        if not int(committed):
            raise ConcurrencyError(key, expected_version, int(version))
        return VersionedState(key=key, payload=payload, version=int(version))

    async def push_audit_events(self, events: list) -> None:
        """Append audit events to a capped list (AuditLog sink)."""
        client = self._require(self._client)
        values = [orjson.dumps(event.to_dict()).decode() for event in events]
        if not values:
            return
        try:
            async with client.pipeline(transaction=False) as pipe:
                pipe.rpush(REDIS_KEY_AUDIT, *values)
                pipe.ltrim(REDIS_KEY_AUDIT, -AUDIT_LIST_MAX_LENGTH, -1)
                await pipe.execute()
        except RedisError as e:
            raise StoreUnavailableError.from_exception(e, operation="push_audit_events") from e

    async def put_dead_letter(self, entry_id: str, payload: dict[str, Any], next_retry_at: float | None) -> None:
        client = self._require(self._client)
        try:
            async with client.pipeline(transaction=True) as pipe:
                pipe.hset(f"{REDIS_KEY_DEAD_LETTER}:entries", entry_id, orjson.dumps(payload).decode())
                if next_retry_at is None:
                    pipe.zrem(f"{REDIS_KEY_DEAD_LETTER}:due", entry_id)
                else:
                    pipe.zadd(f"{REDIS_KEY_DEAD_LETTER}:due", {entry_id: next_retry_at})
                await pipe.execute()
        except RedisError as e:
            raise StoreUnavailableError.from_exception(e, operation="put_dead_letter") from e

    async def due_dead_letters(self, now: float, limit: int) -> list[dict[str, Any]]:
        client = self._require(self._client)
        try:
            ids = await client.zrangebyscore(f"{REDIS_KEY_DEAD_LETTER}:due", "-inf", now, start=0, num=limit)
            if not ids:
                return []
            values = await client.hmget(f"{REDIS_KEY_DEAD_LETTER}:entries", ids)
        except RedisError as e:
            raise StoreUnavailableError.from_exception(e, operation="due_dead_letters") from e
        return [orjson.loads(value) for value in values if value is not None]

    async def delete_dead_letter(self, entry_id: str) -> None:
        client = self._require(self._client)
        try:
            async with client.pipeline(transaction=True) as pipe:
                pipe.hdel(f"{REDIS_KEY_DEAD_LETTER}:entries", entry_id)
                pipe.zrem(f"{REDIS_KEY_DEAD_LETTER}:due", entry_id)
                await pipe.execute()
        except RedisError as e:
            raise StoreUnavailableError.from_exception(e, operation="delete_dead_letter") from e

    def _register_scripts(self, client: redis.Redis) -> None:
        self._register_script = client.register_script(REGISTER_IF_ABSENT_LUA)
        self._write_script = client.register_script(WRITE_VERSIONED_LUA)

    @staticmethod
    def _require(value):
        if value is None:
            raise StoreUnavailableError("Redis store is not connected")
        return value
