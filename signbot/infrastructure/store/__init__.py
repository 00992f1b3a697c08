"""
Durable store backends.

``create_store`` picks the backend from settings: Redis when
``REDIS_ENABLED`` is set, otherwise the in-memory fallback.
"""

from signbot.core.config.settings import Settings
from signbot.core.interfaces.store import DurableStore
from signbot.core.logging.logger import get_logger
from signbot.infrastructure.store.memory_store import InMemoryStore
from signbot.infrastructure.store.redis_store import RedisStore

logger = get_logger(__name__)


async def create_store(settings: Settings) -> DurableStore:
    """
    Build and connect the configured store.

    Raises:
        StoreUnavailableError: If Redis is enabled but unreachable at startup
    """
    if settings.redis.REDIS_ENABLED:
        store = RedisStore(settings)
        await store.connect()
        return store

    logger.warning(
        "Redis disabled, using in-memory store; duplicate detection and "
        "session versioning are per instance only",
        stage="STORE.0",
    )
    return InMemoryStore()


__all__ = ["InMemoryStore", "RedisStore", "create_store"]
