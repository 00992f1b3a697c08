"""
Idempotent Intake of Inbound Events

Webhook providers redeliver events they believe were not acknowledged.
IdempotencyGuard decides, per idempotency key (e.g. WhatsApp message id),
whether a delivery is the first sighting.

Two tiers:
1. **Recent keys (in process)**: a bounded LRU of keys this instance has
   seen. A hit is a duplicate and the store is not consulted.
2. **Durable store**: an atomic register-if-absent. ``inserted`` means first
   sighting; otherwise the store returns the redelivery count.

The key is added to the recent-keys map before the store call is awaited.
A second delivery racing the first inside this instance therefore hits the
memory tier and is treated as a duplicate.

Store failures fall back to a declared per-event-type policy:
- FAIL_OPEN: treat as new. A rare duplicate is better than a lost message.
- FAIL_CLOSED: treat as duplicate and drop. Used for events whose
  re-processing has an unsafe side effect (e.g. double-recording a survey
  answer). The key is forgotten so a redelivery after the store recovers
  is processed.

The default split (survey responses fail closed, everything else fails open)
still needs product sign-off. It lives in settings, not at call sites.
"""

from collections import OrderedDict
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from enum import Enum

from signbot.core.config.constants import AuditEventType, EventType, Severity
from signbot.core.config.settings import Settings
from signbot.core.interfaces.store import DurableStore
from signbot.core.logging.logger import get_logger
from signbot.core.observability.audit import AuditLog
from signbot.infrastructure.store.memory_store import InMemoryStore

logger = get_logger(__name__)


class FailPolicy(str, Enum):
    FAIL_OPEN = "fail_open"
    FAIL_CLOSED = "fail_closed"


class DuplicateSource(str, Enum):
    """Which tier (or fallback) produced an IdempotencyResult."""

    MEMORY = "memory"
    STORE = "store"
    FAIL_OPEN = "fail_open"
    FAIL_CLOSED = "fail_closed"


@dataclass(frozen=True)
class IdempotencyPolicy:
    """Fail policy per event type, with a default for undeclared types."""

    default: FailPolicy = FailPolicy.FAIL_OPEN
    overrides: Mapping[str, FailPolicy] = field(default_factory=dict)

    def for_event(self, event_type: str) -> FailPolicy:
        return self.overrides.get(str(getattr(event_type, "value", event_type)), self.default)

    @classmethod
    def fail_closed_for(cls, event_types: Iterable[str]) -> "IdempotencyPolicy":
        return cls(overrides={str(getattr(e, "value", e)): FailPolicy.FAIL_CLOSED for e in event_types})

    @classmethod
    def from_settings(cls, settings: Settings) -> "IdempotencyPolicy":
        return cls.fail_closed_for(settings.idempotency.IDEMPOTENCY_FAIL_CLOSED_EVENTS)


@dataclass(frozen=True)
class IdempotencyResult:
    is_duplicate: bool
    delivery_count: int
    source: DuplicateSource


class RecentKeys:
    """
    Bounded LRU of idempotency key → delivery count.

    All methods are synchronous, which keeps check-and-add atomic under asyncio.
    """

    def __init__(self, max_size: int = 10000):
        self._max_size = max_size
        self._keys: OrderedDict[str, int] = OrderedDict()

    def __len__(self) -> int:
        return len(self._keys)

    def __contains__(self, key: str) -> bool:
        return key in self._keys

    def touch(self, key: str) -> int | None:
        """Count a redelivery of ``key``; None if the key is not tracked."""
        if key not in self._keys:
            return None
        self._keys.move_to_end(key)
        self._keys[key] += 1
        return self._keys[key]

    def add(self, key: str, count: int = 0) -> None:
        self._keys[key] = count
        self._keys.move_to_end(key)
        while len(self._keys) > self._max_size:
            self._keys.popitem(last=False)

    def set_count(self, key: str, count: int) -> None:
        if key in self._keys:
            self._keys[key] = max(self._keys[key], count)

    def discard(self, key: str) -> None:
        self._keys.pop(key, None)


class IdempotencyGuard:
    """
    Two-tier duplicate delivery detector.

    Args:
        store: Durable store; defaults to a per-instance InMemoryStore
        policy: Fail policy per event type
        max_keys: Size of the in-process recent-keys map
        audit: Audit log receiving fail-policy events
    """

    def __init__(
        self,
        store: DurableStore | None = None,
        policy: IdempotencyPolicy | None = None,
        max_keys: int = 10000,
        audit: AuditLog | None = None,
    ):
        self._store = store if store is not None else InMemoryStore()
        self.policy = policy or IdempotencyPolicy()
        self._recent = RecentKeys(max_keys)
        self._audit = audit

    @property
    def recent_keys(self) -> RecentKeys:
        return self._recent

    async def check_and_register(
        self, key: str, event_type: EventType | str = EventType.MESSAGE
    ) -> IdempotencyResult:
        """
        Decide whether this delivery of ``key`` is the first one.

        STAGE-ID.1: Duplicate check

        Returns:
            IdempotencyResult; ``delivery_count`` is 0 on first sighting and
            grows by one with each redelivery
        """
        count = self._recent.touch(key)
        if count is not None:
            logger.info("Duplicate delivery (memory)", stage="ID.1", key=key, delivery_count=count)
            return IdempotencyResult(is_duplicate=True, delivery_count=count, source=DuplicateSource.MEMORY)
        self._recent.add(key)

        try:
            registration = await self._store.register_if_absent(key)
        except Exception as e:
            return self._apply_fail_policy(key, event_type, e)

        if registration.inserted:
            return IdempotencyResult(is_duplicate=False, delivery_count=0, source=DuplicateSource.STORE)

        self._recent.set_count(key, registration.count)
        logger.info(
            "Duplicate delivery (store)",
            stage="ID.2",
            key=key,
            delivery_count=registration.count,
        )
        return IdempotencyResult(
            is_duplicate=True, delivery_count=registration.count, source=DuplicateSource.STORE
        )

    def _apply_fail_policy(self, key: str, event_type: EventType | str, error: Exception) -> IdempotencyResult:
        """
        STAGE-ID.3: Store failure fallback
        """
        event_name = str(getattr(event_type, "value", event_type))
        policy = self.policy.for_event(event_name)

        if policy == FailPolicy.FAIL_CLOSED:
            self._recent.discard(key)
            logger.error(
                "Idempotency store unavailable, dropping event",
                stage="ID.3",
                key=key,
                event_type=event_name,
                error_type=type(error).__name__,
            )
            if self._audit is not None:
                self._audit.record(
                    AuditEventType.IDEMPOTENCY_FAIL_CLOSED, Severity.ERROR, key=key, event_class=event_name
                )
            return IdempotencyResult(is_duplicate=True, delivery_count=0, source=DuplicateSource.FAIL_CLOSED)

        logger.warning(
            "Idempotency store unavailable, processing event",
            stage="ID.3",
            key=key,
            event_type=event_name,
            error_type=type(error).__name__,
        )
        if self._audit is not None:
            self._audit.record(
                AuditEventType.IDEMPOTENCY_FAIL_OPEN, Severity.WARNING, key=key, event_class=event_name
            )
        return IdempotencyResult(is_duplicate=False, delivery_count=0, source=DuplicateSource.FAIL_OPEN)
