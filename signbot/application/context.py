"""
Resilience Context

One object owns every stateful resilience component of a running app:
the durable store, the circuit breaker registry, the two rate limiters
(per client IP and per message sender), the idempotency guard, the session
updater, the dead letter queue and the audit log. Routes and
services receive it through ``app.state`` instead of reaching for
module-level singletons, so tests can build an isolated context per case.

Lifecycle:
    context = await ResilienceContext.create(settings)
    await context.start()     # restore audit backup, start rate-limit sweepers
    ...
    await context.stop()      # stop background tasks, drain and back up audit, close store
"""

import time
from collections.abc import Awaitable, Callable
from dataclasses import replace
from typing import Any, TypeVar

from signbot.core.config.constants import (
    DEFAULT_EXTERNAL_TIMEOUT,
    DEFAULT_TIMEOUTS,
    AuditEventType,
    CircuitState,
    Severity,
)
from signbot.core.config.settings import Settings, get_settings
from signbot.core.exceptions import ExternalServiceError, SignBotError
from signbot.core.interfaces.store import DurableStore
from signbot.core.logging.logger import get_logger
from signbot.core.observability.audit import AuditLog
from signbot.core.resilience.circuit_breaker import CircuitBreakerRegistry
from signbot.core.resilience.classification import get_status_code
from signbot.core.resilience.dead_letter import DeadLetterQueue, DeadLetterReport, ProcessFn
from signbot.core.resilience.idempotency import IdempotencyGuard, IdempotencyPolicy
from signbot.core.resilience.optimistic import OptimisticUpdater
from signbot.core.resilience.rate_limiter import RateLimiter
from signbot.core.resilience.retry import RetryExecutor, RetryPolicy
from signbot.infrastructure.store import InMemoryStore, RedisStore, create_store

logger = get_logger(__name__)

T = TypeVar("T")


class ResilienceContext:
    """
    Application-scoped owner of the resilience components.

    Every argument is optional; missing components are built from
    ``settings``. Without a store the context runs on an InMemoryStore,
    which is only correct for a single instance.
    """

    def __init__(
        self,
        settings: Settings | None = None,
        store: DurableStore | None = None,
        breakers: CircuitBreakerRegistry | None = None,
        rate_limiter: RateLimiter | None = None,
        sender_limiter: RateLimiter | None = None,
        audit: AuditLog | None = None,
        executor: RetryExecutor | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.settings = settings or get_settings()
        self.store: DurableStore = store if store is not None else InMemoryStore()

        if audit is None:
            sink = self.store.push_audit_events if isinstance(self.store, RedisStore) else None
            audit = AuditLog(
                sink=sink,
                max_buffer=self.settings.audit.AUDIT_BUFFER_SIZE,
                drain_batch_size=self.settings.audit.AUDIT_DRAIN_BATCH_SIZE,
            )
        self.audit = audit

        if breakers is None:
            breakers = CircuitBreakerRegistry(
                self.settings, clock=clock, on_state_change=self._on_breaker_state_change
            )
        self.breakers = breakers
        if rate_limiter is None:
            rate_limiter = RateLimiter.from_settings(self.settings, clock=clock)
        self.rate_limiter = rate_limiter
        if sender_limiter is None:
            rl = self.settings.rate_limit
            sender_limiter = RateLimiter(
                limit=rl.SENDER_RATE_LIMIT_REQUESTS,
                window_seconds=rl.SENDER_RATE_LIMIT_WINDOW_SECONDS,
                max_entries=rl.RATE_LIMIT_MAX_ENTRIES,
                sweep_interval=rl.RATE_LIMIT_SWEEP_INTERVAL,
                clock=clock,
            )
        self.sender_limiter = sender_limiter
        self.executor = executor if executor is not None else RetryExecutor()
        self.idempotency = IdempotencyGuard(
            store=self.store,
            policy=IdempotencyPolicy.from_settings(self.settings),
            max_keys=self.settings.idempotency.IDEMPOTENCY_MEMORY_MAX_KEYS,
            audit=self.audit,
        )
        self.sessions = OptimisticUpdater.from_settings(
            self.settings, store=self.store, executor=self.executor, audit=self.audit
        )
        self.dead_letters = DeadLetterQueue.from_settings(self.settings, store=self.store, audit=self.audit)

    @classmethod
    async def create(cls, settings: Settings | None = None, **kwargs: Any) -> "ResilienceContext":
        """Build a context on the store selected by settings (Redis or in-memory)."""
        settings = settings or get_settings()
        store = await create_store(settings)
        return cls(settings=settings, store=store, **kwargs)

    def policy_for(self, dependency: str) -> RetryPolicy:
        """Default retry policy for a dependency: settings bounds plus its timeout."""
        return RetryPolicy.from_settings(
            self.settings,
            timeout=DEFAULT_TIMEOUTS.get(dependency, DEFAULT_EXTERNAL_TIMEOUT),
            operation=dependency,
        )

    async def with_resilience(
        self,
        dependency: str,
        fn: Callable[[], Awaitable[T] | T],
        policy: RetryPolicy | None = None,
    ) -> T:
        """
        Call an external dependency behind its breaker, with retries and a timeout.

        STAGE-RS.1: Guarded outbound call

        Raises:
            CircuitBreakerOpenError: The dependency's breaker is open
            SignBotError: Typed errors pass through unchanged
            ExternalServiceError: Any other failure, wrapped with the dependency name
        """
        breaker = self.breakers.get_breaker(dependency)
        effective = (policy or self.policy_for(dependency)).with_breaker(breaker)
        if effective.operation == "operation":
            effective = replace(effective, operation=dependency)

        try:
            return await self.executor.execute_with_retry(fn, effective)
        except SignBotError:
            raise
        except Exception as e:
            raise ExternalServiceError(
                f"{dependency} call failed: {type(e).__name__}",
                service=dependency,
                original=e,
                upstream_status=get_status_code(e),
            ) from e

    async def start(self) -> None:
        """
        STAGE-RS.2: Startup hooks
        """
        restored = self.audit.restore_from_disk(self.settings.audit.AUDIT_BACKUP_PATH)
        if restored:
            self.audit.schedule_drain()
        await self.rate_limiter.start()
        await self.sender_limiter.start()
        logger.info(
            "Resilience context started",
            stage="RS.2",
            store=type(self.store).__name__,
            audit_restored=restored,
        )

    async def stop(self) -> None:
        """
        STAGE-RS.3: Shutdown hooks

        Pending audit events that cannot be persisted are written to the
        backup file before the store is closed.
        """
        await self.rate_limiter.stop()
        await self.sender_limiter.stop()
        await self.dead_letters.stop()
        await self.audit.close()
        await self.audit.drain()
        self.audit.flush_to_disk(self.settings.audit.AUDIT_BACKUP_PATH)
        await self.store.close()
        logger.info("Resilience context stopped", stage="RS.3")

    async def start_dead_letter_retries(self, process: ProcessFn) -> None:
        """Redeliver due dead letters through ``process`` every DLQ_RETRY_INTERVAL."""
        await self.dead_letters.start(process, self.settings.dead_letter.DLQ_RETRY_INTERVAL)

    async def retry_dead_letters(self, process: ProcessFn, now: float | None = None) -> DeadLetterReport:
        return await self.dead_letters.retry_due(process, now=now)

    async def health(self) -> dict[str, Any]:
        store_ok = await self.store.ping()
        breakers = {name: stats["state"] for name, stats in self.breakers.get_all_stats().items()}
        open_breakers = [name for name, state in breakers.items() if state == CircuitState.OPEN.value]
        return {
            "status": "healthy" if store_ok and not open_breakers else "degraded",
            "store": {"backend": type(self.store).__name__, "reachable": store_ok},
            "circuit_breakers": breakers,
            "audit_pending": len(self.audit),
        }

    def _on_breaker_state_change(self, name: str, old_state: CircuitState, new_state: CircuitState) -> None:
        if new_state == CircuitState.OPEN:
            self.audit.record(AuditEventType.CIRCUIT_OPENED, Severity.WARNING, breaker=name, previous=old_state.value)
        elif new_state == CircuitState.CLOSED:
            self.audit.record(AuditEventType.CIRCUIT_CLOSED, Severity.INFO, breaker=name, previous=old_state.value)
