"""
Optimistic Concurrency for Session State

Several deliveries for the same user can be processed at once (a text and
a button press arriving together, a webhook redelivered while the first
copy is still running). Session updates therefore go through a versioned
read-modify-write loop instead of a lock:

1. read ``(payload, version)``
2. ``new_payload = mutate_fn(payload)``
3. ``write_versioned(key, new_payload, expected_version=version)``
4. on ConcurrencyError, back off briefly and start again from step 1

Only ConcurrencyError is retried; any other error propagates at once.
When attempts run out the last ConcurrencyError is re-raised. Racing
writers are serialized by the version check, and the last one to commit
wins. There is no FIFO guarantee among them.
"""

import copy
import inspect
from collections.abc import Awaitable, Callable
from dataclasses import replace
from typing import Any

from signbot.core.config.constants import AuditEventType, Severity
from signbot.core.config.settings import Settings
from signbot.core.exceptions import ConcurrencyError
from signbot.core.interfaces.store import DurableStore, VersionedState
from signbot.core.logging.logger import get_logger
from signbot.core.observability.audit import AuditLog
from signbot.core.resilience.retry import RetryExecutor, RetryPolicy
from signbot.infrastructure.store.memory_store import InMemoryStore

logger = get_logger(__name__)

MutateFn = Callable[[dict[str, Any]], dict[str, Any] | Awaitable[dict[str, Any]]]


def is_concurrency_conflict(exc: BaseException) -> bool:
    return isinstance(exc, ConcurrencyError)


DEFAULT_SESSION_POLICY = RetryPolicy(
    max_attempts=3,
    base_delay=0.05,
    max_delay=1.0,
    is_retryable=is_concurrency_conflict,
    operation="session_update",
)


class OptimisticUpdater:
    """
    Versioned read-modify-write for shared per-user state.

    Args:
        store: Durable store; defaults to a per-instance InMemoryStore
        policy: Retry bounds; its classifier is always replaced with the
            conflict check and any breaker is dropped
        executor: RetryExecutor used for the loop
        audit: Receives SESSION_CONFLICT when an update gives up
    """

    def __init__(
        self,
        store: DurableStore | None = None,
        policy: RetryPolicy | None = None,
        executor: RetryExecutor | None = None,
        audit: AuditLog | None = None,
    ):
        self._store = store if store is not None else InMemoryStore()
        self._policy = self._normalize(policy if policy is not None else DEFAULT_SESSION_POLICY)
        self._executor = executor if executor is not None else RetryExecutor()
        self._audit = audit

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        store: DurableStore | None = None,
        executor: RetryExecutor | None = None,
        audit: AuditLog | None = None,
    ) -> "OptimisticUpdater":
        session = settings.session
        policy = replace(
            DEFAULT_SESSION_POLICY,
            max_attempts=session.SESSION_RETRY_MAX_ATTEMPTS,
            base_delay=session.SESSION_RETRY_BASE_DELAY,
            max_delay=session.SESSION_RETRY_MAX_DELAY,
        )
        return cls(store=store, policy=policy, executor=executor, audit=audit)

    async def read(self, key: str) -> VersionedState:
        return await self._store.read_versioned(key)

    async def update_with_optimistic_retry(
        self,
        key: str,
        mutate_fn: MutateFn,
        policy: RetryPolicy | None = None,
    ) -> VersionedState:
        """
        Apply ``mutate_fn`` to the state at ``key`` and commit it.

        STAGE-CC.1: Optimistic update

        ``mutate_fn`` receives a private copy of the payload and may be a
        plain function or a coroutine function. It can run more than once,
        so it must not have side effects outside the returned payload.

        Returns:
            The committed state

        Raises:
            ConcurrencyError: If every attempt lost the race
        """
        effective = self._normalize(policy) if policy is not None else self._policy
        attempts = 0

        async def attempt() -> VersionedState:
            nonlocal attempts
            attempts += 1
            current = await self._store.read_versioned(key)
            new_payload = mutate_fn(copy.deepcopy(current.payload))
            if inspect.isawaitable(new_payload):
                new_payload = await new_payload
            return await self._store.write_versioned(key, new_payload, current.version)

        try:
            state = await self._executor.execute_with_retry(attempt, effective)
        except ConcurrencyError:
            logger.warning(
                "Session update gave up after conflicts",
                stage="CC.2",
                attempts=attempts,
            )
            if self._audit is not None:
                self._audit.record(AuditEventType.SESSION_CONFLICT, Severity.WARNING, key=key, attempts=attempts)
            raise

        if attempts > 1:
            logger.info("Session update committed after retry", stage="CC.1", attempts=attempts, version=state.version)
        return state

    @staticmethod
    def _normalize(policy: RetryPolicy) -> RetryPolicy:
        return replace(policy, is_retryable=is_concurrency_conflict, breaker=None)
