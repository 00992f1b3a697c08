"""
Dead Letter Queue for Failed Events

An event whose handler raised has already been acknowledged to the
provider, so nobody will redeliver it. Instead of dropping it the webhook
service parks it here and a background task redelivers it on a schedule:

1. ``push`` stores the entry with ``retry_count = 0``, due after the first delay
2. ``retry_due`` loads up to ``batch_size`` due entries, earliest first
3. each entry is handed back to the processing callback inside the
   correlation scope of the request that first received it
4. success deletes the entry; failure increments ``retry_count`` and
   reschedules it, or marks it FAILED once ``max_retries`` is reached

FAILED entries stay in the store for inspection but leave the schedule.
Entries are keyed by idempotency key, so a second failure of the same
event replaces the first entry instead of queueing a copy.
"""

import asyncio
import time
from collections.abc import Awaitable, Callable, Sequence
from contextlib import suppress
from dataclasses import asdict, dataclass, field
from typing import Any

from signbot.core.config.constants import (
    DEAD_LETTER_RETRY_DELAYS,
    AuditEventType,
    DeadLetterStatus,
    Severity,
)
from signbot.core.config.settings import Settings
from signbot.core.exceptions import StoreUnavailableError
from signbot.core.interfaces.store import DurableStore
from signbot.core.logging.logger import get_logger
from signbot.core.observability.audit import AuditLog
from signbot.core.observability.correlation import correlation_scope, get_correlation_id

logger = get_logger(__name__)

# Error messages are truncated before they are stored
MAX_ERROR_MESSAGE_LENGTH = 1000


@dataclass
class DeadLetterEntry:
    """A failed event together with its redelivery bookkeeping."""

    id: str
    source: str
    event_type: str
    sender: str | None
    data: dict[str, Any]
    error_type: str
    error_message: str
    correlation_id: str | None = None
    retry_count: int = 0
    max_retries: int = 3
    next_retry_at: float | None = None
    status: str = DeadLetterStatus.PENDING.value
    created_at: float = field(default_factory=time.time)
    last_error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "DeadLetterEntry":
        known = {name: data[name] for name in cls.__dataclass_fields__ if name in data}
        return cls(**known)


@dataclass
class DeadLetterReport:
    """Outcome of one ``retry_due`` run."""

    processed: int = 0
    failed: int = 0
    permanently_failed: int = 0

    def to_dict(self) -> dict[str, int]:
        return asdict(self)


ProcessFn = Callable[[DeadLetterEntry], Awaitable[None]]


class DeadLetterQueue:
    """
    Store-backed retry schedule for events whose handler failed.

    Args:
        store: Durable store holding the entries
        max_retries: Redelivery attempts before an entry is marked FAILED
        retry_delays: Seconds before each retry; the last value repeats
        batch_size: Maximum entries handled per ``retry_due`` run
        audit: Receives DEAD_LETTER_EXHAUSTED for entries that give up
        clock: Wall-clock time source (entries outlive the process)
    """

    def __init__(
        self,
        store: DurableStore,
        max_retries: int = 3,
        retry_delays: Sequence[float] = DEAD_LETTER_RETRY_DELAYS,
        batch_size: int = 10,
        audit: AuditLog | None = None,
        clock: Callable[[], float] = time.time,
    ):
        if not retry_delays:
            raise ValueError("retry_delays must not be empty")
        self._store = store
        self.max_retries = max_retries
        self.retry_delays = tuple(retry_delays)
        self.batch_size = batch_size
        self._audit = audit
        self._clock = clock
        self._task: asyncio.Task | None = None

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        store: DurableStore,
        audit: AuditLog | None = None,
        clock: Callable[[], float] = time.time,
    ) -> "DeadLetterQueue":
        dl = settings.dead_letter
        return cls(
            store=store,
            max_retries=dl.DLQ_MAX_RETRIES,
            retry_delays=dl.DLQ_RETRY_DELAYS,
            batch_size=dl.DLQ_BATCH_SIZE,
            audit=audit,
            clock=clock,
        )

    def delay_for(self, retry_count: int) -> float:
        return self.retry_delays[min(retry_count, len(self.retry_delays) - 1)]

    async def push(
        self,
        *,
        entry_id: str,
        source: str,
        event_type: str,
        data: dict[str, Any],
        error: BaseException,
        sender: str | None = None,
    ) -> DeadLetterEntry | None:
        """
        Park a failed event for later redelivery.

        STAGE-DL.1: Dead letter insert

        Returns:
            The stored entry, or None if the store could not take it (the
            failure is logged and the event is lost)
        """
        entry = DeadLetterEntry(
            id=entry_id,
            source=source,
            event_type=event_type,
            sender=sender,
            data=data,
            error_type=type(error).__name__,
            error_message=str(error)[:MAX_ERROR_MESSAGE_LENGTH],
            correlation_id=get_correlation_id(),
            max_retries=self.max_retries,
            created_at=self._clock(),
        )
        entry.next_retry_at = entry.created_at + self.delay_for(0)
        try:
            await self._store.put_dead_letter(entry.id, entry.to_dict(), entry.next_retry_at)
        except StoreUnavailableError as e:
            logger.error(
                "Could not save dead letter, event dropped",
                stage="DL.1",
                entry_id=entry_id,
                error=str(e),
            )
            return None
        logger.warning(
            "Event parked in dead letter queue",
            stage="DL.1",
            entry_id=entry_id,
            source=source,
            error_type=entry.error_type,
            next_retry_in=self.delay_for(0),
        )
        return entry

    async def retry_due(self, process: ProcessFn, now: float | None = None) -> DeadLetterReport:
        """
        Redeliver every entry that is due, up to ``batch_size``.

        STAGE-DL.2: Dead letter retry run
        """
        now = self._clock() if now is None else now
        report = DeadLetterReport()
        rows = await self._store.due_dead_letters(now, self.batch_size)

        for row in rows:
            entry = DeadLetterEntry.from_dict(row)
            with correlation_scope(entry.correlation_id, dead_letter_id=entry.id):
                try:
                    await process(entry)
                except Exception as e:
                    report.failed += 1
                    if await self._record_failure(entry, e, now):
                        report.permanently_failed += 1
                    continue
            await self._store.delete_dead_letter(entry.id)
            report.processed += 1
            logger.info("Dead letter redelivered", stage="DL.2", entry_id=entry.id, retry_count=entry.retry_count)

        if rows:
            logger.info("Dead letter retry run finished", stage="DL.2", **report.to_dict())
        return report

    async def _record_failure(self, entry: DeadLetterEntry, error: Exception, now: float) -> bool:
        entry.retry_count += 1
        entry.last_error = f"{type(error).__name__}: {error}"[:MAX_ERROR_MESSAGE_LENGTH]
        exhausted = entry.retry_count >= entry.max_retries
        if exhausted:
            entry.status = DeadLetterStatus.FAILED.value
            entry.next_retry_at = None
        else:
            entry.next_retry_at = now + self.delay_for(entry.retry_count)
        await self._store.put_dead_letter(entry.id, entry.to_dict(), entry.next_retry_at)

        if exhausted:
            logger.error(
                "Dead letter retries exhausted",
                stage="DL.3",
                entry_id=entry.id,
                retry_count=entry.retry_count,
                error_type=type(error).__name__,
            )
            if self._audit is not None:
                self._audit.record(
                    AuditEventType.DEAD_LETTER_EXHAUSTED,
                    Severity.ERROR,
                    key=entry.id,
                    source=entry.source,
                    sender=entry.sender,
                    retry_count=entry.retry_count,
                    error_type=type(error).__name__,
                )
        else:
            logger.warning(
                "Dead letter retry failed",
                stage="DL.2",
                entry_id=entry.id,
                retry_count=entry.retry_count,
                error_type=type(error).__name__,
            )
        return exhausted

    # ------------------------------------------------------------------
    # Background retries
    # ------------------------------------------------------------------

    async def start(self, process: ProcessFn, interval: float) -> None:
        """Start the background retry task (idempotent)."""
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._retry_loop(process, interval))
            logger.info("Dead letter retries started", stage="DL.4", interval=interval)

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        with suppress(asyncio.CancelledError):
            await self._task
        self._task = None
        logger.info("Dead letter retries stopped", stage="DL.4")

    async def _retry_loop(self, process: ProcessFn, interval: float) -> None:
        while True:
            await asyncio.sleep(interval)
            try:
                await self.retry_due(process)
            except StoreUnavailableError as e:
                logger.warning("Dead letter retry run skipped, store unavailable", stage="DL.4", error=str(e))
