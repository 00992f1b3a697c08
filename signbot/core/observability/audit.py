"""
Audit Event Log

Security and reliability events (rate-limit rejections, idempotency fail
policies, circuit transitions) are logged immediately and queued for a
persistent sink.

Lifecycle:
    audit = AuditLog(sink=write_batch, max_buffer=500)
    audit.restore_from_disk(path)     # startup: reload what the last run left
    audit.record(AuditEventType.CIRCUIT_OPENED, Severity.WARNING, breaker="whatsapp")
    await audit.drain()               # persist pending events in batches
    audit.flush_to_disk(path)         # shutdown: keep what could not be persisted

The queue is bounded: when full, the oldest pending event is dropped.
Details are sanitized on the way in. Phone numbers are masked and message
bodies are removed, so audit records never carry conversation content.
"""

import asyncio
import os
from collections import deque
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import orjson

from signbot.core.config.constants import AuditEventType, Severity
from signbot.core.logging.logger import get_logger
from signbot.core.observability.correlation import get_correlation_id

logger = get_logger(__name__)

_PHONE_FIELDS = frozenset({"phone", "phone_number", "wa_id", "from", "sender", "telefono"})
_CONTENT_FIELDS = frozenset({"body", "text", "payload", "message", "content"})


@dataclass
class AuditEvent:
    event_type: str
    severity: str
    timestamp: str
    correlation_id: str | None = None
    details: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "AuditEvent":
        return cls(
            event_type=data["event_type"],
            severity=data.get("severity", Severity.INFO.value),
            timestamp=data["timestamp"],
            correlation_id=data.get("correlation_id"),
            details=dict(data.get("details") or {}),
        )


AuditSink = Callable[[list[AuditEvent]], Awaitable[None]]


def mask_phone(value: str) -> str:
    """Keep the first six digits of a phone number: ``521234****``."""
    digits = "".join(ch for ch in value if ch.isdigit())
    if len(digits) < 7:
        return "****"
    return f"{digits[:6]}****"


def sanitize_details(details: Mapping[str, Any]) -> dict[str, Any]:
    clean: dict[str, Any] = {}
    for key, value in details.items():
        if key in _CONTENT_FIELDS:
            continue
        if key in _PHONE_FIELDS and isinstance(value, str):
            clean[key] = mask_phone(value)
        else:
            clean[key] = value
    return clean


class AuditLog:
    """
    Bounded in-memory audit queue with an optional persistent sink.

    Args:
        sink: Async callable persisting a batch of events
        max_buffer: Pending events kept in memory
        drain_batch_size: Events handed to the sink per call
    """

    _LOG_METHODS = {
        Severity.INFO.value: "info",
        Severity.WARNING.value: "warning",
        Severity.ERROR.value: "error",
        Severity.CRITICAL.value: "critical",
    }

    def __init__(self, sink: AuditSink | None = None, max_buffer: int = 500, drain_batch_size: int = 50):
        self._sink = sink
        self._buffer: deque[AuditEvent] = deque(maxlen=max_buffer)
        self._drain_batch_size = drain_batch_size
        self._drain_task: asyncio.Task | None = None
        self._dropped = 0

    def __len__(self) -> int:
        return len(self._buffer)

    @property
    def dropped(self) -> int:
        return self._dropped

    def pending(self) -> list[AuditEvent]:
        return list(self._buffer)

    def record(
        self,
        audit_type: AuditEventType | str,
        severity: Severity | str = Severity.INFO,
        /,
        **details: Any,
    ) -> AuditEvent:
        """
        Log an audit event and queue it for persistence.

        STAGE-AU.1: Audit record

        ``audit_type`` and ``severity`` are positional-only, so any name is
        free to use as a detail key.
        """
        event = AuditEvent(
            event_type=str(getattr(audit_type, "value", audit_type)),
            severity=Severity(severity).value,
            timestamp=datetime.now(timezone.utc).isoformat(),
            correlation_id=get_correlation_id(),
            details=sanitize_details(details),
        )

        log = getattr(logger, self._LOG_METHODS[event.severity])
        log("Audit event", stage="AU.1", audit_event=event.event_type, details=event.details)

        if len(self._buffer) == self._buffer.maxlen:
            self._dropped += 1
        self._buffer.append(event)

        if self._sink is not None:
            self.schedule_drain()
        return event

    def schedule_drain(self) -> None:
        """Start a background drain unless one is already running."""
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        if self._drain_task is None or self._drain_task.done():
            self._drain_task = loop.create_task(self.drain())

    async def drain(self, batch_size: int | None = None) -> int:
        """
        Hand pending events to the sink in batches.

        STAGE-AU.2: Audit persistence

        On a sink failure the batch goes back to the front of the queue and
        draining stops until the next call.

        Returns:
            Number of events persisted
        """
        if self._sink is None:
            return 0

        size = batch_size or self._drain_batch_size
        persisted = 0
        while self._buffer:
            batch = [self._buffer.popleft() for _ in range(min(size, len(self._buffer)))]
            try:
                await self._sink(batch)
            except Exception as e:
                self._requeue(batch)
                logger.warning(
                    "Audit sink failed, events kept in buffer",
                    stage="AU.2",
                    pending=len(self._buffer),
                    error_type=type(e).__name__,
                )
                break
            persisted += len(batch)
        return persisted

    def flush_to_disk(self, path: str | os.PathLike) -> int:
        """
        Write pending events to ``path`` (shutdown hook).

        STAGE-AU.3: Audit backup

        Returns:
            Number of events written
        """
        events = [event.to_dict() for event in self._buffer]
        if not events:
            return 0
        target = Path(path)
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_bytes(orjson.dumps(events))
        logger.info("Audit buffer flushed to disk", stage="AU.3", events=len(events), path=str(target))
        return len(events)

    def restore_from_disk(self, path: str | os.PathLike) -> int:
        """
        Reload events written by ``flush_to_disk`` and delete the file (startup hook).

        STAGE-AU.4: Audit restore

        Returns:
            Number of events restored
        """
        source = Path(path)
        if not source.exists():
            return 0
        try:
            raw = orjson.loads(source.read_bytes())
            events = [AuditEvent.from_dict(item) for item in raw]
        except (orjson.JSONDecodeError, KeyError, TypeError) as e:
            logger.error("Audit backup unreadable, discarding", stage="AU.4", path=str(source), error=str(e))
            source.unlink(missing_ok=True)
            return 0

        self._requeue(events)
        source.unlink(missing_ok=True)
        logger.info("Audit buffer restored from disk", stage="AU.4", events=len(events))
        return len(events)

    async def close(self) -> None:
        """Wait for an in-flight background drain."""
        if self._drain_task is not None and not self._drain_task.done():
            await asyncio.gather(self._drain_task, return_exceptions=True)
        self._drain_task = None

    def _requeue(self, events: list[AuditEvent]) -> None:
        # Oldest first, so a full deque drops the oldest entries
        combined = events + list(self._buffer)
        overflow = max(0, len(combined) - (self._buffer.maxlen or len(combined)))
        self._dropped += overflow
        self._buffer.clear()
        self._buffer.extend(combined)
