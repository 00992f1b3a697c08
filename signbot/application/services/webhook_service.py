"""
Webhook Intake Service

Turns raw provider payloads into InboundEvents, drops redeliveries via the
IdempotencyGuard and hands first sightings to an EventHandler.

Acknowledgement rules:
- Every delivery is acknowledged, including malformed payloads and events
  whose handler failed. A non-2xx makes WhatsApp and DocuSign redeliver,
  and a redelivery of a poison payload would fail the same way.
- Handler failures are logged, audited and parked in the dead letter
  queue for redelivery, never raised to the route.
- Messages over the per-sender rate limit are acknowledged and dropped.
"""

from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any, Protocol, runtime_checkable

from pydantic import ValidationError

from signbot.application.api.models.webhooks import DocuSignWebhook, WebhookAck, WhatsAppMessage, WhatsAppWebhook
from signbot.application.context import ResilienceContext
from signbot.core.config.constants import SURVEY_BUTTON_PREFIXES, AuditEventType, EventType, Severity
from signbot.core.logging.logger import get_logger
from signbot.core.resilience.dead_letter import DeadLetterEntry, DeadLetterReport
from signbot.core.resilience.idempotency import DuplicateSource

logger = get_logger(__name__)


@dataclass(frozen=True)
class InboundEvent:
    """A single provider event, reduced to what the handler needs."""

    source: str
    event_type: EventType
    idempotency_key: str
    sender: str | None = None
    data: dict[str, Any] = field(default_factory=dict)


@runtime_checkable
class EventHandler(Protocol):
    async def handle(self, event: InboundEvent, context: ResilienceContext) -> None: ...


class LoggingEventHandler:
    """Default handler: records that the event was accepted and does nothing else."""

    async def handle(self, event: InboundEvent, context: ResilienceContext) -> None:
        logger.info(
            "Event accepted",
            stage="WH.3",
            source=event.source,
            event_type=event.event_type.value,
            key=event.idempotency_key,
        )


def classify_whatsapp_message(
    message: WhatsAppMessage, survey_prefixes: Sequence[str] = SURVEY_BUTTON_PREFIXES
) -> EventType:
    if message.is_survey_response(survey_prefixes):
        return EventType.SURVEY_RESPONSE
    return EventType.MESSAGE


class WebhookService:
    """
    Args:
        context: Resilience context providing the idempotency guard, the
            per-sender limiter, the dead letter queue and the audit log
        handler: Receives each first-sighting event
    """

    def __init__(self, context: ResilienceContext, handler: EventHandler | None = None):
        self._context = context
        self._handler = handler if handler is not None else LoggingEventHandler()
        self._survey_prefixes = tuple(context.settings.idempotency.SURVEY_BUTTON_PREFIXES)

    async def ingest_whatsapp(self, body: Mapping[str, Any]) -> WebhookAck:
        """
        STAGE-WH.1: WhatsApp intake
        """
        try:
            payload = WhatsAppWebhook.model_validate(body)
        except ValidationError as e:
            logger.warning("Ignoring malformed WhatsApp payload", stage="WH.1", errors=e.error_count())
            return WebhookAck()

        events = [
            InboundEvent(
                source="whatsapp",
                event_type=classify_whatsapp_message(message, self._survey_prefixes),
                idempotency_key=message.id,
                sender=message.sender,
                data=message.model_dump(by_alias=True, exclude_none=True),
            )
            for message in payload.messages()
        ]
        return await self._dispatch(events)

    async def ingest_docusign(self, body: Mapping[str, Any]) -> WebhookAck:
        """
        STAGE-WH.2: DocuSign intake
        """
        try:
            payload = DocuSignWebhook.model_validate(body)
        except ValidationError as e:
            logger.warning("Ignoring malformed DocuSign payload", stage="WH.2", errors=e.error_count())
            return WebhookAck()

        event = InboundEvent(
            source="docusign",
            event_type=EventType.DOCUSIGN_EVENT,
            idempotency_key=payload.idempotency_key(),
            data=payload.model_dump(by_alias=True, exclude_none=True),
        )
        return await self._dispatch([event])

    async def _dispatch(self, events: list[InboundEvent]) -> WebhookAck:
        ack = WebhookAck()
        for event in events:
            log = logger.bind(key=event.idempotency_key, event_class=event.event_type.value)
            result = await self._context.idempotency.check_and_register(event.idempotency_key, event.event_type)
            if result.is_duplicate:
                ack.duplicates += 1
                if result.source != DuplicateSource.FAIL_CLOSED:
                    self._context.audit.record(
                        AuditEventType.DUPLICATE_EVENT,
                        Severity.INFO,
                        key=event.idempotency_key,
                        event_class=event.event_type.value,
                        delivery_count=result.delivery_count,
                    )
                continue

            if event.sender and not self._admit_sender(event, log):
                ack.rate_limited += 1
                continue

            try:
                await self._handler.handle(event, self._context)
            except Exception as e:
                log.error("Event handler failed", stage="WH.3", error_type=type(e).__name__, exc_info=True)
                self._context.audit.record(
                    AuditEventType.EVENT_PROCESSING_FAILED,
                    Severity.ERROR,
                    key=event.idempotency_key,
                    event_class=event.event_type.value,
                    error_type=type(e).__name__,
                )
                await self._context.dead_letters.push(
                    entry_id=event.idempotency_key,
                    source=event.source,
                    event_type=event.event_type.value,
                    sender=event.sender,
                    data=event.data,
                    error=e,
                )
                ack.dead_lettered += 1
                continue
            ack.processed += 1
        return ack

    def _admit_sender(self, event: InboundEvent, log) -> bool:
        """
        Per-sender admission. A rejected event is still acknowledged: the
        provider would redeliver a non-2xx and the flood would only grow.
        """
        decision = self._context.sender_limiter.check_and_consume(event.sender)
        if decision.allowed:
            return True
        log.warning("Sender over rate limit, event dropped", stage="WH.4", reset_after=decision.reset_after)
        self._context.audit.record(
            AuditEventType.RATE_LIMIT_EXCEEDED,
            Severity.WARNING,
            sender=event.sender,
            key=event.idempotency_key,
            source=event.source,
        )
        return False

    # ------------------------------------------------------------------
    # Dead letter redelivery
    # ------------------------------------------------------------------

    async def process_dead_letter(self, entry: DeadLetterEntry) -> None:
        """
        Hand a parked event back to the handler.

        STAGE-WH.5: Dead letter redelivery

        Skips idempotency and the sender limit: the event was admitted once.
        Exceptions propagate so the queue can reschedule the entry.
        """
        event = InboundEvent(
            source=entry.source,
            event_type=EventType(entry.event_type),
            idempotency_key=entry.id,
            sender=entry.sender,
            data=entry.data,
        )
        await self._handler.handle(event, self._context)

    async def retry_dead_letters(self, now: float | None = None) -> DeadLetterReport:
        return await self._context.retry_dead_letters(self.process_dead_letter, now=now)

    async def start_dead_letter_retries(self) -> None:
        await self._context.start_dead_letter_retries(self.process_dead_letter)
