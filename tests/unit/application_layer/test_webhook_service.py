"""
Unit Tests for WebhookService

Covers event extraction and classification, duplicate suppression,
per-sender rate limiting, handler failure isolation with dead letter
redelivery, and tolerance of malformed payloads.
"""

from unittest.mock import AsyncMock

import pytest

from signbot.application.context import ResilienceContext
from signbot.application.services.webhook_service import WebhookService
from signbot.core.config.constants import DeadLetterStatus, EventType
from signbot.core.exceptions import StoreUnavailableError
from signbot.core.observability.correlation import correlation_scope
from tests.test_fixtures import DocuSignPayloadFactory, WhatsAppPayloadFactory

wa = WhatsAppPayloadFactory


@pytest.fixture
def service(context, handler):
    return WebhookService(context, handler)


@pytest.mark.unit
class TestWhatsAppIntake:
    async def test_text_message_handled_once(self, service, handler):
        body = wa.webhook(wa.text("wamid.123"))

        first = await service.ingest_whatsapp(body)
        second = await service.ingest_whatsapp(body)

        assert (first.processed, first.duplicates) == (1, 0)
        assert (second.processed, second.duplicates) == (0, 1)
        assert len(handler.events) == 1
        event = handler.events[0]
        assert event.event_type == EventType.MESSAGE
        assert event.idempotency_key == "wamid.123"
        assert event.sender == "5215512345678"

    async def test_duplicate_is_audited_with_count(self, service, context):
        body = wa.webhook(wa.text("wamid.123"))
        await service.ingest_whatsapp(body)
        await service.ingest_whatsapp(body)

        duplicates = [e for e in context.audit.pending() if e.event_type == "DUPLICATE_EVENT"]
        assert duplicates[0].details["delivery_count"] == 1
        assert duplicates[0].details["event_class"] == "message"
        assert duplicates[0].event_type == "DUPLICATE_EVENT"

    @pytest.mark.parametrize(
        "message",
        [wa.button_reply("wamid.s1", "btn_rating_5"), wa.template_button("wamid.s2", "btn_rating_1")],
    )
    async def test_survey_buttons_classified(self, service, handler, message):
        await service.ingest_whatsapp(wa.webhook(message))

        assert handler.events[0].event_type == EventType.SURVEY_RESPONSE

    async def test_other_buttons_are_messages(self, service, handler):
        await service.ingest_whatsapp(wa.webhook(wa.button_reply("wamid.b1", "menu_status")))

        assert handler.events[0].event_type == EventType.MESSAGE

    async def test_survey_prefixes_come_from_settings(self, settings, memory_store, handler):
        settings = settings.model_copy(update={"SURVEY_BUTTON_PREFIXES": ["nps_"]})
        service = WebhookService(ResilienceContext(settings=settings, store=memory_store), handler)

        body = wa.webhook(wa.button_reply("wamid.n1", "nps_9"), wa.button_reply("wamid.n2", "btn_rating_5"))

        await service.ingest_whatsapp(body)

        assert [e.event_type for e in handler.events] == [EventType.SURVEY_RESPONSE, EventType.MESSAGE]

    async def test_multiple_messages_in_one_delivery(self, service, handler):
        ack = await service.ingest_whatsapp(wa.webhook(wa.text("wamid.1"), wa.text("wamid.2"), wa.text("wamid.1")))

        assert (ack.processed, ack.duplicates) == (2, 1)

    async def test_status_updates_ignored(self, service, handler):
        ack = await service.ingest_whatsapp(wa.status_update())

        assert ack.processed == 0
        assert handler.events == []

    async def test_malformed_payload_acknowledged(self, service, handler):
        ack = await service.ingest_whatsapp({"entry": [{"changes": [{"value": {"messages": [{"type": "text"}]}}]}]})

        assert ack.status == "received"
        assert handler.events == []

    async def test_handler_failure_is_contained(self, service, handler, context):
        handler.fail_on = {"wamid.bad"}

        ack = await service.ingest_whatsapp(wa.webhook(wa.text("wamid.bad"), wa.text("wamid.good")))

        assert ack.processed == 1
        assert ack.dead_lettered == 1
        assert [e.idempotency_key for e in handler.events] == ["wamid.good"]
        assert "EVENT_PROCESSING_FAILED" in [e.event_type for e in context.audit.pending()]

    async def test_handler_failure_is_not_redelivered(self, service, handler):
        handler.fail_on = {"wamid.bad"}
        body = wa.webhook(wa.text("wamid.bad"))
        await service.ingest_whatsapp(body)
        handler.fail_on = set()

        ack = await service.ingest_whatsapp(body)

        assert ack.duplicates == 1
        assert handler.events == []


@pytest.mark.unit
class TestStoreOutage:
    @pytest.fixture
    def down_context(self, settings):
        store = AsyncMock()
        store.register_if_absent.side_effect = StoreUnavailableError("redis down")
        return ResilienceContext(settings=settings, store=store)

    async def test_messages_fail_open(self, down_context, handler):
        service = WebhookService(down_context, handler)

        ack = await service.ingest_whatsapp(wa.webhook(wa.text("wamid.1")))

        assert ack.processed == 1

    async def test_survey_responses_fail_closed(self, down_context, handler):
        service = WebhookService(down_context, handler)

        ack = await service.ingest_whatsapp(wa.webhook(wa.button_reply("wamid.2", "btn_rating_5")))

        assert (ack.processed, ack.duplicates) == (0, 1)
        assert handler.events == []
        assert [e.event_type for e in down_context.audit.pending()] == ["IDEMPOTENCY_FAIL_CLOSED"]


@pytest.mark.unit
class TestDocuSignIntake:
    async def test_envelope_event_handled_once(self, service, handler):
        body = DocuSignPayloadFactory.envelope_event("env-9")

        await service.ingest_docusign(body)
        ack = await service.ingest_docusign(body)

        assert ack.duplicates == 1
        assert len(handler.events) == 1
        event = handler.events[0]
        assert event.event_type == EventType.DOCUSIGN_EVENT
        assert event.idempotency_key == "docusign:env-9:envelope-completed"

    async def test_different_events_for_same_envelope_are_distinct(self, service, handler):
        await service.ingest_docusign(DocuSignPayloadFactory.envelope_event("env-9", "envelope-sent", "sent"))
        await service.ingest_docusign(DocuSignPayloadFactory.envelope_event("env-9", "envelope-completed"))

        assert len(handler.events) == 2

    async def test_missing_envelope_id_acknowledged(self, service, handler):
        ack = await service.ingest_docusign({"event": "envelope-completed", "data": {"accountId": "acc-1"}})

        assert ack.processed == 0
        assert handler.events == []

    async def test_event_id_is_the_idempotency_key(self, service, handler):
        first = DocuSignPayloadFactory.envelope_event("env-9", "envelope-corrected", "sent", event_id="evt-1")
        second = DocuSignPayloadFactory.envelope_event("env-9", "envelope-corrected", "sent", event_id="evt-2")

        await service.ingest_docusign(first)
        await service.ingest_docusign(second)
        ack = await service.ingest_docusign(first)

        assert [e.idempotency_key for e in handler.events] == ["docusign:evt-1", "docusign:evt-2"]
        assert ack.duplicates == 1


@pytest.mark.unit
class TestSenderRateLimit:
    async def test_fourth_message_from_sender_dropped(self, service, handler, context):
        for i in range(3):
            await service.ingest_whatsapp(wa.webhook(wa.text(f"wamid.{i}")))

        ack = await service.ingest_whatsapp(wa.webhook(wa.text("wamid.9")))

        assert (ack.processed, ack.rate_limited) == (0, 1)
        assert len(handler.events) == 3
        limited = [e for e in context.audit.pending() if e.event_type == "RATE_LIMIT_EXCEEDED"]
        assert limited[0].details["sender"] == "521551****"

    async def test_senders_limited_independently(self, service, handler):
        for i in range(3):
            await service.ingest_whatsapp(wa.webhook(wa.text(f"wamid.a{i}", sender="5215500000001")))

        ack = await service.ingest_whatsapp(wa.webhook(wa.text("wamid.b0", sender="5215500000002")))

        assert ack.processed == 1

    async def test_duplicates_do_not_consume_sender_quota(self, service, handler):
        body = wa.webhook(wa.text("wamid.1"))
        for _ in range(5):
            await service.ingest_whatsapp(body)

        ack = await service.ingest_whatsapp(wa.webhook(wa.text("wamid.2"), wa.text("wamid.3")))

        assert ack.processed == 2

    async def test_window_reset_admits_sender_again(self, service, handler, fake_clock):
        for i in range(4):
            await service.ingest_whatsapp(wa.webhook(wa.text(f"wamid.{i}")))
        fake_clock.advance(60)

        ack = await service.ingest_whatsapp(wa.webhook(wa.text("wamid.late")))

        assert ack.processed == 1

    async def test_docusign_events_not_sender_limited(self, service, handler):
        for i in range(5):
            await service.ingest_docusign(DocuSignPayloadFactory.envelope_event(f"env-{i}"))

        assert len(handler.events) == 5


@pytest.mark.unit
class TestDeadLetters:
    async def test_failed_event_parked_with_context(self, service, handler, context, memory_store):
        handler.fail_on = {"wamid.bad"}

        with correlation_scope("req-77"):
            await service.ingest_whatsapp(wa.webhook(wa.text("wamid.bad", body="hola")))

        rows = await memory_store.due_dead_letters(now=float("inf"), limit=10)
        assert len(rows) == 1
        row = rows[0]
        assert row["id"] == "wamid.bad"
        assert row["source"] == "whatsapp"
        assert row["sender"] == "5215512345678"
        assert row["correlation_id"] == "req-77"
        assert row["error_type"] == "RuntimeError"
        assert row["data"]["text"] == {"body": "hola"}

    async def test_redelivery_reaches_handler(self, service, handler, memory_store):
        handler.fail_on = {"wamid.bad"}
        await service.ingest_whatsapp(wa.webhook(wa.text("wamid.bad")))
        handler.fail_on = set()

        report = await service.retry_dead_letters(now=float("inf"))

        assert report.processed == 1
        event = handler.events[0]
        assert (event.idempotency_key, event.event_type, event.source) == ("wamid.bad", EventType.MESSAGE, "whatsapp")
        assert await memory_store.due_dead_letters(now=float("inf"), limit=10) == []

    async def test_entry_not_retried_before_due(self, service, handler):
        handler.fail_on = {"wamid.bad"}
        await service.ingest_whatsapp(wa.webhook(wa.text("wamid.bad")))
        handler.fail_on = set()

        report = await service.retry_dead_letters()

        assert report.processed == 0
        assert handler.events == []

    async def test_survey_response_redelivered_with_its_class(self, service, handler):
        handler.fail_on = {"wamid.s"}
        await service.ingest_whatsapp(wa.webhook(wa.button_reply("wamid.s", "btn_rating_4")))
        handler.fail_on = set()

        await service.retry_dead_letters(now=float("inf"))

        assert handler.events[0].event_type == EventType.SURVEY_RESPONSE

    async def test_repeated_failures_exhaust_entry(self, service, handler, context, memory_store):
        handler.fail_on = {"docusign:env-1:envelope-completed"}
        await service.ingest_docusign(DocuSignPayloadFactory.envelope_event("env-1"))

        reports = [await service.retry_dead_letters(now=float("inf")) for _ in range(3)]

        assert [r.permanently_failed for r in reports] == [0, 0, 1]
        assert await memory_store.due_dead_letters(now=float("inf"), limit=10) == []
        entry, next_retry_at = memory_store._dead_letters["docusign:env-1:envelope-completed"]
        assert entry["status"] == DeadLetterStatus.FAILED.value
        assert next_retry_at is None
        assert "DEAD_LETTER_EXHAUSTED" in [e.event_type for e in context.audit.pending()]


@pytest.mark.unit
class TestCorrelationScope:
    async def test_dispatch_leaves_request_attrs_alone(self, service, handler):
        with correlation_scope("req-1", path="/webhooks/whatsapp") as ctx:
            await service.ingest_whatsapp(wa.webhook(wa.text("wamid.1"), wa.button_reply("wamid.2", "btn_rating_3")))

        assert ctx.attrs == {"path": "/webhooks/whatsapp"}
