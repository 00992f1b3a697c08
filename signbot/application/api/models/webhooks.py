"""
Webhook Payload Models
======================

Pydantic models for the two inbound webhook providers.

WhatsApp Cloud API:
    {"object": "whatsapp_business_account",
     "entry": [{"id": ..., "changes": [{"field": "messages",
        "value": {"messages": [{"id": "wamid...", "from": "52...", "type": "text", ...}]}}]}]}

DocuSign Connect:
    {"event": "envelope-completed",
     "data": {"accountId": ..., "envelopeId": ..., "envelopeSummary": {"status": "completed"}}}

Unknown fields are kept (``extra="allow"``): both providers add fields
over time, and an unexpected field must never turn a delivery into a 4xx
that the provider would keep redelivering.
"""

from collections.abc import Sequence

from pydantic import BaseModel, ConfigDict, Field

from signbot.core.config.constants import SURVEY_BUTTON_PREFIXES

# ============================================================================
# WhatsApp
# ============================================================================


class WhatsAppText(BaseModel):
    model_config = ConfigDict(extra="allow")

    body: str = ""


class WhatsAppReply(BaseModel):
    """Interactive button or list reply."""

    model_config = ConfigDict(extra="allow")

    id: str
    title: str | None = None


class WhatsAppInteractive(BaseModel):
    model_config = ConfigDict(extra="allow")

    type: str
    button_reply: WhatsAppReply | None = None
    list_reply: WhatsAppReply | None = None


class WhatsAppButton(BaseModel):
    """Quick-reply button on a template message."""

    model_config = ConfigDict(extra="allow")

    payload: str | None = None
    text: str | None = None


class WhatsAppMessage(BaseModel):
    model_config = ConfigDict(extra="allow", populate_by_name=True)

    id: str = Field(..., min_length=1, description="WhatsApp message id (wamid)")
    sender: str = Field(..., alias="from", description="Sender phone number")
    timestamp: str | None = None
    type: str = "text"
    text: WhatsAppText | None = None
    interactive: WhatsAppInteractive | None = None
    button: WhatsAppButton | None = None

    def button_id(self) -> str | None:
        """Id of the pressed button or list row, if this message is a reply."""
        if self.interactive is not None:
            reply = self.interactive.button_reply or self.interactive.list_reply
            if reply is not None:
                return reply.id
        if self.button is not None:
            return self.button.payload
        return None

    def is_survey_response(self, prefixes: Sequence[str] = SURVEY_BUTTON_PREFIXES) -> bool:
        button_id = self.button_id()
        return button_id is not None and button_id.startswith(tuple(prefixes))


class WhatsAppValue(BaseModel):
    model_config = ConfigDict(extra="allow")

    messaging_product: str | None = None
    messages: list[WhatsAppMessage] = Field(default_factory=list)
    statuses: list[dict] = Field(default_factory=list)


class WhatsAppChange(BaseModel):
    model_config = ConfigDict(extra="allow")

    field: str | None = None
    value: WhatsAppValue


class WhatsAppEntry(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: str | None = None
    changes: list[WhatsAppChange] = Field(default_factory=list)


class WhatsAppWebhook(BaseModel):
    model_config = ConfigDict(extra="allow")

    object: str | None = None
    entry: list[WhatsAppEntry] = Field(default_factory=list)

    def messages(self) -> list[WhatsAppMessage]:
        return [
            message
            for entry in self.entry
            for change in entry.changes
            for message in change.value.messages
        ]


# ============================================================================
# DocuSign
# ============================================================================


class EnvelopeSummary(BaseModel):
    model_config = ConfigDict(extra="allow")

    status: str | None = None
    emailSubject: str | None = None


class DocuSignData(BaseModel):
    model_config = ConfigDict(extra="allow", populate_by_name=True)

    account_id: str = Field(..., alias="accountId", min_length=1)
    envelope_id: str = Field(..., alias="envelopeId", min_length=1)
    event_id: str | None = Field(default=None, alias="eventId")
    envelope_summary: EnvelopeSummary | None = Field(default=None, alias="envelopeSummary")


class DocuSignWebhook(BaseModel):
    model_config = ConfigDict(extra="allow", populate_by_name=True)

    event: str = Field(..., min_length=1)
    api_version: str | None = Field(default=None, alias="apiVersion")
    retry_count: int | None = Field(default=None, alias="retryCount")
    generated_date_time: str | None = Field(default=None, alias="generatedDateTime")
    event_id: str | None = Field(default=None, alias="eventId")
    data: DocuSignData

    def idempotency_key(self) -> str:
        """
        Connect stamps every notification with an event id, which is stable
        across redeliveries and distinct for two real transitions of the same
        envelope. Older payloads without one fall back to envelope and event.
        """
        event_id = self.event_id or self.data.event_id
        if event_id:
            return f"docusign:{event_id}"
        return f"docusign:{self.data.envelope_id}:{self.event}"


# ============================================================================
# Responses
# ============================================================================


class WebhookAck(BaseModel):
    """Body of every webhook response. Providers only look at the 200."""

    status: str = Field(default="received")
    processed: int = Field(default=0, ge=0, description="Events handed to the handler")
    duplicates: int = Field(default=0, ge=0, description="Events skipped as redeliveries")
    rate_limited: int = Field(default=0, ge=0, description="Events dropped by the per-sender limit")
    dead_lettered: int = Field(default=0, ge=0, description="Events whose handler failed, queued for retry")
