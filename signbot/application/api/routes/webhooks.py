"""
Webhook Routes
==============

Inbound webhooks from the two providers:

- ``GET  /webhooks/whatsapp``: Meta subscription handshake (echoes ``hub.challenge``)
- ``POST /webhooks/whatsapp``: WhatsApp Cloud API message notifications,
  authenticated by ``X-Hub-Signature-256``
- ``POST /webhooks/docusign``: DocuSign Connect envelope events

ACKNOWLEDGEMENT CONTRACT:
-------------------------
Both POST routes answer 200 ``{"status": "received", ...}`` for any
authenticated body, including malformed JSON. Providers treat anything
else as a failed delivery and retry it, which would only replay the same
failure. Flooding senders are limited per phone number inside the
service, so they are acknowledged too.
"""

import hmac
from typing import Annotated, Any

import orjson
from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from fastapi.responses import PlainTextResponse

from signbot.application.api.dependencies import ResilienceContextDep, WebhookServiceDep, verify_whatsapp_signature
from signbot.application.api.models.webhooks import WebhookAck
from signbot.core.logging.logger import get_logger

logger = get_logger(__name__)

router = APIRouter(prefix="/webhooks", tags=["Webhooks"])


async def _read_json(request: Request) -> Any:
    raw = await request.body()
    try:
        return orjson.loads(raw)
    except orjson.JSONDecodeError:
        logger.warning("Webhook body is not valid JSON", stage="WH.0", path=request.url.path, size=len(raw))
        return None


@router.get("/whatsapp", response_class=PlainTextResponse)
async def whatsapp_subscription(
    context: ResilienceContextDep,
    hub_mode: Annotated[str | None, Query(alias="hub.mode")] = None,
    hub_verify_token: Annotated[str | None, Query(alias="hub.verify_token")] = None,
    hub_challenge: Annotated[str, Query(alias="hub.challenge")] = "",
) -> str:
    expected = context.settings.webhooks.WHATSAPP_VERIFY_TOKEN
    if (
        hub_mode == "subscribe"
        and expected
        and hub_verify_token is not None
        and hmac.compare_digest(hub_verify_token.encode(), expected.encode())
    ):
        logger.info("WhatsApp webhook subscription verified", stage="WH.0")
        return hub_challenge
    logger.warning("WhatsApp webhook subscription rejected", stage="WH.0", mode=hub_mode)
    raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Verification failed")


@router.post(
    "/whatsapp",
    response_model=WebhookAck,
    status_code=status.HTTP_200_OK,
    dependencies=[Depends(verify_whatsapp_signature)],
)
async def whatsapp_webhook(request: Request, service: WebhookServiceDep) -> WebhookAck:
    body = await _read_json(request)
    if not isinstance(body, dict):
        return WebhookAck()
    return await service.ingest_whatsapp(body)


@router.post("/docusign", response_model=WebhookAck, status_code=status.HTTP_200_OK)
async def docusign_webhook(request: Request, service: WebhookServiceDep) -> WebhookAck:
    body = await _read_json(request)
    if not isinstance(body, dict):
        return WebhookAck()
    return await service.ingest_docusign(body)
