"""
FastAPI Dependency Injection
============================

Route handlers never build resilience components themselves. The
ResilienceContext and the WebhookService are created once in the
application lifespan (or by ``create_app`` in tests) and stored on
``app.state``; these providers hand them to routes via ``Depends``.

Example:
    @router.get("/example")
    async def my_route(context: ResilienceContextDep):
        return context.rate_limiter.get_stats()
"""

import hashlib
import hmac
from typing import Annotated

from fastapi import Depends, Header, HTTPException, Request, status

from signbot.application.api.middleware.rate_limit import get_client_ip
from signbot.application.context import ResilienceContext
from signbot.application.services.webhook_service import WebhookService
from signbot.core.config.constants import HEADER_HUB_SIGNATURE, HUB_SIGNATURE_PREFIX, AuditEventType, Severity
from signbot.core.logging.logger import get_logger

logger = get_logger(__name__)


def get_resilience_context(request: Request) -> ResilienceContext:
    """
    Retrieve the ResilienceContext from application state.

    Raises:
        RuntimeError: If the application was started without one
    """
    context = getattr(request.app.state, "resilience", None)
    if context is None:
        raise RuntimeError("ResilienceContext not initialized; was the app started through its lifespan?")
    return context


def get_webhook_service(request: Request) -> WebhookService:
    service = getattr(request.app.state, "webhook_service", None)
    if service is None:
        raise RuntimeError("WebhookService not initialized")
    return service


async def verify_admin_access(
    x_admin_key: Annotated[str | None, Header()] = None,
    context: ResilienceContext = Depends(get_resilience_context),
) -> None:
    """
    Require ``X-Admin-Key`` on admin routes when ``ADMIN_API_KEY`` is configured.
    """
    expected = context.settings.app.ADMIN_API_KEY
    if not expected:
        return
    if x_admin_key is None or not hmac.compare_digest(x_admin_key.encode(), expected.encode()):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Admin access required")


async def verify_whatsapp_signature(
    request: Request,
    context: ResilienceContext = Depends(get_resilience_context),
) -> None:
    """
    Check Meta's ``X-Hub-Signature-256`` (HMAC-SHA256 of the raw body,
    keyed with the app secret) before a WhatsApp delivery is processed.

    Without ``WHATSAPP_APP_SECRET`` every request is rejected in production
    and accepted, with a warning, elsewhere.

    Raises:
        HTTPException(401): Signature missing, malformed or wrong, or no
            secret configured in production
    """
    secret = context.settings.webhooks.WHATSAPP_APP_SECRET
    if not secret:
        if context.settings.app.ENVIRONMENT == "production":
            logger.error("WHATSAPP_APP_SECRET is not set, rejecting webhook", stage="SEC.1")
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid signature")
        logger.warning("WHATSAPP_APP_SECRET is not set, signature check skipped", stage="SEC.1")
        return

    signature = request.headers.get(HEADER_HUB_SIGNATURE, "")
    body = await request.body()
    expected = HUB_SIGNATURE_PREFIX + hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()
    if not signature.startswith(HUB_SIGNATURE_PREFIX) or not hmac.compare_digest(
        signature.encode(), expected.encode()
    ):
        reason = "missing" if not signature else "mismatch"
        logger.warning("Webhook signature rejected", stage="SEC.1", reason=reason)
        context.audit.record(
            AuditEventType.WEBHOOK_SIGNATURE_INVALID,
            Severity.WARNING,
            reason=reason,
            client_ip=get_client_ip(request),
        )
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid signature")


# ============================================================================
# TYPE ALIASES
# ============================================================================

ResilienceContextDep = Annotated[ResilienceContext, Depends(get_resilience_context)]
WebhookServiceDep = Annotated[WebhookService, Depends(get_webhook_service)]
