#!/usr/bin/env python3
"""
FastAPI Application Entry Point

Configures the SignBot webhook service: resilience context, middleware,
exception handlers and routes.

Run locally:
    uvicorn signbot.application.app:app --reload
"""

from contextlib import asynccontextmanager

from fastapi import FastAPI

from signbot.application.api.middleware import (
    CorrelationMiddleware,
    ErrorHandlingMiddleware,
    RateLimitMiddleware,
    register_exception_handlers,
)
from signbot.application.api.routes.admin import router as admin_router
from signbot.application.api.routes.health import router as health_router
from signbot.application.api.routes.webhooks import router as webhooks_router
from signbot.application.context import ResilienceContext
from signbot.application.services.webhook_service import EventHandler, WebhookService
from signbot.core.config.constants import HEADER_CORRELATION_ID
from signbot.core.config.settings import Settings, get_settings
from signbot.core.logging.logger import get_logger, setup_logging

logger = get_logger(__name__)


# ============================================================================
# Application Factory
# ============================================================================


def create_app(
    settings: Settings | None = None,
    context: ResilienceContext | None = None,
    handler: EventHandler | None = None,
) -> FastAPI:
    """
    Create and configure the FastAPI application.

    Args:
        settings: Settings to use (defaults to get_settings())
        context: Pre-built ResilienceContext; when omitted one is created
            from settings during startup
        handler: EventHandler for first-sighting webhook events

    Returns:
        FastAPI: Configured application instance
    """
    settings = settings or (context.settings if context is not None else get_settings())

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        setup_logging(log_level=settings.logging.LOG_LEVEL, log_format=settings.logging.LOG_FORMAT)
        logger.info(
            "Starting SignBot",
            environment=settings.app.ENVIRONMENT,
            version=settings.app.APP_VERSION,
        )

        resilience = app.state.resilience
        if resilience is None:
            resilience = await ResilienceContext.create(settings)
            app.state.resilience = resilience
            app.state.webhook_service = WebhookService(resilience, handler)

        await resilience.start()
        await app.state.webhook_service.start_dead_letter_retries()
        logger.info("Application startup complete")
        try:
            yield
        finally:
            logger.info("Shutting down application")
            await resilience.stop()
            logger.info("Application shutdown complete")

    app = FastAPI(
        title=settings.app.APP_NAME,
        version=settings.app.APP_VERSION,
        description="WhatsApp and DocuSign webhook intake with resilience controls",
        lifespan=lifespan,
        docs_url="/docs",
        redoc_url="/redoc",
    )

    app.state.resilience = context
    app.state.webhook_service = WebhookService(context, handler) if context is not None else None

    # ========================================================================
    # MIDDLEWARE REGISTRATION
    # ========================================================================
    # Executed in reverse order of registration (last added = outermost):
    # correlation -> error handling -> rate limiting -> routes.
    # The correlation scope therefore covers 429s and unhandled 500s too.

    base_path = settings.app.API_BASE_PATH
    app.add_middleware(RateLimitMiddleware, path_prefixes=(f"{base_path}/admin", f"{base_path}/health"))
    app.add_middleware(ErrorHandlingMiddleware, include_traceback=(settings.app.ENVIRONMENT == "development"))
    app.add_middleware(CorrelationMiddleware)

    register_exception_handlers(app)

    # ========================================================================
    # ROUTER REGISTRATION
    # ========================================================================

    app.include_router(health_router, prefix=base_path)
    app.include_router(webhooks_router, prefix=base_path)
    app.include_router(admin_router, prefix=base_path)

    @app.get("/", tags=["Root"])
    async def root():
        return {
            "name": settings.app.APP_NAME,
            "version": settings.app.APP_VERSION,
            "environment": settings.app.ENVIRONMENT,
            "docs": "/docs",
            "health": f"{base_path}/health",
            "correlation_header": HEADER_CORRELATION_ID,
        }

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "signbot.application.app:app",
        host="0.0.0.0",
        port=8000,
        reload=get_settings().app.ENVIRONMENT == "development",
        log_level=get_settings().logging.LOG_LEVEL.lower(),
    )
