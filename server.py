"""
API server for the EHR webhook service.

Assembles configuration, logging, exception handlers, middleware and the
webhook management routes into a FastAPI application.
"""

import logging
from contextlib import asynccontextmanager
from typing import Optional

import uvicorn
from fastapi import FastAPI

from ehr_webhooks.config import get_settings
from ehr_webhooks.utils.logging import setup_logging
from ehr_webhooks.webhooks.manager import WebhookManager, get_webhook_manager

from app.dependencies import get_manager
from app.error_handlers import register_exception_handlers
from app.middleware import RequestLoggingMiddleware
from app.routes import health_router, webhooks_router

logger = logging.getLogger(__name__)


def create_app(manager: Optional[WebhookManager] = None) -> FastAPI:
    """
    Build the FastAPI application.

    Args:
        manager: Webhook manager to serve (defaults to the shared instance)

    Returns:
        Configured FastAPI app
    """
    settings = get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Handle startup/shutdown for shared resources."""
        active = manager or get_webhook_manager()
        logger.info(
            "Webhook service starting",
            extra={"config": settings.get_config_summary()},
        )
        yield
        try:
            await active.close()
        except Exception as e:
            logger.warning(f"Failed to close webhook manager: {e}")

    app = FastAPI(
        title="EHR Webhooks API",
        description="""
## Webhook event delivery

Register HTTP endpoints to receive signed notifications when clinical
resources change, inspect delivery logs, and retry failed deliveries.
        """,
        version="1.0.0",
        lifespan=lifespan,
        openapi_tags=[
            {"name": "health", "description": "Health checks and system status"},
            {"name": "webhooks", "description": "Webhook endpoint management and delivery logs"},
        ],
    )

    if manager is not None:
        app.dependency_overrides[get_manager] = lambda: manager

    register_exception_handlers(app)

    if settings.logging.request_logging_enabled:
        app.add_middleware(RequestLoggingMiddleware)

    app.include_router(health_router)
    app.include_router(webhooks_router)

    return app


app = create_app()


if __name__ == "__main__":
    settings = get_settings()
    setup_logging(
        settings.logging,
        service_name=settings.server.service_name,
        json_output=settings.is_production or settings.logging.log_format_json,
    )
    uvicorn.run("server:app", host=settings.server.host, port=settings.server.port)
