"""
Health check and root endpoints.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict

from fastapi import APIRouter, Depends

from ehr_webhooks import __version__
from ehr_webhooks.config import get_settings
from ehr_webhooks.webhooks.manager import WebhookManager

from ..dependencies import get_manager

logger = logging.getLogger(__name__)

router = APIRouter(tags=["health"])


@router.get("/", summary="Service information")
async def root() -> Dict[str, Any]:
    settings = get_settings()
    return {
        "service": settings.server.service_name,
        "version": __version__,
        "docs": "/docs",
    }


@router.get(
    "/health",
    summary="System health check",
    description="""
Health check endpoint for monitoring and load balancers.

Reports the endpoint store backend and whether it is reachable.
    """,
    responses={
        200: {
            "description": "Health status retrieved",
            "content": {
                "application/json": {
                    "example": {
                        "status": "healthy",
                        "timestamp": "2024-01-24T12:00:00Z",
                        "version": "1.0.0",
                        "environment": "production",
                        "services": {"store": {"backend": "redis", "connected": True}},
                    }
                }
            },
        }
    },
)
async def health_check(manager: WebhookManager = Depends(get_manager)) -> Dict[str, Any]:
    store_status = await manager.store.health_check()
    settings = get_settings()
    return {
        "status": "healthy" if store_status.get("connected") else "degraded",
        "timestamp": datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ"),
        "version": __version__,
        "environment": settings.server.environment,
        "services": {"store": store_status},
    }
