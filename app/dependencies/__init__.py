"""
FastAPI dependencies for the webhook management API.

Usage:
    from app.dependencies import get_manager, get_tenant_id
"""

from typing import Optional

from fastapi import Header, Query

from ehr_webhooks.webhooks.manager import WebhookManager, get_webhook_manager


def get_manager() -> WebhookManager:
    """Provide the shared webhook manager (overridden in tests)."""
    return get_webhook_manager()


def get_tenant_id(
    tenant_id: Optional[str] = Query(default=None, description="Tenant to scope the request to"),
    x_tenant_id: Optional[str] = Header(default=None, alias="X-Tenant-ID"),
) -> str:
    """Resolve the tenant from the query string, falling back to X-Tenant-ID."""
    return tenant_id or x_tenant_id or ""


__all__ = [
    "get_manager",
    "get_tenant_id",
]
