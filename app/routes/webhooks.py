"""
Webhook management endpoints.

This module provides the REST surface for:
- Registering, listing, inspecting and deleting webhook endpoints
- Pausing and resuming deliveries
- Sending test pings
- Reading delivery logs and retrying deliveries

Errors raised by the manager (ValidationError, NotFoundError) are mapped to
400/404 responses by the application's exception handlers.
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Header, Query, Response, status

from ehr_webhooks.types.webhooks import (
    DeliveryRecord,
    DeliveryRecordList,
    WebhookEndpointCreate,
    WebhookEndpointCreated,
    WebhookEndpointList,
    WebhookEndpointResponse,
)
from ehr_webhooks.webhooks.manager import WebhookManager

from ..dependencies import get_manager, get_tenant_id

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks", tags=["webhooks"])

NOT_FOUND_RESPONSE = {404: {"description": "Webhook endpoint not found"}}
DELIVERY_NOT_FOUND_RESPONSE = {404: {"description": "Delivery not found"}}


# =============================================================================
# Delivery records
# =============================================================================


@router.get(
    "/deliveries/{delivery_id}",
    response_model=DeliveryRecord,
    summary="Get a delivery record",
    responses=DELIVERY_NOT_FOUND_RESPONSE,
)
async def get_delivery(
    delivery_id: str,
    manager: WebhookManager = Depends(get_manager),
) -> DeliveryRecord:
    return await manager.get_delivery(delivery_id)


@router.post(
    "/deliveries/{delivery_id}/retry",
    response_model=DeliveryRecord,
    summary="Retry a delivery",
    description="""
Re-send the exact payload of a recorded delivery to its endpoint.

A new delivery record is appended with the next attempt number. The
endpoint's pause status and event patterns are not re-checked.
    """,
    responses=DELIVERY_NOT_FOUND_RESPONSE,
)
async def retry_delivery(
    delivery_id: str,
    manager: WebhookManager = Depends(get_manager),
) -> DeliveryRecord:
    return await manager.retry_delivery(delivery_id)


# =============================================================================
# Endpoints
# =============================================================================


@router.post(
    "",
    status_code=status.HTTP_201_CREATED,
    response_model=WebhookEndpointCreated,
    summary="Register a webhook endpoint",
    description="""
Register a URL to receive event notifications.

**Event patterns** have the form `ResourceType.action`. Either segment may be
`*`: `Patient.*` receives every Patient event, `*.delete` every delete.

**Signature Verification:**
Every delivery carries `X-Webhook-Signature: sha256=<hex>`, the HMAC-SHA256
of the raw request body keyed with the endpoint secret. When no secret is
supplied one is generated; it is only returned in this response.
    """,
    responses={
        201: {"description": "Endpoint registered"},
        400: {"description": "Invalid URL or event patterns"},
    },
)
async def create_webhook(
    request: WebhookEndpointCreate,
    x_tenant_id: Optional[str] = Header(default=None, alias="X-Tenant-ID"),
    manager: WebhookManager = Depends(get_manager),
) -> WebhookEndpointCreated:
    endpoint = await manager.register_endpoint(
        url=request.url,
        events=request.events,
        tenant_id=request.tenant_id or x_tenant_id or "",
        client_id=request.client_id,
        secret=request.secret,
        metadata=request.metadata,
    )
    return WebhookEndpointCreated.from_endpoint(endpoint)


@router.get(
    "",
    response_model=WebhookEndpointList,
    summary="List webhook endpoints",
)
async def list_webhooks(
    limit: Optional[int] = Query(default=None, ge=1, le=100, description="Page size (default 20)"),
    offset: int = Query(default=0, ge=0, description="Number of endpoints to skip"),
    tenant_id: str = Depends(get_tenant_id),
    manager: WebhookManager = Depends(get_manager),
) -> WebhookEndpointList:
    page_size = manager.page_size(limit)
    endpoints, total = await manager.list_endpoints(tenant_id, page_size, offset)
    return WebhookEndpointList(
        data=[WebhookEndpointResponse.from_endpoint(e) for e in endpoints],
        total=total,
        limit=page_size,
        offset=offset,
        has_more=offset + page_size < total,
    )


@router.get(
    "/{endpoint_id}",
    response_model=WebhookEndpointResponse,
    summary="Get a webhook endpoint",
    responses=NOT_FOUND_RESPONSE,
)
async def get_webhook(
    endpoint_id: str,
    manager: WebhookManager = Depends(get_manager),
) -> WebhookEndpointResponse:
    endpoint = await manager.get_endpoint(endpoint_id)
    return WebhookEndpointResponse.from_endpoint(endpoint)


@router.delete(
    "/{endpoint_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    summary="Delete a webhook endpoint",
    description="Remove an endpoint. Its delivery history remains readable.",
    responses=NOT_FOUND_RESPONSE,
)
async def delete_webhook(
    endpoint_id: str,
    manager: WebhookManager = Depends(get_manager),
) -> Response:
    await manager.delete_endpoint(endpoint_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post(
    "/{endpoint_id}/pause",
    response_model=WebhookEndpointResponse,
    summary="Pause deliveries to an endpoint",
    responses=NOT_FOUND_RESPONSE,
)
async def pause_webhook(
    endpoint_id: str,
    manager: WebhookManager = Depends(get_manager),
) -> WebhookEndpointResponse:
    endpoint = await manager.pause_endpoint(endpoint_id)
    return WebhookEndpointResponse.from_endpoint(endpoint)


@router.post(
    "/{endpoint_id}/resume",
    response_model=WebhookEndpointResponse,
    summary="Resume deliveries to an endpoint",
    responses=NOT_FOUND_RESPONSE,
)
async def resume_webhook(
    endpoint_id: str,
    manager: WebhookManager = Depends(get_manager),
) -> WebhookEndpointResponse:
    endpoint = await manager.resume_endpoint(endpoint_id)
    return WebhookEndpointResponse.from_endpoint(endpoint)


@router.post(
    "/{endpoint_id}/test",
    response_model=DeliveryRecord,
    summary="Send a test event",
    description="""
Deliver a synthetic `webhook.test` event with payload
`{"test": true, "endpoint_id": ..., "timestamp": ...}`.

The attempt is recorded in the endpoint's delivery log. Delivery failures
are reported in the returned record, not as an error response.
    """,
    responses=NOT_FOUND_RESPONSE,
)
async def test_webhook(
    endpoint_id: str,
    manager: WebhookManager = Depends(get_manager),
) -> DeliveryRecord:
    return await manager.test_endpoint(endpoint_id)


@router.get(
    "/{endpoint_id}/deliveries",
    response_model=DeliveryRecordList,
    summary="List an endpoint's deliveries",
    description="Delivery records newest first. Unknown endpoints yield an empty list.",
)
async def list_deliveries(
    endpoint_id: str,
    limit: Optional[int] = Query(default=None, ge=1, le=100, description="Page size (default 20)"),
    offset: int = Query(default=0, ge=0, description="Number of records to skip"),
    manager: WebhookManager = Depends(get_manager),
) -> DeliveryRecordList:
    page_size = manager.page_size(limit)
    records, total = await manager.get_delivery_logs(endpoint_id, page_size, offset)
    return DeliveryRecordList(
        data=records,
        total=total,
        limit=page_size,
        offset=offset,
        has_more=offset + page_size < total,
    )
