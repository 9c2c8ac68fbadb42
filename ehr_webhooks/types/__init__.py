"""
Type definitions for the EHR webhook service.
"""

from .webhooks import (
    DeliveryOutcome,
    DeliveryRecord,
    DeliveryRecordList,
    DeliveryStatus,
    EndpointStatus,
    WebhookEndpoint,
    WebhookEndpointCreate,
    WebhookEndpointCreated,
    WebhookEndpointList,
    WebhookEndpointResponse,
    WebhookEvent,
)

__all__ = [
    "DeliveryOutcome",
    "DeliveryRecord",
    "DeliveryRecordList",
    "DeliveryStatus",
    "EndpointStatus",
    "WebhookEndpoint",
    "WebhookEndpointCreate",
    "WebhookEndpointCreated",
    "WebhookEndpointList",
    "WebhookEndpointResponse",
    "WebhookEvent",
]
