"""
Webhook event delivery for the EHR backend.

This package provides:
- Endpoint registration and pause/resume lifecycle
- Concurrent fan-out of domain events to matching endpoints
- Payload signing (HMAC-SHA256)
- Delivery logging, retries and test pings
"""

from .delivery import DeliveryExecutor
from .manager import WebhookManager, get_webhook_manager, reset_webhook_manager
from .matching import endpoint_matches, pattern_matches
from .signing import generate_secret, sign_payload, verify_signature
from .storage import (
    InMemoryWebhookStore,
    RedisWebhookStore,
    WebhookStorage,
    WebhookStore,
    get_webhook_store,
)

__all__ = [
    "DeliveryExecutor",
    "WebhookManager",
    "get_webhook_manager",
    "reset_webhook_manager",
    "endpoint_matches",
    "pattern_matches",
    "generate_secret",
    "sign_payload",
    "verify_signature",
    "InMemoryWebhookStore",
    "RedisWebhookStore",
    "WebhookStorage",
    "WebhookStore",
    "get_webhook_store",
]
