"""
Pytest configuration and shared fixtures for the webhook service tests.

This module provides common fixtures used across all test files:
- A fake webhook receiver served through httpx.MockTransport
- Webhook settings suitable for tests (no DNS lookups, no backoff sleeps)
- A manager wired to an in-memory store and the fake receiver
"""

import inspect
import os
import sys
from typing import Callable, Dict, List, Optional

import httpx
import pytest

# Environment setup before any imports
os.environ["ENVIRONMENT"] = "development"
os.environ["LOG_LEVEL"] = "WARNING"
os.environ["WEBHOOK_RESOLVE_DNS"] = "false"
os.environ.pop("REDIS_URL", None)

# Ensure project root is in path
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

from ehr_webhooks.config import WebhookSettings  # noqa: E402
from ehr_webhooks.webhooks.delivery import DeliveryExecutor  # noqa: E402
from ehr_webhooks.webhooks.manager import WebhookManager  # noqa: E402
from ehr_webhooks.webhooks.storage import InMemoryWebhookStore  # noqa: E402

Handler = Callable[[httpx.Request], object]


class Receiver:
    """
    Fake set of webhook receivers keyed by hostname.

    Hosts without a configured handler answer 200 "ok". Handlers may be
    sync or async, and may raise httpx transport errors.
    """

    def __init__(self) -> None:
        self.requests: List[httpx.Request] = []
        self.handlers: Dict[str, Handler] = {}

    def on(self, host: str, handler: Handler) -> None:
        self.handlers[host] = handler

    def respond(self, host: str, status_code: int = 200, body: str = "ok") -> None:
        self.on(host, lambda request: httpx.Response(status_code, text=body))

    def sequence(self, host: str, *status_codes: int) -> None:
        """Answer successive requests with the given status codes (last one repeats)."""
        remaining = list(status_codes)

        def handler(request: httpx.Request) -> httpx.Response:
            code = remaining.pop(0) if len(remaining) > 1 else remaining[0]
            return httpx.Response(code, text=f"status {code}")

        self.on(host, handler)

    def refuse(self, host: str) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("Connection refused", request=request)

        self.on(host, handler)

    def requests_to(self, host: str) -> List[httpx.Request]:
        return [r for r in self.requests if r.url.host == host]

    async def handle(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        handler = self.handlers.get(request.url.host)
        if handler is None:
            return httpx.Response(200, text="ok")
        result = handler(request)
        if inspect.isawaitable(result):
            result = await result
        return result


def make_manager(
    receiver: Receiver,
    settings: Optional[WebhookSettings] = None,
) -> WebhookManager:
    settings = settings or WebhookSettings(
        webhook_resolve_dns=False,
        webhook_retry_base_delay=0,
    )
    executor = DeliveryExecutor(
        settings=settings,
        transport=httpx.MockTransport(receiver.handle),
    )
    return WebhookManager(
        store=InMemoryWebhookStore(),
        executor=executor,
        settings=settings,
    )


@pytest.fixture
def receiver() -> Receiver:
    """Fake webhook receivers."""
    return Receiver()


@pytest.fixture
def webhook_settings() -> WebhookSettings:
    """Webhook settings with DNS checks and backoff delays disabled."""
    return WebhookSettings(
        webhook_resolve_dns=False,
        webhook_retry_base_delay=0,
    )


@pytest.fixture
def manager(receiver: Receiver, webhook_settings: WebhookSettings) -> WebhookManager:
    """Webhook manager backed by an in-memory store and the fake receivers."""
    return make_manager(receiver, webhook_settings)


@pytest.fixture
def client(manager: WebhookManager):
    """FastAPI test client serving the test manager."""
    from fastapi.testclient import TestClient

    from server import create_app

    with TestClient(create_app(manager=manager)) as test_client:
        yield test_client
