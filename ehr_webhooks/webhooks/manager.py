"""
Webhook manager: registration, lifecycle and event fan-out.

This module ties the store, signer, matcher and delivery executor together:
- Endpoint registration with URL validation and secret generation
- Pause/resume lifecycle
- Concurrent fan-out of domain events to matching endpoints
- Operator-triggered retries and test pings
- Paginated delivery logs
"""

import asyncio
import json
import logging
import random
import uuid
from datetime import datetime, timezone
from typing import Dict, List, Optional, Tuple

from ehr_webhooks.config import WebhookSettings, get_settings
from ehr_webhooks.exceptions import ErrorCode, ValidationError, is_retryable_status
from ehr_webhooks.types.webhooks import (
    DeliveryOutcome,
    DeliveryRecord,
    DeliveryStatus,
    EndpointStatus,
    WebhookEndpoint,
    WebhookEvent,
)
from ehr_webhooks.utils.logging import Timer, delivery_fields
from ehr_webhooks.utils.validators import validate_event_patterns, validate_url

from .delivery import DeliveryExecutor, format_timestamp
from .matching import endpoint_matches
from .signing import generate_secret
from .storage import WebhookStore, get_webhook_store

logger = logging.getLogger(__name__)

TEST_EVENT_TYPE = "webhook.test"
TEST_RESOURCE_TYPE = "Webhook"


class WebhookManager:
    """
    Service for managing webhook endpoints and deliveries.

    Provides methods for:
    - Registering, pausing, resuming and deleting endpoints
    - Delivering events to every matching active endpoint concurrently
    - Retrying recorded deliveries, with optional exponential backoff
    - Sending test pings and reading delivery logs
    """

    def __init__(
        self,
        store: Optional[WebhookStore] = None,
        executor: Optional[DeliveryExecutor] = None,
        settings: Optional[WebhookSettings] = None,
    ) -> None:
        self.settings = settings or get_settings().webhooks
        self.store = store or get_webhook_store()
        self.executor = executor or DeliveryExecutor(settings=self.settings)

    async def close(self) -> None:
        """Close the HTTP client and store connections."""
        await self.executor.close()
        await self.store.close()

    def page_size(self, limit: Optional[int]) -> int:
        if limit is None or limit <= 0:
            return self.settings.webhook_default_page_size
        return min(limit, self.settings.webhook_max_page_size)

    # =========================================================================
    # Endpoint Registration and Lifecycle
    # =========================================================================

    async def _validate_url(self, url: str) -> str:
        allow_private = not self.settings.webhook_block_private_urls
        resolve_dns = self.settings.webhook_resolve_dns and not allow_private
        # DNS resolution blocks, keep it off the event loop
        is_valid, error = await asyncio.to_thread(
            validate_url,
            url,
            allow_private=allow_private,
            resolve_dns=resolve_dns,
        )
        if not is_valid:
            raise ValidationError(
                message=f"Invalid webhook URL: {error}",
                field="url",
                value=url,
                error_code=ErrorCode.INVALID_URL,
            )
        return url.strip()

    async def register_endpoint(
        self,
        url: str,
        events: List[str],
        tenant_id: str = "",
        client_id: str = "",
        secret: Optional[str] = None,
        metadata: Optional[Dict[str, str]] = None,
    ) -> WebhookEndpoint:
        """
        Register a new webhook endpoint.

        Args:
            url: Absolute http/https URL to deliver to
            events: Event patterns to subscribe to, e.g. ["Patient.*"]
            tenant_id: Owning tenant
            client_id: Registering client application
            secret: Signing secret, generated when empty
            metadata: Free-form labels

        Returns:
            The stored endpoint, including its secret

        Raises:
            ValidationError: If the URL or events are invalid
        """
        url = await self._validate_url(url)
        try:
            events = validate_event_patterns(events)
        except ValueError as e:
            raise ValidationError(
                message=str(e),
                field="events",
                error_code=ErrorCode.INVALID_EVENTS,
            ) from e

        endpoint = WebhookEndpoint(
            url=url,
            secret=secret or generate_secret(),
            tenant_id=tenant_id,
            client_id=client_id,
            events=events,
            status=EndpointStatus.ACTIVE,
            metadata=metadata or {},
        )
        await self.store.create_endpoint(endpoint)

        logger.info(
            f"Registered webhook endpoint {endpoint.id} for tenant "
            f"{tenant_id or '-'} ({len(events)} pattern(s))"
        )
        return endpoint

    async def get_endpoint(self, endpoint_id: str) -> WebhookEndpoint:
        """Get an endpoint by ID. Raises NotFoundError if unknown."""
        return await self.store.get_endpoint(endpoint_id)

    async def list_endpoints(
        self,
        tenant_id: str = "",
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> Tuple[List[WebhookEndpoint], int]:
        """List endpoints newest first, scoped to a tenant when given."""
        return await self.store.list_endpoints(tenant_id, self.page_size(limit), max(offset, 0))

    async def pause_endpoint(self, endpoint_id: str) -> WebhookEndpoint:
        """Stop deliveries to an endpoint. Raises NotFoundError if unknown."""
        endpoint = await self.store.update_status(endpoint_id, EndpointStatus.PAUSED)
        logger.info(f"Paused webhook endpoint {endpoint_id}")
        return endpoint

    async def resume_endpoint(self, endpoint_id: str) -> WebhookEndpoint:
        """Restart deliveries to an endpoint. Raises NotFoundError if unknown."""
        endpoint = await self.store.update_status(endpoint_id, EndpointStatus.ACTIVE)
        logger.info(f"Resumed webhook endpoint {endpoint_id}")
        return endpoint

    async def delete_endpoint(self, endpoint_id: str) -> None:
        """Remove an endpoint; its delivery history stays readable."""
        await self.store.delete_endpoint(endpoint_id)
        logger.info(f"Deleted webhook endpoint {endpoint_id}")

    # =========================================================================
    # Event Fan-out
    # =========================================================================

    async def _load_endpoints(self, tenant_id: str) -> List[WebhookEndpoint]:
        """Load every endpoint of a tenant from a single view of the index."""
        return await self.store.snapshot_endpoints(
            tenant_id, self.settings.webhook_fanout_page_size
        )

    async def _attempt(
        self,
        endpoint: WebhookEndpoint,
        event_id: str,
        event_type: str,
        payload: bytes,
        attempt: int = 1,
    ) -> DeliveryRecord:
        """Make one attempt and append its record; unexpected errors become failed records."""
        try:
            record = await self.executor.send(
                endpoint,
                event_id=event_id,
                event_type=event_type,
                payload=payload,
                attempt=attempt,
            )
        except Exception as e:
            logger.error(
                f"Webhook delivery unexpected error: endpoint {endpoint.id} - {str(e)}",
                exc_info=True,
                extra=delivery_fields(endpoint.id, event_id, event_type, attempt=attempt),
            )
            record = DeliveryRecord(
                endpoint_id=endpoint.id,
                event_id=event_id,
                event_type=event_type,
                attempt=attempt,
                status=DeliveryStatus.FAILED,
                status_code=0,
                payload=payload,
                error=f"Unexpected error: {str(e)}",
            )
        await self.store.append_delivery(record)
        return record

    async def _deliver_to_endpoint(
        self,
        endpoint: WebhookEndpoint,
        event: WebhookEvent,
    ) -> DeliveryRecord:
        return await self._attempt(endpoint, event.id, event.type, event.payload)

    async def deliver(self, event: WebhookEvent) -> List[DeliveryOutcome]:
        """
        Deliver an event to all matching active endpoints of its tenant.

        Each matching endpoint gets exactly one attempt; attempts run
        concurrently and one endpoint's failure never affects another's.
        Paused and non-matching endpoints produce no outcome and no record.

        Args:
            event: Domain event to deliver

        Returns:
            One outcome per attempted endpoint, in no guaranteed order
        """
        endpoints = await self._load_endpoints(event.tenant_id)
        targets = [
            endpoint for endpoint in endpoints
            if endpoint.is_active and endpoint_matches(endpoint, event.type)
        ]

        if not targets:
            logger.debug(f"No webhook endpoints for event {event.type}")
            return []

        logger.info(
            f"Delivering {event.type} event {event.id} to {len(targets)} endpoint(s)",
            extra={"event_id": event.id, "event_type": event.type, "tenant_id": event.tenant_id or None},
        )

        with Timer("fan-out", logger, event_id=event.id, event_type=event.type):
            results = await asyncio.gather(
                *(self._deliver_to_endpoint(endpoint, event) for endpoint in targets),
                return_exceptions=True,
            )

        outcomes: List[DeliveryOutcome] = []
        for endpoint, result in zip(targets, results):
            if isinstance(result, BaseException):
                logger.error(
                    f"Webhook delivery task failed: {result}",
                    extra=delivery_fields(endpoint.id, event.id, event.type),
                )
                outcomes.append(
                    DeliveryOutcome(
                        endpoint_id=endpoint.id,
                        success=False,
                        status=DeliveryStatus.FAILED,
                        error=str(result) or result.__class__.__name__,
                    )
                )
            else:
                outcomes.append(DeliveryOutcome.from_record(result))
        return outcomes

    # =========================================================================
    # Retries and Test Pings
    # =========================================================================

    async def retry_delivery(self, delivery_id: str) -> DeliveryRecord:
        """
        Re-send a recorded delivery.

        The captured payload and event ID are sent again to the same endpoint
        and a new record is appended with the next attempt number. Pause
        status and event patterns are not re-checked.

        Raises:
            NotFoundError: If the delivery or its endpoint no longer exists
        """
        previous = await self.store.get_delivery(delivery_id)
        endpoint = await self.store.get_endpoint(previous.endpoint_id)

        record = await self._attempt(
            endpoint,
            event_id=previous.event_id or str(uuid.uuid4()),
            event_type=previous.event_type,
            payload=previous.payload,
            attempt=previous.attempt + 1,
        )

        logger.info(
            f"Retried delivery {delivery_id} ({record.status.value})",
            extra=delivery_fields(
                endpoint.id,
                record.event_id,
                record.event_type,
                delivery_id=record.id,
                attempt=record.attempt,
            ),
        )
        return record

    def _calculate_retry_delay(self, attempt: int) -> float:
        """
        Calculate retry delay with exponential backoff and jitter.

        Args:
            attempt: Current attempt number (1-indexed)

        Returns:
            Delay in seconds
        """
        delay = self.settings.webhook_retry_base_delay * (2 ** (attempt - 1))
        jitter = random.uniform(0, delay * 0.25)
        return min(delay + jitter, self.settings.webhook_retry_max_delay)

    async def retry_with_backoff(
        self,
        delivery_id: str,
        max_attempts: Optional[int] = None,
    ) -> DeliveryRecord:
        """
        Retry a delivery until it succeeds or stops being retryable.

        Sleeps with exponential backoff between attempts. Transport errors,
        timeouts, throttling and 5xx responses are retried; other failures
        stop immediately.

        Args:
            delivery_id: Delivery to retry
            max_attempts: Maximum number of retries (defaults to settings)

        Returns:
            The last delivery record
        """
        attempts = max_attempts or self.settings.webhook_retry_max_attempts
        record = await self.store.get_delivery(delivery_id)
        if record.succeeded:
            return record

        for attempt in range(1, attempts + 1):
            record = await self.retry_delivery(record.id)
            if record.succeeded or not is_retryable_status(record.status_code):
                break
            if attempt < attempts:
                delay = self._calculate_retry_delay(attempt)
                logger.info(
                    f"Webhook delivery failed, retrying in {delay:.1f}s "
                    f"(attempt {attempt}/{attempts})"
                )
                await asyncio.sleep(delay)

        if not record.succeeded:
            logger.warning(f"Webhook delivery {delivery_id} still failing after retries: {record.error}")
        return record

    async def test_endpoint(self, endpoint_id: str) -> DeliveryRecord:
        """
        Send a synthetic webhook.test event to an endpoint.

        The result is recorded like any other delivery.

        Raises:
            NotFoundError: If the endpoint is unknown
        """
        endpoint = await self.store.get_endpoint(endpoint_id)
        now = datetime.now(timezone.utc)
        body = {
            "test": True,
            "endpoint_id": endpoint.id,
            "timestamp": format_timestamp(now),
        }
        event = WebhookEvent(
            type=TEST_EVENT_TYPE,
            resource_type=TEST_RESOURCE_TYPE,
            resource_id=endpoint.id,
            tenant_id=endpoint.tenant_id,
            payload=json.dumps(body, separators=(",", ":")).encode("utf-8"),
            timestamp=now,
        )
        return await self._deliver_to_endpoint(endpoint, event)

    # =========================================================================
    # Delivery Logs
    # =========================================================================

    async def get_delivery_logs(
        self,
        endpoint_id: str,
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> Tuple[List[DeliveryRecord], int]:
        """
        Get an endpoint's delivery records, newest first.

        Unknown endpoint IDs yield an empty page rather than an error.
        """
        return await self.store.list_deliveries(endpoint_id, self.page_size(limit), max(offset, 0))

    async def get_delivery(self, delivery_id: str) -> DeliveryRecord:
        """Get a delivery record by ID. Raises NotFoundError if unknown."""
        return await self.store.get_delivery(delivery_id)


_manager: Optional[WebhookManager] = None


def get_webhook_manager() -> WebhookManager:
    """Get the shared webhook manager instance."""
    global _manager
    if _manager is None:
        _manager = WebhookManager()
    return _manager


def reset_webhook_manager() -> None:
    """Drop the shared instance. Useful for testing."""
    global _manager
    _manager = None
