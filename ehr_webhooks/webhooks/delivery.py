"""
Webhook delivery executor.

Performs exactly one signed HTTP POST per call and classifies the outcome:
- 2xx responses are successes
- any other status is a failure carrying the status and a bounded body
- transport errors (DNS, refused connections, timeouts) are failures with
  status code 0 and no body

The executor never persists records and never retries; both are the
manager's job.
"""

import asyncio
import logging
import time
from datetime import datetime, timezone
from typing import Dict, Optional, Tuple

import httpx

from ehr_webhooks.config import WebhookSettings, get_settings
from ehr_webhooks.exceptions import DeliveryFailure, ErrorCode
from ehr_webhooks.types.webhooks import (
    DeliveryRecord,
    DeliveryStatus,
    WebhookEndpoint,
    WebhookEvent,
)
from ehr_webhooks.utils.logging import delivery_fields

from .signing import SIGNATURE_HEADER, format_signature_header, sign_payload

logger = logging.getLogger(__name__)

TIMESTAMP_FORMAT = "%Y-%m-%dT%H:%M:%SZ"


def format_timestamp(moment: Optional[datetime] = None) -> str:
    """Render a moment as an RFC 3339 UTC timestamp, e.g. 2024-05-01T12:00:00Z."""
    moment = moment or datetime.now(timezone.utc)
    return moment.astimezone(timezone.utc).strftime(TIMESTAMP_FORMAT)


class DeliveryExecutor:
    """
    Sends single webhook delivery attempts over a shared HTTP client.

    Provides methods for:
    - Building signed delivery headers
    - POSTing a payload to an endpoint and classifying the result
    - Releasing the HTTP client on shutdown
    """

    def __init__(
        self,
        settings: Optional[WebhookSettings] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        """
        Initialize the executor.

        Args:
            settings: Delivery settings (defaults to application settings)
            transport: Optional httpx transport, used by tests to fake endpoints
        """
        self.settings = settings or get_settings().webhooks
        self._transport = transport
        self._http_client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create the HTTP client."""
        if self._http_client is None or self._http_client.is_closed:
            self._http_client = httpx.AsyncClient(
                timeout=httpx.Timeout(self.settings.webhook_timeout_seconds),
                follow_redirects=False,
                limits=httpx.Limits(max_connections=100, max_keepalive_connections=20),
                transport=self._transport,
            )
        return self._http_client

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._http_client and not self._http_client.is_closed:
            await self._http_client.aclose()

    def _build_headers(
        self,
        signature: str,
        event_id: str,
        event_type: str,
    ) -> Dict[str, str]:
        """
        Build headers for webhook delivery.

        Includes:
        - Content-Type: application/json
        - User-Agent: service identifier
        - X-Webhook-Signature: sha256=<hex HMAC of the body>
        - X-Webhook-Timestamp: RFC 3339 UTC send time
        - X-Webhook-ID: event ID
        - X-Webhook-Event: event type

        Returns:
            Headers dictionary
        """
        return {
            "Content-Type": "application/json",
            "User-Agent": self.settings.webhook_user_agent,
            SIGNATURE_HEADER: format_signature_header(signature),
            "X-Webhook-Timestamp": format_timestamp(),
            "X-Webhook-ID": event_id,
            "X-Webhook-Event": event_type,
        }

    async def _read_bounded(self, response: httpx.Response) -> str:
        limit = self.settings.webhook_max_response_body_bytes
        body = bytearray()
        if limit > 0:
            async for chunk in response.aiter_bytes():
                body.extend(chunk)
                if len(body) >= limit:
                    break
        return bytes(body[:limit]).decode("utf-8", errors="replace")

    async def _exchange(
        self,
        client: httpx.AsyncClient,
        url: str,
        payload: bytes,
        headers: Dict[str, str],
    ) -> Tuple[int, str]:
        async with client.stream("POST", url, content=payload, headers=headers) as response:
            body = await self._read_bounded(response)
        return response.status_code, body

    async def _post(
        self,
        url: str,
        payload: bytes,
        headers: Dict[str, str],
    ) -> Tuple[int, str]:
        """
        POST the payload and return the status code and bounded body.

        The timeout covers the whole exchange, from connecting to reading
        the last body byte.

        Raises:
            DeliveryFailure: On a non-2xx response or a transport error
        """
        client = await self._get_client()
        timeout = self.settings.webhook_timeout_seconds
        try:
            status_code, body = await asyncio.wait_for(
                self._exchange(client, url, payload, headers),
                timeout=timeout,
            )
        except (httpx.TimeoutException, asyncio.TimeoutError) as e:
            raise DeliveryFailure(
                message=f"Timeout after {timeout}s",
                error_code=ErrorCode.DELIVERY_TIMEOUT,
                original_error=e,
            ) from e
        except (httpx.HTTPError, httpx.InvalidURL) as e:
            raise DeliveryFailure(
                message=f"Request error: {str(e) or e.__class__.__name__}",
                error_code=ErrorCode.DELIVERY_TRANSPORT_ERROR,
                original_error=e,
            ) from e

        if not 200 <= status_code < 300:
            raise DeliveryFailure(
                message=f"HTTP {status_code}",
                status_code_received=status_code,
                response_body=body,
            )
        return status_code, body

    async def send(
        self,
        endpoint: WebhookEndpoint,
        event_id: str,
        event_type: str,
        payload: bytes,
        attempt: int = 1,
    ) -> DeliveryRecord:
        """
        Make one delivery attempt to an endpoint.

        Args:
            endpoint: Target endpoint
            event_id: Event ID sent as X-Webhook-ID
            event_type: Event type sent as X-Webhook-Event
            payload: Exact request body
            attempt: Attempt number recorded on the result

        Returns:
            Unsaved DeliveryRecord describing the attempt
        """
        signature = sign_payload(payload, endpoint.secret)
        headers = self._build_headers(signature, event_id, event_type)
        start_time = time.perf_counter()

        try:
            status_code, body = await self._post(endpoint.url, payload, headers)
            status = DeliveryStatus.SUCCESS
            error = None
        except DeliveryFailure as failure:
            status = DeliveryStatus.FAILED
            status_code = failure.status_code_received
            body = failure.response_body
            error = failure.message

        fields = delivery_fields(
            endpoint.id,
            event_id,
            event_type,
            attempt=attempt,
            status_code=status_code,
            tenant_id=endpoint.tenant_id or None,
        )
        if error is None:
            logger.info(f"Webhook delivered: {event_type} ({status_code})", extra=fields)
        else:
            logger.warning(f"Webhook delivery failed: {event_type} - {error}", extra=fields)

        return DeliveryRecord(
            endpoint_id=endpoint.id,
            event_id=event_id,
            event_type=event_type,
            attempt=attempt,
            status=status,
            status_code=status_code,
            response_body=body,
            payload=payload,
            signature=signature,
            error=error,
            duration_ms=int((time.perf_counter() - start_time) * 1000),
        )

    async def send_event(
        self,
        endpoint: WebhookEndpoint,
        event: WebhookEvent,
        attempt: int = 1,
    ) -> DeliveryRecord:
        """Deliver a WebhookEvent to an endpoint."""
        return await self.send(
            endpoint,
            event_id=event.id,
            event_type=event.type,
            payload=event.payload,
            attempt=attempt,
        )
