"""
Webhook types and models for the EHR event-delivery system.

This module defines the data models for registered endpoints, domain events,
delivery records and the request/response bodies of the management API.
"""

import json
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return str(uuid.uuid4())


class EndpointStatus(str, Enum):
    """Lifecycle status of a webhook endpoint."""

    ACTIVE = "active"
    PAUSED = "paused"


class DeliveryStatus(str, Enum):
    """Outcome of a single delivery attempt."""

    SUCCESS = "success"
    FAILED = "failed"


class WebhookEndpoint(BaseModel):
    """
    A registered external HTTP destination.

    The url, secret and events are fixed at registration. Only the status
    changes afterwards, through pause and resume.
    """

    id: str = Field(default_factory=_new_id, description="Unique endpoint ID")
    url: str = Field(..., description="Absolute http/https URL deliveries are POSTed to")
    secret: str = Field(..., min_length=1, description="Shared HMAC signing secret")
    tenant_id: str = Field(default="", description="Owning tenant")
    client_id: str = Field(default="", description="Registering client application")
    events: List[str] = Field(
        ...,
        min_length=1,
        description="Event patterns this endpoint subscribes to",
    )
    status: EndpointStatus = Field(
        default=EndpointStatus.ACTIVE,
        description="Whether the endpoint currently receives deliveries",
    )
    metadata: Dict[str, str] = Field(
        default_factory=dict,
        description="Free-form labels supplied at registration",
    )
    created_at: datetime = Field(
        default_factory=_utcnow,
        description="When the endpoint was registered (UTC)",
    )

    @property
    def is_active(self) -> bool:
        return self.status == EndpointStatus.ACTIVE


class WebhookEvent(BaseModel):
    """
    A domain-change notification produced by the clinical services.

    Events are not persisted by the webhook subsystem; the payload bytes are
    delivered verbatim and captured on each delivery record.
    """

    id: str = Field(default_factory=_new_id, description="Unique event ID")
    type: str = Field(..., description="Event type, e.g. Patient.create")
    resource_type: str = Field(default="", description="Resource type, e.g. Patient")
    resource_id: str = Field(default="", description="ID of the changed resource")
    tenant_id: str = Field(default="", description="Tenant the event belongs to")
    payload: bytes = Field(default=b"", description="Opaque request body")
    timestamp: datetime = Field(default_factory=_utcnow, description="When the event occurred")

    @classmethod
    def for_resource(
        cls,
        resource_type: str,
        action: str,
        resource_id: str,
        tenant_id: str,
        data: Optional[Dict[str, Any]] = None,
    ) -> "WebhookEvent":
        """
        Build an event for a resource change with a JSON payload.

        Args:
            resource_type: Resource type, e.g. "Patient"
            action: Action name, e.g. "create"
            resource_id: ID of the changed resource
            tenant_id: Owning tenant
            data: Resource representation to include in the payload

        Returns:
            WebhookEvent whose type is "<resource_type>.<action>"
        """
        event_id = _new_id()
        timestamp = _utcnow()
        event_type = f"{resource_type}.{action}"
        body = {
            "id": event_id,
            "type": event_type,
            "resource_type": resource_type,
            "resource_id": resource_id,
            "tenant_id": tenant_id,
            "timestamp": timestamp.strftime("%Y-%m-%dT%H:%M:%SZ"),
            "data": data or {},
        }
        return cls(
            id=event_id,
            type=event_type,
            resource_type=resource_type,
            resource_id=resource_id,
            tenant_id=tenant_id,
            payload=json.dumps(body, separators=(",", ":"), default=str).encode("utf-8"),
            timestamp=timestamp,
        )


class DeliveryRecord(BaseModel):
    """
    Immutable audit entry for one delivery attempt.

    Payload bytes are base64 encoded in JSON so arbitrary bodies survive
    storage and the API unchanged.
    """

    model_config = ConfigDict(ser_json_bytes="base64", val_json_bytes="base64")

    id: str = Field(default_factory=_new_id, description="Unique delivery ID")
    endpoint_id: str = Field(..., description="Endpoint the attempt targeted")
    event_id: str = Field(default="", description="Event ID sent as X-Webhook-ID")
    event_type: str = Field(..., description="Event type delivered")
    attempt: int = Field(default=1, ge=1, description="Attempt number (1-indexed)")
    status: DeliveryStatus = Field(..., description="Delivery outcome")
    status_code: int = Field(default=0, description="HTTP status, 0 when no response was received")
    response_body: str = Field(default="", description="Response body (bounded)")
    payload: bytes = Field(default=b"", description="Exact bytes that were sent")
    signature: str = Field(default="", description="Hex HMAC-SHA256 digest that was sent")
    error: Optional[str] = Field(default=None, description="Failure description")
    duration_ms: int = Field(default=0, ge=0, description="Request duration in milliseconds")
    timestamp: datetime = Field(default_factory=_utcnow, description="When the attempt was made")

    @property
    def succeeded(self) -> bool:
        return self.status == DeliveryStatus.SUCCESS


class DeliveryOutcome(BaseModel):
    """Per-endpoint result of a fan-out."""

    endpoint_id: str = Field(..., description="Endpoint the event was sent to")
    delivery_id: Optional[str] = Field(
        default=None,
        description="Delivery record ID, unset if no record could be produced",
    )
    success: bool = Field(..., description="Whether the endpoint accepted the event")
    status: DeliveryStatus = Field(..., description="Delivery outcome")
    status_code: int = Field(default=0, description="HTTP status, 0 when no response")
    error: Optional[str] = Field(default=None, description="Failure description")

    @classmethod
    def from_record(cls, record: DeliveryRecord) -> "DeliveryOutcome":
        return cls(
            endpoint_id=record.endpoint_id,
            delivery_id=record.id,
            success=record.succeeded,
            status=record.status,
            status_code=record.status_code,
            error=record.error,
        )


# =============================================================================
# API request/response models
# =============================================================================


class WebhookEndpointCreate(BaseModel):
    """
    Request model for registering a webhook endpoint.

    Only shapes are enforced here; URL and event rules are checked by the
    manager so they surface as 400 validation errors.
    """

    url: str = Field(default="", max_length=2048, description="URL to deliver webhooks to")
    secret: Optional[str] = Field(
        default=None,
        max_length=256,
        description="Signing secret, generated when omitted",
    )
    tenant_id: str = Field(default="", description="Owning tenant")
    client_id: str = Field(default="", description="Registering client application")
    events: List[str] = Field(default_factory=list, description="Event patterns to subscribe to")
    metadata: Dict[str, str] = Field(default_factory=dict, description="Custom labels")


class WebhookEndpointResponse(BaseModel):
    """Endpoint representation returned by get and list (secret omitted)."""

    id: str
    url: str
    tenant_id: str
    client_id: str
    events: List[str]
    status: EndpointStatus
    metadata: Dict[str, str] = Field(default_factory=dict)
    created_at: datetime

    @classmethod
    def from_endpoint(cls, endpoint: WebhookEndpoint) -> "WebhookEndpointResponse":
        return cls(**endpoint.model_dump(exclude={"secret"}))


class WebhookEndpointCreated(WebhookEndpointResponse):
    """Registration response; the only place the secret is returned."""

    secret: str

    @classmethod
    def from_endpoint(cls, endpoint: WebhookEndpoint) -> "WebhookEndpointCreated":
        return cls(**endpoint.model_dump())


class WebhookEndpointList(BaseModel):
    """Paginated list of endpoints."""

    data: List[WebhookEndpointResponse]
    total: int
    limit: int
    offset: int
    has_more: bool


class DeliveryRecordList(BaseModel):
    """Paginated delivery log, newest first."""

    data: List[DeliveryRecord]
    total: int
    limit: int
    offset: int
    has_more: bool
