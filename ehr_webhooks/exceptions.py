"""
Custom exception classes for the EHR webhook service.

All exceptions inherit from WebhookServiceError so the HTTP layer can map
them onto error responses in one place.

Exception Hierarchy:
    WebhookServiceError (base, 500)
    ├── ValidationError (400)
    ├── NotFoundError (404)
    ├── StorageError (500)
    └── DeliveryFailure (502, recorded on delivery records, never returned)
"""

from enum import Enum
from typing import Any, Dict, Optional


class ErrorCode(str, Enum):
    """Machine-readable error codes for API responses."""

    # General errors
    INTERNAL_ERROR = "INTERNAL_ERROR"

    # Validation errors (400)
    VALIDATION_ERROR = "VALIDATION_ERROR"
    INVALID_URL = "INVALID_URL"
    INVALID_EVENTS = "INVALID_EVENTS"

    # Resource errors (404)
    RESOURCE_NOT_FOUND = "RESOURCE_NOT_FOUND"
    ENDPOINT_NOT_FOUND = "ENDPOINT_NOT_FOUND"
    DELIVERY_NOT_FOUND = "DELIVERY_NOT_FOUND"

    # Storage errors (500)
    STORAGE_ERROR = "STORAGE_ERROR"

    # Delivery errors
    DELIVERY_FAILED = "DELIVERY_FAILED"
    DELIVERY_TIMEOUT = "DELIVERY_TIMEOUT"
    DELIVERY_TRANSPORT_ERROR = "DELIVERY_TRANSPORT_ERROR"


class WebhookServiceError(Exception):
    """
    Base exception class for all webhook service errors.

    Attributes:
        message: Human-readable error message (sanitized for external display).
        error_code: Machine-readable error code from ErrorCode enum.
        status_code: HTTP status code to return.
        details: Additional context about the error (optional).
        internal_message: Detailed message for logging (not exposed to clients).
    """

    status_code: int = 500
    default_error_code: ErrorCode = ErrorCode.INTERNAL_ERROR
    default_message: str = "An unexpected error occurred"

    def __init__(
        self,
        message: Optional[str] = None,
        error_code: Optional[ErrorCode] = None,
        details: Optional[Dict[str, Any]] = None,
        internal_message: Optional[str] = None,
    ):
        self.message = message or self.default_message
        self.error_code = error_code or self.default_error_code
        self.details = details or {}
        self.internal_message = internal_message
        super().__init__(self.message)

    def __repr__(self) -> str:
        return (
            f"{self.__class__.__name__}("
            f"message={self.message!r}, "
            f"error_code={self.error_code.value!r}, "
            f"status_code={self.status_code})"
        )


# =============================================================================
# Validation Errors (400 Bad Request)
# =============================================================================

class ValidationError(WebhookServiceError):
    """
    Raised when endpoint registration input is invalid.

    Use this for:
    - Missing, malformed or disallowed endpoint URLs
    - Empty event pattern lists
    """

    status_code = 400
    default_error_code = ErrorCode.VALIDATION_ERROR
    default_message = "Invalid request data"

    def __init__(
        self,
        message: Optional[str] = None,
        field: Optional[str] = None,
        value: Optional[Any] = None,
        error_code: Optional[ErrorCode] = None,
        details: Optional[Dict[str, Any]] = None,
        internal_message: Optional[str] = None,
    ):
        details = details or {}
        if field:
            details["field"] = field
        if value is not None:
            str_value = str(value)
            details["value"] = str_value[:100] + "..." if len(str_value) > 100 else str_value

        super().__init__(
            message=message,
            error_code=error_code,
            details=details,
            internal_message=internal_message,
        )


# =============================================================================
# Not Found Errors (404 Not Found)
# =============================================================================

class NotFoundError(WebhookServiceError):
    """Raised when an endpoint or delivery record does not exist."""

    status_code = 404
    default_error_code = ErrorCode.RESOURCE_NOT_FOUND
    default_message = "Resource not found"

    def __init__(
        self,
        message: Optional[str] = None,
        resource_type: Optional[str] = None,
        resource_id: Optional[str] = None,
        error_code: Optional[ErrorCode] = None,
        details: Optional[Dict[str, Any]] = None,
        internal_message: Optional[str] = None,
    ):
        details = details or {}
        if resource_type:
            details["resource_type"] = resource_type
        if resource_id:
            details["resource_id"] = resource_id[:64]

        self.resource_type = resource_type
        self.resource_id = resource_id

        super().__init__(
            message=message or (
                f"{resource_type} not found" if resource_type else None
            ),
            error_code=error_code,
            details=details,
            internal_message=internal_message,
        )


def endpoint_not_found(endpoint_id: str) -> NotFoundError:
    """Build the NotFoundError raised for an unknown endpoint id."""
    return NotFoundError(
        resource_type="Webhook endpoint",
        resource_id=endpoint_id,
        error_code=ErrorCode.ENDPOINT_NOT_FOUND,
    )


def delivery_not_found(delivery_id: str) -> NotFoundError:
    """Build the NotFoundError raised for an unknown delivery id."""
    return NotFoundError(
        resource_type="Delivery",
        resource_id=delivery_id,
        error_code=ErrorCode.DELIVERY_NOT_FOUND,
    )


# =============================================================================
# Storage Errors (500 Internal Server Error)
# =============================================================================

class StorageError(WebhookServiceError):
    """
    Raised when the endpoint store backend fails.

    Note: Storage errors never expose backend details to clients.
    """

    status_code = 500
    default_error_code = ErrorCode.STORAGE_ERROR
    default_message = "A storage error occurred"

    def __init__(
        self,
        message: Optional[str] = None,
        operation: Optional[str] = None,
        internal_message: Optional[str] = None,
        original_error: Optional[Exception] = None,
    ):
        self.original_error = original_error

        super().__init__(
            message=message,
            internal_message=internal_message or (
                f"Storage operation '{operation}' failed: {original_error}"
                if operation and original_error
                else None
            ),
        )


# =============================================================================
# Delivery Failures
# =============================================================================

class DeliveryFailure(WebhookServiceError):
    """
    Raised inside the delivery executor when an attempt fails.

    The executor converts it into a failed DeliveryRecord; it never reaches
    API callers.

    Attributes:
        status_code_received: HTTP status returned by the endpoint, 0 if none.
        response_body: Bounded response body, empty for transport errors.
    """

    status_code = 502
    default_error_code = ErrorCode.DELIVERY_FAILED
    default_message = "Webhook delivery failed"

    def __init__(
        self,
        message: Optional[str] = None,
        status_code_received: int = 0,
        response_body: str = "",
        error_code: Optional[ErrorCode] = None,
        original_error: Optional[Exception] = None,
    ):
        self.status_code_received = status_code_received
        self.response_body = response_body
        self.original_error = original_error

        super().__init__(
            message=message,
            error_code=error_code,
            details={"status_code": status_code_received},
            internal_message=str(original_error) if original_error else None,
        )


# =============================================================================
# Utility Functions
# =============================================================================

def is_retryable_status(status_code: int) -> bool:
    """
    Check whether a delivery outcome is worth retrying.

    Args:
        status_code: HTTP status recorded on the delivery, 0 for transport errors.

    Returns:
        True for transport errors, timeouts, throttling and server errors.
    """
    if status_code == 0:
        return True
    if status_code in (408, 425, 429):
        return True
    return 500 <= status_code < 600

