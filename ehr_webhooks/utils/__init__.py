"""Utility modules for the EHR webhook service."""

from .logging import (
    StructuredFormatter,
    Timer,
    clear_request_context,
    delivery_fields,
    redact_sensitive_data,
    set_request_context,
    setup_logging,
)
from .validators import validate_event_patterns, validate_url

__all__ = [
    # Logging utilities
    "setup_logging",
    "set_request_context",
    "clear_request_context",
    "delivery_fields",
    "redact_sensitive_data",
    "StructuredFormatter",
    "Timer",
    # Validators
    "validate_url",
    "validate_event_patterns",
]
