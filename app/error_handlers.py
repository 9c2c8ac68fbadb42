"""
Exception handlers for the webhook management API.

Every error leaves the API as:
{
    "success": false,
    "error": "Human-readable message",
    "error_code": "MACHINE_READABLE_CODE",
    "details": {}  # only keys listed in SAFE_DETAIL_KEYS
}

Request validation failures are reported as 400 VALIDATION_ERROR. Messages
that mention signing material, credentials or connection strings are replaced
with a generic message, and source paths are masked.
"""

import logging
import re
import uuid
from typing import Any, Dict, List, Optional, Sequence

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import ValidationError as PydanticValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException

from ehr_webhooks.config import get_settings
from ehr_webhooks.exceptions import ErrorCode, WebhookServiceError

logger = logging.getLogger(__name__)

GENERIC_MESSAGE = "An error occurred while processing your request"
MAX_MESSAGE_LENGTH = 500
MAX_ERRORS = 10

# Signing material, credentials and backend connection strings
SENSITIVE_REGEX = re.compile(
    r"secret|whsec_|sha256=|signature=|bearer|token|password|credential|api[_-]?key"
    r"|rediss?://|postgres(?:ql)?://",
    re.IGNORECASE,
)
SOURCE_PATH_REGEX = re.compile(r"(?<![:/\w])[/\\][\w./\\-]+\.py\b")

SAFE_DETAIL_KEYS = frozenset({
    "field", "value", "resource_type", "resource_id",
    "status_code", "errors", "error_reference",
})

FIELD_ERROR_MESSAGES = {
    "missing": "Field '{field}' is required",
    "string_type": "Field '{field}' must be a string",
    "int_type": "Field '{field}' must be an integer",
    "int_parsing": "Field '{field}' must be an integer",
    "list_type": "Field '{field}' must be a list",
}


def sanitize_error_message(message: str) -> str:
    """Mask sensitive messages and source paths, and cap the length."""
    if not message:
        return message
    if SENSITIVE_REGEX.search(message):
        return GENERIC_MESSAGE
    message = SOURCE_PATH_REGEX.sub("[path]", message)
    if len(message) > MAX_MESSAGE_LENGTH:
        message = message[:MAX_MESSAGE_LENGTH] + "..."
    return message


def sanitize_details(details: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """Keep only whitelisted detail keys with scalar or list values."""
    sanitized: Dict[str, Any] = {}
    for key, value in (details or {}).items():
        if key not in SAFE_DETAIL_KEYS:
            continue
        if isinstance(value, str):
            sanitized[key] = sanitize_error_message(value)
        elif isinstance(value, (int, float, bool)):
            sanitized[key] = value
        elif isinstance(value, list):
            sanitized[key] = [v for v in value if isinstance(v, (str, int, float, bool, dict))][:MAX_ERRORS]
    return sanitized


def format_pydantic_errors(errors: Sequence[Dict[str, Any]]) -> List[Dict[str, str]]:
    """Turn pydantic errors into [{"field": ..., "message": ...}], at most MAX_ERRORS."""
    formatted = []
    for error in errors[:MAX_ERRORS]:
        parts = [str(p) for p in error.get("loc", ()) if p not in ("body", "query", "path", "header")]
        field = ".".join(parts) or "request"
        template = FIELD_ERROR_MESSAGES.get(error.get("type", ""))
        if template:
            message = template.format(field=field)
        else:
            message = sanitize_error_message(error.get("msg", "Invalid value"))
        formatted.append({"field": field, "message": message})
    return formatted


def create_error_response(
    status_code: int,
    error: str,
    error_code: ErrorCode,
    details: Optional[Dict[str, Any]] = None,
) -> JSONResponse:
    content: Dict[str, Any] = {
        "success": False,
        "error": sanitize_error_message(error),
        "error_code": error_code.value,
    }
    safe_details = sanitize_details(details)
    if safe_details:
        content["details"] = safe_details
    return JSONResponse(status_code=status_code, content=content)


def _request_fields(request: Request, **fields: Any) -> Dict[str, Any]:
    return {"http_method": request.method, "http_path": request.url.path, **fields}


# =============================================================================
# Exception Handlers
# =============================================================================

async def webhook_exception_handler(request: Request, exc: WebhookServiceError) -> JSONResponse:
    """Return the client-safe message; internal details only go to the log."""
    extra = _request_fields(request, error_code=exc.error_code.value)
    if exc.status_code >= 500:
        logger.error(
            f"{exc.__class__.__name__}: {exc.internal_message or exc.message}",
            exc_info=True,
            extra=extra,
        )
    else:
        logger.warning(f"{exc.__class__.__name__}: {exc.message}", extra=extra)

    return create_error_response(exc.status_code, exc.message, exc.error_code, exc.details)


async def validation_exception_handler(
    request: Request,
    exc: Exception,
) -> JSONResponse:
    """Report request and model validation failures as 400 VALIDATION_ERROR."""
    errors = format_pydantic_errors(exc.errors())
    logger.warning(
        f"Validation failed with {len(errors)} error(s)",
        extra=_request_fields(request, error_code=ErrorCode.VALIDATION_ERROR.value),
    )
    message = errors[0]["message"] if len(errors) == 1 else f"Validation failed with {len(errors)} error(s)"
    return create_error_response(
        status.HTTP_400_BAD_REQUEST,
        message,
        ErrorCode.VALIDATION_ERROR,
        {"errors": errors},
    )


async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    """Render routing errors (unknown path, wrong method) in the standard shape."""
    if exc.status_code == status.HTTP_404_NOT_FOUND:
        error_code = ErrorCode.RESOURCE_NOT_FOUND
    elif exc.status_code < 500:
        error_code = ErrorCode.VALIDATION_ERROR
    else:
        error_code = ErrorCode.INTERNAL_ERROR
    detail = exc.detail if isinstance(exc.detail, str) else str(exc.detail)

    logger.log(
        logging.ERROR if exc.status_code >= 500 else logging.WARNING,
        f"HTTP {exc.status_code}: {detail}",
        extra=_request_fields(request, error_code=error_code.value),
    )
    return create_error_response(exc.status_code, detail, error_code)


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """
    Log the exception under a short reference and return a generic 500.

    Outside production the exception type name is included in the message.
    """
    error_reference = uuid.uuid4().hex[:8]
    logger.error(
        f"Unhandled exception [ref:{error_reference}]: {exc}",
        exc_info=True,
        extra=_request_fields(request, error_reference=error_reference),
    )

    if get_settings().is_production:
        message = "An unexpected error occurred. Please try again later."
    else:
        message = f"Internal server error: {type(exc).__name__}"

    return create_error_response(
        status.HTTP_500_INTERNAL_SERVER_ERROR,
        message,
        ErrorCode.INTERNAL_ERROR,
        {"error_reference": error_reference},
    )


def register_exception_handlers(app: FastAPI) -> None:
    """Register all exception handlers with the FastAPI application."""
    app.add_exception_handler(WebhookServiceError, webhook_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(PydanticValidationError, validation_exception_handler)
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)
