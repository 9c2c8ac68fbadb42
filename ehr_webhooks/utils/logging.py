"""
Logging for the EHR webhook service.

Every record leaving the process carries the request and tenant it was
emitted for, and delivery logs carry the endpoint, event and attempt they
describe as structured fields. Signing secrets and signatures are redacted
before formatting.
"""

import json
import logging
import re
import sys
import time
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from ehr_webhooks.config import LoggingSettings

request_id_var: ContextVar[Optional[str]] = ContextVar("request_id", default=None)
tenant_id_var: ContextVar[Optional[str]] = ContextVar("tenant_id", default=None)

REDACTED = "[REDACTED]"

SENSITIVE_PATTERNS = [
    re.compile(r"sha256=[0-9a-f]{16,}", re.IGNORECASE),
    re.compile(r"""(["']?secret["']?\s*[:=]\s*)["']?[^\s,'"}]+""", re.IGNORECASE),
    re.compile(r"bearer\s+[\w.~+/-]+=*", re.IGNORECASE),
    re.compile(r"(redis(?:s)?://[^:/@\s]*:)[^@\s]+(@)", re.IGNORECASE),
]

# Structured fields a delivery log may carry
DELIVERY_FIELDS = ("endpoint_id", "event_id", "event_type", "delivery_id", "attempt", "status_code")

_STANDARD_ATTRS = frozenset(
    logging.LogRecord("", 0, "", 0, "", None, None).__dict__
) | {"message", "asctime", "request_id", "tenant_id"}


def redact_sensitive_data(message: str) -> str:
    """Replace signatures, secrets, bearer tokens and connection passwords with [REDACTED]."""
    if not message:
        return message
    for pattern in SENSITIVE_PATTERNS:
        if pattern.groups == 2:
            message = pattern.sub(rf"\1{REDACTED}\2", message)
        elif pattern.groups == 1:
            message = pattern.sub(rf"\1{REDACTED}", message)
        else:
            message = pattern.sub(REDACTED, message)
    return message


def delivery_fields(
    endpoint_id: str,
    event_id: Optional[str] = None,
    event_type: Optional[str] = None,
    **fields: Any,
) -> Dict[str, Any]:
    """
    Build the ``extra`` mapping for a delivery log line.

    Usage:
        logger.info("Webhook delivered", extra=delivery_fields(endpoint.id, event.id))
    """
    extra: Dict[str, Any] = {"endpoint_id": endpoint_id}
    if event_id is not None:
        extra["event_id"] = event_id
    if event_type is not None:
        extra["event_type"] = event_type
    extra.update({k: v for k, v in fields.items() if v is not None})
    return extra


class RequestContextFilter(logging.Filter):
    """Stamp records with the current request and tenant."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.request_id = request_id_var.get() or "-"
        # Records about a specific tenant's delivery keep their own tenant
        if not getattr(record, "tenant_id", None):
            record.tenant_id = tenant_id_var.get() or "-"
        return True


class SensitiveDataFilter(logging.Filter):
    """Redact the rendered message so secrets in args are caught too."""

    def filter(self, record: logging.LogRecord) -> bool:
        try:
            message = record.getMessage()
        except (TypeError, ValueError):
            # Left for the handler to report
            return True
        redacted = redact_sensitive_data(message)
        if redacted != message:
            record.msg = redacted
            record.args = None
        return True


class StructuredFormatter(logging.Formatter):
    """
    Render records as one JSON object per line, or as a single text line.

    JSON output looks like:
    {"timestamp": "...", "level": "INFO", "logger": "ehr_webhooks.webhooks.delivery",
     "service": "ehr-webhooks", "request_id": "-", "tenant_id": "tenant-a",
     "message": "Webhook delivered", "delivery": {"endpoint_id": "...", "event_id": "..."}}

    Text output keeps the same fields, with delivery fields as key=value pairs.
    """

    def __init__(self, service_name: str = "ehr-webhooks", json_output: bool = True):
        super().__init__()
        self.service_name = service_name
        self.json_output = json_output

    def _split_extra(self, record: logging.LogRecord):
        delivery: Dict[str, Any] = {}
        extra: Dict[str, Any] = {}
        for key, value in record.__dict__.items():
            if key in _STANDARD_ATTRS or key.startswith("_"):
                continue
            if key in DELIVERY_FIELDS:
                delivery[key] = value
            else:
                extra[key] = value
        return delivery, extra

    def format(self, record: logging.LogRecord) -> str:
        delivery, extra = self._split_extra(record)
        timestamp = datetime.fromtimestamp(record.created, timezone.utc)

        if not self.json_output:
            line = (
                f"{timestamp:%Y-%m-%d %H:%M:%S} {record.levelname:<8} "
                f"[{getattr(record, 'request_id', '-')}] [{getattr(record, 'tenant_id', '-')}] "
                f"{record.name} - {record.getMessage()}"
            )
            pairs = " ".join(f"{k}={v}" for k, v in {**delivery, **extra}.items())
            if pairs:
                line += f" | {pairs}"
            if record.exc_info:
                line += "\n" + self.formatException(record.exc_info)
            return line

        log_data: Dict[str, Any] = {
            "timestamp": timestamp.isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "service": self.service_name,
            "request_id": getattr(record, "request_id", "-"),
            "tenant_id": getattr(record, "tenant_id", "-"),
            "message": record.getMessage(),
        }
        if delivery:
            log_data["delivery"] = delivery
        if extra:
            log_data["extra"] = extra
        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)
        return json.dumps(log_data, default=str, ensure_ascii=False)


def setup_logging(
    settings: Optional[LoggingSettings] = None,
    service_name: str = "ehr-webhooks",
    json_output: Optional[bool] = None,
) -> logging.Logger:
    """
    Install the service's stdout handler on the root logger.

    Safe to call more than once; earlier handlers are replaced.

    Args:
        settings: Logging settings (read from the environment when omitted)
        service_name: Value of the "service" field
        json_output: Force JSON or text output (defaults to LOG_FORMAT_JSON)
    """
    settings = settings or LoggingSettings()
    level = logging.getLevelName(settings.log_level)
    if json_output is None:
        json_output = settings.log_format_json

    handler = logging.StreamHandler(sys.stdout)
    handler.addFilter(RequestContextFilter())
    handler.addFilter(SensitiveDataFilter())
    handler.setFormatter(StructuredFormatter(service_name, json_output=json_output))

    root_logger = logging.getLogger()
    root_logger.handlers = [handler]
    root_logger.setLevel(level)

    for noisy in ("httpx", "httpcore", "uvicorn.access"):
        logging.getLogger(noisy).setLevel(logging.WARNING)

    return root_logger


def set_request_context(request_id: Optional[str] = None, tenant_id: Optional[str] = None) -> None:
    if request_id is not None:
        request_id_var.set(request_id)
    if tenant_id is not None:
        tenant_id_var.set(tenant_id)


def clear_request_context() -> None:
    request_id_var.set(None)
    tenant_id_var.set(None)


class Timer:
    """
    Time a block and log its duration on exit.

    Usage:
        with Timer("fan-out", logger, event_id=event.id) as timer:
            ...
        timer.elapsed_ms
    """

    def __init__(
        self,
        name: str,
        logger: Optional[logging.Logger] = None,
        log_level: int = logging.DEBUG,
        **fields: Any,
    ):
        self.name = name
        self.logger = logger
        self.log_level = log_level
        self.fields = fields
        self.start_time: Optional[float] = None
        self.elapsed_ms: float = 0

    def __enter__(self) -> "Timer":
        self.start_time = time.perf_counter()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        if self.start_time is not None:
            self.elapsed_ms = (time.perf_counter() - self.start_time) * 1000
        if self.logger:
            self.logger.log(
                self.log_level,
                f"{self.name} completed in {self.elapsed_ms:.2f}ms",
                extra={
                    **self.fields,
                    "operation": self.name,
                    "duration_ms": round(self.elapsed_ms, 2),
                    "success": exc_type is None,
                },
            )
