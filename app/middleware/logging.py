"""
Request logging middleware for the webhook management API.

Provides:
- Request ID generation and propagation
- Tenant context from the X-Tenant-ID header
- Request/response logging with response time
- Health check endpoint exclusion
"""

import logging
import time
import uuid
from typing import Callable, Optional, Set

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware

from ehr_webhooks.utils.logging import clear_request_context, set_request_context

logger = logging.getLogger(__name__)

TENANT_HEADER = "X-Tenant-ID"


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """
    Middleware for structured request logging.

    Features:
    - Generates unique request IDs for tracing
    - Binds the calling tenant to the logging context
    - Logs request method, path, status code, and response time
    - Adds X-Request-ID and X-Response-Time headers to responses
    """

    DEFAULT_EXCLUDE_PATHS: Set[str] = frozenset({
        "/",
        "/health",
        "/docs",
        "/openapi.json",
        "/redoc",
        "/favicon.ico",
    })

    def __init__(self, app, exclude_paths: Optional[Set[str]] = None):
        super().__init__(app)
        self.exclude_paths = exclude_paths or self.DEFAULT_EXCLUDE_PATHS

    def _get_request_id(self, request: Request) -> str:
        """Use the upstream request ID when present, otherwise generate one."""
        return request.headers.get("X-Request-ID") or str(uuid.uuid4())

    def _get_log_level(self, status_code: int) -> int:
        if status_code >= 500:
            return logging.ERROR
        elif status_code >= 400:
            return logging.WARNING
        return logging.INFO

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = self._get_request_id(request)
        tenant_id = request.headers.get(TENANT_HEADER) or request.query_params.get("tenant_id")

        set_request_context(request_id=request_id, tenant_id=tenant_id)
        request.state.request_id = request_id

        method = request.method
        path = request.url.path
        start_time = time.perf_counter()

        try:
            response = await call_next(request)
            duration_ms = (time.perf_counter() - start_time) * 1000

            response.headers["X-Request-ID"] = request_id
            response.headers["X-Response-Time"] = f"{duration_ms:.2f}ms"

            if path not in self.exclude_paths or response.status_code >= 400:
                logger.log(
                    self._get_log_level(response.status_code),
                    f"{method} {path} {response.status_code} ({duration_ms:.2f}ms)",
                    extra={
                        "event": "http_request",
                        "http_method": method,
                        "http_path": path,
                        "http_status": response.status_code,
                        "duration_ms": round(duration_ms, 2),
                    },
                )
            return response

        except Exception as exc:
            duration_ms = (time.perf_counter() - start_time) * 1000
            logger.error(
                f"{method} {path} FAILED ({duration_ms:.2f}ms): {type(exc).__name__}",
                extra={
                    "event": "http_request_error",
                    "http_method": method,
                    "http_path": path,
                    "duration_ms": round(duration_ms, 2),
                },
                exc_info=True,
            )
            raise

        finally:
            clear_request_context()
