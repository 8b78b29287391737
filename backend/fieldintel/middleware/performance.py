"""Request ID and request timing middleware.

Provides:
- RequestIDMiddleware: Assigns (or propagates) an ID for every request.
- RequestTimingMiddleware: Logs method, path, status and duration of every request.
- RequestIDLogFilter: Stamps the current request ID onto every log record.
"""

import logging
import time
import uuid
from contextvars import ContextVar
from typing import Any

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

logger = logging.getLogger(__name__)

SLOW_REQUEST_THRESHOLD_MS = 1000.0
REQUEST_ID_HEADER = "X-Request-ID"

request_id_var: ContextVar[str] = ContextVar("request_id", default="-")


def current_request_id() -> str:
    return request_id_var.get()


class RequestIDLogFilter(logging.Filter):
    """Adds ``request_id`` to log records so formatters can include it."""

    def filter(self, record: logging.LogRecord) -> bool:
        if not hasattr(record, "request_id"):
            record.request_id = request_id_var.get()
        return True


class RequestIDMiddleware(BaseHTTPMiddleware):
    """Assign a request ID to every request.

    - Reuses a well-formed incoming ``X-Request-ID`` header.
    - Stores the ID in ``request.state.request_id`` and the logging context.
    - Returns the ID in the ``X-Request-ID`` response header.
    """

    async def dispatch(self, request: Request, call_next: Any) -> Response:
        incoming = request.headers.get(REQUEST_ID_HEADER, "")
        request_id = incoming if 0 < len(incoming) <= 64 else str(uuid.uuid4())
        request.state.request_id = request_id
        token = request_id_var.set(request_id)
        try:
            response: Response = await call_next(request)
        finally:
            request_id_var.reset(token)
        response.headers[REQUEST_ID_HEADER] = request_id
        return response


class RequestTimingMiddleware(BaseHTTPMiddleware):
    """Measure request duration and log it.

    - Adds ``X-Response-Time`` header (in milliseconds).
    - Logs every request at INFO, and at WARNING above 1 s.
    """

    async def dispatch(self, request: Request, call_next: Any) -> Response:
        start = time.perf_counter()
        response: Response = await call_next(request)
        duration_ms = (time.perf_counter() - start) * 1000.0
        response.headers["X-Response-Time"] = f"{duration_ms:.2f}ms"

        level = logging.WARNING if duration_ms >= SLOW_REQUEST_THRESHOLD_MS else logging.INFO
        logger.log(
            level,
            "%s %s -> %d in %.2f ms",
            request.method,
            request.url.path,
            response.status_code,
            duration_ms,
            extra={
                "request_id": getattr(request.state, "request_id", "unknown"),
                "method": request.method,
                "path": request.url.path,
                "status_code": response.status_code,
                "duration_ms": round(duration_ms, 2),
            },
        )
        return response
