"""
Request middleware — correlation IDs, timing and one log line per request.

Response headers:
    X-Request-ID     incoming value echoed back, or a generated one
    X-Process-Time   handler time in milliseconds

Health-check and documentation paths are timed but not logged.
"""

from __future__ import annotations

import logging
import time
import uuid

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

from backend.app.core.logging_config import set_request_context

logger = logging.getLogger(__name__)

_QUIET_PREFIXES = ("/docs", "/redoc", "/openapi", "/favicon", "/health/live")


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Attach request context for downstream loggers and log the outcome."""

    async def dispatch(self, request: Request, call_next) -> Response:
        request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex[:16]
        client_ip = request.client.host if request.client else "unknown"
        path = request.url.path

        set_request_context(
            request_id=request_id,
            client_ip=client_ip,
            endpoint=path,
            method=request.method,
        )
        start = time.perf_counter()

        try:
            response = await call_next(request)
        except Exception:
            logger.error(
                "%s %s → 500 (%.1fms) [%s]",
                request.method, path, (time.perf_counter() - start) * 1000, client_ip,
                extra={"status_code": 500, "endpoint": path},
            )
            raise
        finally:
            set_request_context()

        duration_ms = (time.perf_counter() - start) * 1000
        response.headers["X-Request-ID"] = request_id
        response.headers["X-Process-Time"] = f"{duration_ms:.1f}ms"

        if not path.startswith(_QUIET_PREFIXES):
            logger.log(
                logging.WARNING if response.status_code >= 400 else logging.INFO,
                "%s %s → %d (%.1fms) [%s]",
                request.method, path, response.status_code, duration_ms, client_ip,
                extra={
                    "duration_ms": round(duration_ms, 1),
                    "status_code": response.status_code,
                    "endpoint": path,
                },
            )
        return response
