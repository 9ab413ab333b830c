"""
Request middleware — logging, timing, correlation IDs.

Provides:
    • X-Request-ID header injection (correlation ID)
    • Request/response timing (X-Process-Time header)
    • Caller subject id in the log context (from the identity header)
"""

from __future__ import annotations

import logging
import time
import uuid

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

from backend.carenest.core.logging_config import set_request_context

logger = logging.getLogger(__name__)

IDENTITY_HEADER = "X-Subject-Id"


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """
    Log every request with timing, inject correlation ID.

    Request log entry includes:
        - method, path, status_code
        - duration_ms
        - subject id supplied by the identity provider (if any)
    """

    async def dispatch(self, request: Request, call_next) -> Response:
        request_id = request.headers.get("X-Request-ID", uuid.uuid4().hex[:16])
        subject_id = request.headers.get(IDENTITY_HEADER)
        path = request.url.path

        set_request_context(
            request_id=request_id,
            subject_id=subject_id,
            endpoint=path,
            method=request.method,
        )

        start = time.perf_counter()

        try:
            response = await call_next(request)
        except Exception:
            duration_ms = (time.perf_counter() - start) * 1000
            logger.error(
                "%s %s → 500 (%.1fms)",
                request.method, path, duration_ms,
                extra={"duration_ms": duration_ms, "status_code": 500},
            )
            raise

        duration_ms = (time.perf_counter() - start) * 1000

        response.headers["X-Request-ID"] = request_id
        response.headers["X-Process-Time"] = f"{duration_ms:.1f}ms"

        if not path.startswith("/health"):
            log_level = logging.WARNING if response.status_code >= 400 else logging.INFO
            logger.log(
                log_level,
                "%s %s → %d (%.1fms)",
                request.method, path, response.status_code, duration_ms,
                extra={
                    "duration_ms": duration_ms,
                    "status_code": response.status_code,
                    "endpoint": path,
                },
            )

        set_request_context()

        return response
