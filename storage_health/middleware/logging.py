"""
Request logging middleware.

Every request gets a request ID (taken from ``X-Request-ID`` or generated)
that is bound into the structlog context for the duration of the request
and echoed back in the response headers.
"""

import time
import uuid
from typing import Callable

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.types import ASGIApp

from ..utils.logging import clear_request_context, get_logger, set_request_context

logger = get_logger(__name__)

QUIET_PATHS = frozenset({"/healthz", "/healthz/live", "/healthz/ready"})


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Structured request logging with request ID propagation and timing."""

    def __init__(self, app: ASGIApp, slow_request_threshold_ms: float = 1000):
        super().__init__(app)
        self.slow_request_threshold_ms = slow_request_threshold_ms

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        request.state.request_id = request_id

        path = str(request.url.path)
        start_time = time.perf_counter()
        set_request_context(
            request_id=request_id,
            method=request.method,
            path=path,
            client_ip=request.client.host if request.client else None,
        )

        try:
            response = await call_next(request)
        except Exception as e:
            logger.error(
                "Request failed with exception",
                error=str(e),
                error_type=type(e).__name__,
                duration_ms=round((time.perf_counter() - start_time) * 1000, 2),
                exc_info=True,
            )
            raise
        finally:
            clear_request_context()

        duration_ms = (time.perf_counter() - start_time) * 1000
        if duration_ms > self.slow_request_threshold_ms:
            logger.warning(
                "Slow request detected",
                request_id=request_id,
                method=request.method,
                path=path,
                status_code=response.status_code,
                duration_ms=round(duration_ms, 2),
            )
        elif path not in QUIET_PATHS:
            logger.info(
                "Request completed",
                request_id=request_id,
                method=request.method,
                path=path,
                status_code=response.status_code,
                duration_ms=round(duration_ms, 2),
            )

        response.headers["X-Request-ID"] = request_id
        response.headers["X-Response-Time"] = f"{duration_ms:.2f}ms"
        return response
