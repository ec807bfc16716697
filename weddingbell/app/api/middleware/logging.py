"""
FastAPI request logging middleware.

Every HTTP request runs under a correlation ID taken from the
``X-Correlation-ID`` header or generated, so log lines from the route,
services and repositories can be tied together. The ID and the handling
time are echoed back in the response headers.
"""

import time
import uuid
from typing import Callable, Optional, Set

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.types import ASGIApp

from weddingbell.app.utils.logging import clear_correlation_id, get_logger, set_correlation_id

logger = get_logger(__name__)

DEFAULT_EXCLUDED_PATHS = {"/health", "/docs", "/openapi.json", "/redoc", "/favicon.ico"}


class RequestContextMiddleware(BaseHTTPMiddleware):
    """
    Establishes the correlation context and logs each request.

    Applied first so every other middleware and route handler sees the
    correlation ID.
    """

    def __init__(self, app: ASGIApp, excluded_paths: Optional[Set[str]] = None):
        super().__init__(app)
        self.excluded_paths = excluded_paths if excluded_paths is not None else DEFAULT_EXCLUDED_PATHS

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        correlation_id = request.headers.get("x-correlation-id") or str(uuid.uuid4())
        set_correlation_id(correlation_id)
        request.state.correlation_id = correlation_id

        start_time = time.perf_counter()
        log_request = request.url.path not in self.excluded_paths

        try:
            response = await call_next(request)
        except Exception as exc:
            logger.error(
                "Request processing failed",
                method=request.method,
                path=request.url.path,
                error=str(exc),
                error_type=type(exc).__name__,
            )
            raise
        finally:
            clear_correlation_id()

        duration_ms = (time.perf_counter() - start_time) * 1000
        response.headers["X-Correlation-ID"] = correlation_id
        response.headers["X-Response-Time"] = f"{duration_ms:.2f}ms"

        if log_request:
            logger.info(
                "Request completed",
                method=request.method,
                path=request.url.path,
                status_code=response.status_code,
                duration_ms=round(duration_ms, 2),
                client_ip=self._get_client_ip(request),
                correlation_id=correlation_id,
            )
        return response

    @staticmethod
    def _get_client_ip(request: Request) -> str:
        forwarded_for = request.headers.get("x-forwarded-for")
        if forwarded_for:
            return forwarded_for.split(",")[0].strip()
        if request.client:
            return request.client.host
        return "unknown"
