"""
Request middleware: correlation ids, HTTP metrics and access logging.

The incoming X-Request-ID (or X-Correlation-ID) is reused when present and
always echoed back on the response.
"""

import re
import time
from typing import Callable
from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.types import ASGIApp

from .logging import get_logger, correlation_id_context
from .metrics import http_requests_total, http_request_duration_seconds

logger = get_logger(__name__)

# /orders/42/deliver -> /orders/{id}/deliver
_NUMERIC_SEGMENT = re.compile(r"/\d+")
_UNLOGGED_PREFIXES = ("/health", "/metrics")


def _route_label(path: str) -> str:
    return _NUMERIC_SEGMENT.sub("/{id}", path)


def _observe(method: str, route: str, status: int, elapsed: float) -> None:
    http_requests_total.labels(method=method, endpoint=route, status=status).inc()
    http_request_duration_seconds.labels(method=method, endpoint=route).observe(elapsed)


class ObservabilityMiddleware(BaseHTTPMiddleware):
    def __init__(self, app: ASGIApp, enable_request_logging: bool = True):
        super().__init__(app)
        self.enable_request_logging = enable_request_logging

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        incoming = request.headers.get("X-Request-ID") or request.headers.get("X-Correlation-ID")
        route = _route_label(request.url.path)
        method = request.method

        with correlation_id_context(incoming) as req_id:
            request.state.correlation_id = req_id
            started = time.perf_counter()
            try:
                response = await call_next(request)
            except Exception as exc:
                elapsed = time.perf_counter() - started
                _observe(method, route, 500, elapsed)
                logger.error(
                    "Unhandled error on %s %s (%s)", method, route, type(exc).__name__,
                    extra={"duration_seconds": round(elapsed, 3)},
                    exc_info=True,
                )
                raise

            elapsed = time.perf_counter() - started
            _observe(method, route, response.status_code, elapsed)
            response.headers["X-Request-ID"] = req_id

            if self.enable_request_logging and not request.url.path.startswith(_UNLOGGED_PREFIXES):
                logger.info(
                    "%s %s -> %s", method, route, response.status_code,
                    extra={"duration_seconds": round(elapsed, 3)},
                )
            return response
