"""
FastAPI middleware for request context, logging and metrics
"""
import re
import time
import uuid
from typing import Callable

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware

from dealroom.core.logging_config import LoggingConfig
from dealroom.core.metrics import http_request_duration_seconds, http_requests_total

logger = LoggingConfig.get_logger(__name__)

ACTOR_HEADER = "X-Participant-Id"

_UUID_SEGMENT = re.compile(r"/[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{12}")
_DEAL_PATH = re.compile(r"^/api/deals/([0-9a-fA-F-]{36})")


def endpoint_label(path: str) -> str:
    """Collapse ids so metric labels stay bounded"""
    return _UUID_SEGMENT.sub("/{id}", path)


class LoggingContextMiddleware(BaseHTTPMiddleware):
    """Binds request id, acting participant and deal to every log record of the request"""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = request.headers.get("x-request-id") or str(uuid.uuid4())
        deal_match = _DEAL_PATH.match(request.url.path)

        LoggingConfig.set_context(
            request_id=request_id,
            participant_id=request.headers.get(ACTOR_HEADER),
            deal_id=deal_match.group(1) if deal_match else None,
        )
        started = time.perf_counter()
        try:
            response = await call_next(request)
            logger.info(
                f"{request.method} {request.url.path} -> {response.status_code}",
                extra={"duration_ms": int((time.perf_counter() - started) * 1000)}
            )
            response.headers["X-Request-ID"] = request_id
            return response
        except Exception as e:
            logger.error(
                f"{request.method} {request.url.path} failed",
                exc_info=True,
                extra={
                    "error_type": type(e).__name__,
                    "duration_ms": int((time.perf_counter() - started) * 1000),
                }
            )
            raise
        finally:
            LoggingConfig.clear_context()


class MetricsMiddleware(BaseHTTPMiddleware):
    """Middleware to collect HTTP request metrics for Prometheus"""

    async def dispatch(self, request: Request, call_next):
        if request.url.path == "/metrics":
            return await call_next(request)

        started = time.perf_counter()
        status_code = 500
        try:
            response = await call_next(request)
            status_code = response.status_code
            return response
        finally:
            endpoint = endpoint_label(request.url.path)
            http_requests_total.labels(
                method=request.method,
                endpoint=endpoint,
                status_code=str(status_code)
            ).inc()
            http_request_duration_seconds.labels(
                method=request.method,
                endpoint=endpoint
            ).observe(time.perf_counter() - started)
