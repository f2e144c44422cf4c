"""Access logging with correlation ids.

Every request produces one ``credit_api.access`` record whose ``request``
extra carries method, path, status, latency, the authenticated user and the
request headers with credentials masked.  The correlation id is read from
``X-Correlation-ID`` (or generated) and echoed on the response so that a
billing run or webhook can be traced across services.
"""

from __future__ import annotations

import logging
import time
import uuid
from typing import Any

from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

logger = logging.getLogger("credit_api.access")

CORRELATION_HEADER = "X-Correlation-ID"

_MASKED_HEADERS = frozenset({"authorization", "cookie", "x-api-key", "x-gateway-signature"})


def _masked_headers(request: Request) -> dict[str, str]:
    return {name: "***" if name.lower() in _MASKED_HEADERS else value for name, value in request.headers.items()}


def _level_for(status_code: int) -> int:
    if status_code >= 500:
        return logging.ERROR
    if status_code >= 400:
        return logging.WARNING
    return logging.INFO


def access_record(request: Request, status_code: int, elapsed: float, correlation_id: str) -> dict[str, Any]:
    """Structured fields logged for one finished request."""
    return {
        "correlation_id": correlation_id,
        "method": request.method,
        "path": request.url.path,
        "query": request.url.query or None,
        "status_code": status_code,
        "duration_ms": round(elapsed * 1000, 2),
        "user_id": getattr(request.state, "sub", None),
        "client": request.client.host if request.client else None,
        "headers": _masked_headers(request),
    }


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Emit one access record per request and propagate the correlation id."""

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        correlation_id = request.headers.get(CORRELATION_HEADER) or str(uuid.uuid4())
        request.state.correlation_id = correlation_id
        started = time.perf_counter()
        status_code = 500
        try:
            response = await call_next(request)
            status_code = response.status_code
            response.headers[CORRELATION_HEADER] = correlation_id
            return response
        finally:
            record = access_record(request, status_code, time.perf_counter() - started, correlation_id)
            logger.log(
                _level_for(status_code),
                "%s %s -> %d",
                request.method,
                request.url.path,
                status_code,
                extra={"request": record},
            )
