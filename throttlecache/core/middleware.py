"""HTTP middleware for request ID propagation and request timing.

The middleware:
- Accepts incoming X-Request-ID header or generates a UUID
- Stores request_id in contextvars for access throughout the request lifecycle
- Injects request_id into response headers for client-side tracking
- Measures total request duration, includes it in response headers and
  records it in the app's MetricsRecorder as ``http <METHOD> <path>``
- Clears context after request completion to prevent context leaks

Usage:
    app.middleware("http")(request_id_middleware)
"""

from __future__ import annotations

import uuid

from fastapi import Request, Response

from throttlecache.core.config import settings
from throttlecache.core.logging import clear_request_id, set_request_id
from throttlecache.core.metrics import MetricsRecorder


def _request_metrics(request: Request) -> MetricsRecorder | None:
    throttled = getattr(request.app.state, "throttled_cache", None)
    return throttled.metrics if throttled is not None else None


async def request_id_middleware(request: Request, call_next) -> Response:
    """HTTP middleware for request ID generation and propagation.

    If the client provides an X-Request-ID header (configurable via
    LOG_REQUEST_ID_HEADER), that value is used. Otherwise, a new UUID
    is generated. The ID is then propagated back in the response headers
    and stored in contextvars for log correlation.

    Args:
        request: The incoming HTTP request object.
        call_next: The next middleware/route handler in the stack.

    Returns:
        Response: The response from the next handler with request_id and
            duration headers added.
    """

    header_name = settings.log.request_id_header
    request_id = request.headers.get(header_name) or str(uuid.uuid4())
    set_request_id(request_id)

    metrics = _request_metrics(request) or MetricsRecorder()
    end = metrics.start(f"http {request.method} {request.url.path}")
    try:
        response: Response = await call_next(request)
    finally:
        clear_request_id()
        duration_ms = end()

    response.headers[header_name] = request_id
    response.headers.setdefault("X-Request-Duration-ms", f"{duration_ms:.2f}")
    return response
