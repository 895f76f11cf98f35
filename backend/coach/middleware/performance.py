"""Request ID and request timing middleware.

Provides:
- RequestIDMiddleware: Assigns a UUID to every request for log traceability.
- RequestTimingMiddleware: Measures and logs request duration, warns on slow requests.
"""

import logging
import time
import uuid
from typing import Any

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

logger = logging.getLogger(__name__)

# Coached turns include an LLM round trip, so the bar sits well above plain reads
SLOW_REQUEST_THRESHOLD_MS = 15000.0
SLOW_READ_THRESHOLD_MS = 1000.0


class RequestIDMiddleware(BaseHTTPMiddleware):
    """Assign a unique request ID to every request.

    - Reuses an incoming ``X-Request-ID`` header when present.
    - Stores the ID in ``request.state.request_id``.
    - Returns the ID in the ``X-Request-ID`` response header.
    """

    async def dispatch(self, request: Request, call_next: Any) -> Response:
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        request.state.request_id = request_id

        response: Response = await call_next(request)
        response.headers["X-Request-ID"] = request_id
        return response


class RequestTimingMiddleware(BaseHTTPMiddleware):
    """Measure request duration and log performance data.

    - Adds ``X-Response-Time`` header (in milliseconds).
    - Logs a WARNING for POSTs slower than 15 s and reads slower than 1 s.
    """

    async def dispatch(self, request: Request, call_next: Any) -> Response:
        start = time.perf_counter()

        response: Response = await call_next(request)

        duration_ms = (time.perf_counter() - start) * 1000.0
        response.headers["X-Response-Time"] = f"{duration_ms:.2f}ms"

        method = request.method
        threshold = SLOW_REQUEST_THRESHOLD_MS if method == "POST" else SLOW_READ_THRESHOLD_MS
        if duration_ms >= threshold:
            logger.warning(
                "Slow request: %s %s completed in %.2f ms [request_id=%s, status=%d]",
                method,
                request.url.path,
                duration_ms,
                getattr(request.state, "request_id", "unknown"),
                response.status_code,
            )

        return response
