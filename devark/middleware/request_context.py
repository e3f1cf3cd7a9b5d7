"""Request context middleware for logging correlation."""

from __future__ import annotations

import time
import uuid
from typing import Awaitable, Callable

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware

from devark.logging import reset_correlation_id, set_correlation_id


class RequestContextMiddleware(BaseHTTPMiddleware):
    """Bind a correlation id to each inbound request."""

    async def dispatch(  # type: ignore[override]
        self,
        request: Request,
        call_next: Callable[[Request], Awaitable[Response]],
    ) -> Response:
        request_id = request.headers.get("x-request-id") or uuid.uuid4().hex
        token = set_correlation_id(request_id)
        request.state.request_id = request_id
        start = time.perf_counter()
        try:
            response = await call_next(request)
        finally:
            request.state.request_duration_ms = (time.perf_counter() - start) * 1000
            reset_correlation_id(token)
        response.headers.setdefault("x-request-id", request_id)
        return response
