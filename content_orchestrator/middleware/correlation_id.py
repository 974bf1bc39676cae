# Correlation-ID middleware: take X-Correlation-ID from the request or generate one; bind it to the log context and echo it back.
import uuid
from typing import Callable

import structlog.contextvars
from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware

HEADER_CORRELATION_ID = "X-Correlation-ID"


class CorrelationIdMiddleware(BaseHTTPMiddleware):
    """Bind correlation_id for the request's logs and set the response header."""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        correlation_id = request.headers.get(HEADER_CORRELATION_ID, "").strip() or str(uuid.uuid4())
        structlog.contextvars.clear_contextvars()
        structlog.contextvars.bind_contextvars(correlation_id=correlation_id, path=request.url.path)
        try:
            response = await call_next(request)
        finally:
            structlog.contextvars.unbind_contextvars("path")
        response.headers[HEADER_CORRELATION_ID] = correlation_id
        return response
