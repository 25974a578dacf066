from __future__ import annotations

import uuid

from opentelemetry import trace
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from app.context import reset_correlation_id, set_correlation_id

CORRELATION_HEADER = "x-correlation-id"
# Checked in order; the first usable value wins.
INCOMING_HEADERS = (CORRELATION_HEADER, "x-request-id")
MAX_CORRELATION_ID_LENGTH = 128


def resolve_correlation_id(request: Request) -> str:
    """Caller-supplied id when it is present and sane, otherwise a fresh uuid4."""
    for header in INCOMING_HEADERS:
        candidate = request.headers.get(header, "").strip()
        if 0 < len(candidate) <= MAX_CORRELATION_ID_LENGTH:
            return candidate
    return str(uuid.uuid4())


class CorrelationIdMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):  # type: ignore[no-untyped-def]
        correlation_id = resolve_correlation_id(request)
        request.state.correlation_id = correlation_id

        server_span = trace.get_current_span()
        if server_span.is_recording():
            server_span.set_attribute("correlation_id", correlation_id)

        token = set_correlation_id(correlation_id)
        try:
            response = await call_next(request)
        finally:
            reset_correlation_id(token)

        response.headers[CORRELATION_HEADER] = correlation_id
        return response
