from __future__ import annotations

import uuid

from opentelemetry import trace
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from app.context import reset_correlation_id, set_correlation_id

CORRELATION_HEADER = "x-correlation-id"
MAX_CORRELATION_ID_LENGTH = 128


def resolve_correlation_id(raw: str | None) -> str:
    """Accept a caller-supplied id when it is printable and bounded; otherwise mint one."""
    candidate = (raw or "").strip()
    if not candidate or len(candidate) > MAX_CORRELATION_ID_LENGTH or not candidate.isprintable():
        return str(uuid.uuid4())
    return candidate


class CorrelationIdMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):  # type: ignore[no-untyped-def]
        correlation_id = resolve_correlation_id(request.headers.get(CORRELATION_HEADER))
        request.state.correlation_id = correlation_id
        token = set_correlation_id(correlation_id)
        span = trace.get_current_span()
        if span.is_recording():
            span.set_attribute("correlation_id", correlation_id)
        try:
            response = await call_next(request)
        finally:
            reset_correlation_id(token)

        response.headers[CORRELATION_HEADER] = correlation_id
        return response
