from __future__ import annotations

import uuid

from opentelemetry import trace
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from app.context import RequestContext, reset_correlation_id, set_correlation_id

MAX_CORRELATION_ID_LENGTH = 128


def _resolve_correlation_id(raw: str | None) -> str:
    if raw:
        candidate = raw.strip()[:MAX_CORRELATION_ID_LENGTH]
        if candidate and candidate.isprintable():
            return candidate
    return str(uuid.uuid4())


class CorrelationIdMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):  # type: ignore[no-untyped-def]
        correlation_id = _resolve_correlation_id(request.headers.get("x-correlation-id"))
        request.state.correlation_id = correlation_id
        request.state.context = RequestContext(request_id=str(uuid.uuid4()), correlation_id=correlation_id)
        token = set_correlation_id(correlation_id)
        span = trace.get_current_span()
        if span is not None and span.is_recording():
            span.set_attribute("correlation_id", correlation_id)
        try:
            response = await call_next(request)
        finally:
            reset_correlation_id(token)

        response.headers["x-correlation-id"] = correlation_id
        response.headers["x-request-id"] = request.state.context.request_id
        return response
