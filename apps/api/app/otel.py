from __future__ import annotations

import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any

from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import (
    BatchSpanProcessor,
    ConsoleSpanExporter,
    SimpleSpanProcessor,
)
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter

from app.context import get_correlation_id
from app.core.config import get_settings


_configured = False
_provider: TracerProvider | None = None
_deal_tracer = trace.get_tracer("app.crm.deals")


def _get_or_create_provider() -> TracerProvider:
    global _provider

    if _provider is not None:
        return _provider

    settings = get_settings()
    _provider = TracerProvider(
        resource=Resource.create(
            {
                "service.name": settings.otel_service_name,
                "service.version": settings.app_version,
                "deployment.environment": settings.app_env,
            }
        )
    )
    trace.set_tracer_provider(_provider)
    return _provider


def setup_otel() -> TracerProvider | None:
    global _configured

    settings = get_settings()
    if not settings.otel_enabled:
        return None

    provider = _get_or_create_provider()
    if _configured:
        return provider

    if settings.otel_exporter_otlp_endpoint:
        provider.add_span_processor(
            BatchSpanProcessor(OTLPSpanExporter(endpoint=settings.otel_exporter_otlp_endpoint))
        )
    if settings.otel_console_exporter:
        provider.add_span_processor(SimpleSpanProcessor(ConsoleSpanExporter()))

    _configured = True
    return provider


def setup_inmemory_otel() -> InMemorySpanExporter:
    exporter = InMemorySpanExporter()
    _get_or_create_provider().add_span_processor(SimpleSpanProcessor(exporter))
    return exporter


@contextmanager
def deal_span(name: str, deal_id: uuid.UUID, correlation_id: str | None = None, **attributes: Any) -> Iterator[trace.Span]:
    """Span around a deal operation, tagged with the deal and request correlation id."""
    with _deal_tracer.start_as_current_span(name) as span:
        span.set_attribute("deal_id", str(deal_id))
        correlation_id = correlation_id or get_correlation_id()
        if correlation_id:
            span.set_attribute("correlation_id", correlation_id)
        for key, value in attributes.items():
            span.set_attribute(key, value)
        yield span


def get_fastapi_server_request_hook():
    def server_request_hook(span, scope: dict[str, Any]) -> None:  # type: ignore[no-untyped-def]
        if span is None or not span.is_recording():
            return
        headers = dict(scope.get("headers", []))
        correlation_raw = headers.get(b"x-correlation-id")
        if correlation_raw:
            span.set_attribute("correlation_id", correlation_raw.decode("utf-8"))

    return server_request_hook
