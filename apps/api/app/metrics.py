from __future__ import annotations

import re

from prometheus_client import CONTENT_TYPE_LATEST, Counter, Histogram, generate_latest
from starlette.requests import Request


http_requests_total = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["method", "path", "status"],
)

http_request_duration_seconds = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "path"],
)

crm_deal_transitions_total = Counter(
    "crm_deal_transitions_total",
    "Deal state transitions by kind",
    ["transition", "degraded"],
)

crm_deal_transition_duration_seconds = Histogram(
    "crm_deal_transition_duration_seconds",
    "Deal state transition duration in seconds",
    ["transition"],
)

crm_deal_deletions_total = Counter(
    "crm_deal_deletions_total",
    "Deal cascade deletions by result",
    ["result"],
)

crm_deal_dependents_deleted_total = Counter(
    "crm_deal_dependents_deleted_total",
    "Dependent rows removed by deal cascade deletion",
    ["dependent"],
)

crm_quote_mutations_total = Counter(
    "crm_quote_mutations_total",
    "Quote item mutations by operation",
    ["operation"],
)


_UUID_RE = re.compile(
    r"\b[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[1-5][0-9a-fA-F]{3}-[89abAB][0-9a-fA-F]{3}-[0-9a-fA-F]{12}\b"
)
_INT_RE = re.compile(r"/\d+\b")
_PATH_PARAM_RE = re.compile(r"\{[^{}]+\}")


def _sanitize_path(path: str) -> str:
    without_uuids = _UUID_RE.sub("{id}", path)
    return _INT_RE.sub("/{id}", without_uuids)


def resolve_http_path_label(request: Request) -> str:
    route = request.scope.get("route")
    if route is not None:
        for attribute in ("path_format", "path"):
            value = getattr(route, attribute, None)
            if isinstance(value, str) and value:
                return _PATH_PARAM_RE.sub("{id}", value)
    return _sanitize_path(request.url.path)


def observe_http_request(method: str, path: str, status: int, duration: float) -> None:
    http_requests_total.labels(method=method, path=path, status=str(status)).inc()
    http_request_duration_seconds.labels(method=method, path=path).observe(duration)


def observe_deal_transition(transition: str, degraded: bool, duration: float) -> None:
    crm_deal_transitions_total.labels(transition=transition, degraded=str(degraded).lower()).inc()
    crm_deal_transition_duration_seconds.labels(transition=transition).observe(duration)


def observe_deal_deletion(result: str, dependents: dict[str, int] | None = None) -> None:
    crm_deal_deletions_total.labels(result=result).inc()
    for dependent, count in (dependents or {}).items():
        if count > 0:
            crm_deal_dependents_deleted_total.labels(dependent=dependent).inc(count)


def observe_quote_mutation(operation: str) -> None:
    crm_quote_mutations_total.labels(operation=operation).inc()


def generate_metrics_payload() -> bytes:
    return generate_latest()


def metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
