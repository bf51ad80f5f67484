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

compliance_requests_total = Counter(
    "compliance_requests_total",
    "Total data-subject requests reaching a terminal status",
    ["kind", "status"],
)

compliance_request_duration_seconds = Histogram(
    "compliance_request_duration_seconds",
    "Data-subject request execution duration in seconds",
    ["kind"],
)

compliance_admission_conflicts_total = Counter(
    "compliance_admission_conflicts_total",
    "Submissions rejected because a request of the same kind is in flight",
    ["kind"],
)

compliance_dispatch_failures_total = Counter(
    "compliance_dispatch_failures_total",
    "Requests that could not be handed to a worker",
    ["kind"],
)

consent_events_total = Counter(
    "consent_events_total",
    "Consent ledger events by type and action",
    ["consent_type", "action"],
)


_UUID_RE = re.compile(
    r"\b[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[1-5][0-9a-fA-F]{3}-[89abAB][0-9a-fA-F]{3}-[0-9a-fA-F]{12}\b"
)
_INT_RE = re.compile(r"/\d+\b")
_PATH_PARAM_RE = re.compile(r"\{[^{}]+\}")


def _normalize_route_template(path: str) -> str:
    return _PATH_PARAM_RE.sub("{id}", path)


def _sanitize_path(path: str) -> str:
    without_uuids = _UUID_RE.sub("{id}", path)
    return _INT_RE.sub("/{id}", without_uuids)


def resolve_http_path_label(request: Request) -> str:
    route = request.scope.get("route")
    if route is not None:
        path_format = getattr(route, "path_format", None)
        if isinstance(path_format, str) and path_format:
            return _normalize_route_template(path_format)
        route_path = getattr(route, "path", None)
        if isinstance(route_path, str) and route_path:
            return _normalize_route_template(route_path)
    return _sanitize_path(request.url.path)


def observe_http_request(method: str, path: str, status: int, duration: float) -> None:
    status_str = str(status)
    http_requests_total.labels(method=method, path=path, status=status_str).inc()
    http_request_duration_seconds.labels(method=method, path=path).observe(duration)


def observe_compliance_request(kind: str, status: str, duration: float) -> None:
    compliance_requests_total.labels(kind=kind, status=status).inc()
    compliance_request_duration_seconds.labels(kind=kind).observe(duration)


def observe_admission_conflict(kind: str) -> None:
    compliance_admission_conflicts_total.labels(kind=kind).inc()


def observe_dispatch_failure(kind: str) -> None:
    compliance_dispatch_failures_total.labels(kind=kind).inc()


def observe_consent_event(consent_type: str, action: str) -> None:
    consent_events_total.labels(consent_type=consent_type, action=action).inc()


def generate_metrics_payload() -> bytes:
    return generate_latest()


def metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
