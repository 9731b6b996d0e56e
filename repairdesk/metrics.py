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

service_sheet_saves_total = Counter(
    "service_sheet_saves_total",
    "Service sheet reconciliations by outcome",
    ["outcome"],
)

service_sheet_save_duration_seconds = Histogram(
    "service_sheet_save_duration_seconds",
    "Service sheet reconciliation duration in seconds",
)

service_sheet_mutations_total = Counter(
    "service_sheet_mutations_total",
    "Tray item mutations applied by reconciliation",
    ["operation"],
)

service_sheet_audit_failures_total = Counter(
    "service_sheet_audit_failures_total",
    "Suppressed audit or enrichment failures by event type",
    ["event_type"],
)

reference_cache_lookups_total = Counter(
    "reference_cache_lookups_total",
    "Reference cache lookups by result",
    ["result"],
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


def observe_service_sheet_save(outcome: str, duration: float) -> None:
    service_sheet_saves_total.labels(outcome=outcome).inc()
    service_sheet_save_duration_seconds.observe(duration)


def observe_service_sheet_mutations(operation: str, count: int = 1) -> None:
    if count > 0:
        service_sheet_mutations_total.labels(operation=operation).inc(count)


def observe_service_sheet_audit_failure(event_type: str) -> None:
    service_sheet_audit_failures_total.labels(event_type=event_type).inc()


def observe_reference_cache_lookup(result: str) -> None:
    reference_cache_lookups_total.labels(result=result).inc()


def generate_metrics_payload() -> bytes:
    return generate_latest()


def metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
