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

query_cache_requests_total = Counter(
    "query_cache_requests_total",
    "Query cache lookups by namespace and outcome",
    ["namespace", "outcome"],
)

query_cache_invalidations_total = Counter(
    "query_cache_invalidations_total",
    "Query cache invalidations by namespace",
    ["namespace"],
)

custom_field_value_writes_total = Counter(
    "custom_field_value_writes_total",
    "Custom field value writes by entity type and operation",
    ["entity_type", "operation"],
)

tenant_denied_access_total = Counter(
    "tenant_denied_access_total",
    "Requests denied by tenant scoping",
    ["resource", "action"],
)

collaborator_invites_total = Counter(
    "collaborator_invites_total",
    "Collaborator invite deliveries by outcome",
    ["outcome"],
)

user_limit_rejections_total = Counter(
    "user_limit_rejections_total",
    "Collaborator creations rejected by the license user limit",
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


def observe_query_cache(namespace: str, outcome: str) -> None:
    query_cache_requests_total.labels(namespace=namespace, outcome=outcome).inc()


def observe_query_cache_invalidation(namespace: str, count: int = 1) -> None:
    if count > 0:
        query_cache_invalidations_total.labels(namespace=namespace).inc(count)


def observe_field_value_write(entity_type: str, operation: str) -> None:
    custom_field_value_writes_total.labels(entity_type=entity_type, operation=operation).inc()


def observe_tenant_denied(resource: str, action: str) -> None:
    tenant_denied_access_total.labels(resource=resource, action=action).inc()


def observe_invite(outcome: str) -> None:
    collaborator_invites_total.labels(outcome=outcome).inc()


def observe_user_limit_rejection() -> None:
    user_limit_rejections_total.inc()


def generate_metrics_payload() -> bytes:
    return generate_latest()


def metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
