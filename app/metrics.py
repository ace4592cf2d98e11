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

crm_inactivity_sweeps_total = Counter(
    "crm_inactivity_sweeps_total",
    "Total lead inactivity sweeps by status",
    ["trigger", "status"],
)

crm_inactivity_sweep_duration_seconds = Histogram(
    "crm_inactivity_sweep_duration_seconds",
    "Lead inactivity sweep duration in seconds",
    ["trigger"],
)

crm_tasks_created_total = Counter(
    "crm_tasks_created_total",
    "Total follow-up tasks created by type",
    ["type"],
)

crm_notifications_created_total = Counter(
    "crm_notifications_created_total",
    "Total notifications created by type",
    ["type"],
)

crm_customer_number_retries_total = Counter(
    "crm_customer_number_retries_total",
    "Customer number allocations retried after a unique violation",
)

public_lead_rate_limited_total = Counter(
    "public_lead_rate_limited_total",
    "Public lead submissions rejected by the rate limiter",
)


_UUID_RE = re.compile(
    r"\b[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[1-5][0-9a-fA-F]{3}-[89abAB][0-9a-fA-F]{3}-[0-9a-fA-F]{12}\b"
)
_INT_RE = re.compile(r"/\d+\b")
_TOKEN_RE = re.compile(r"/[0-9a-f]{64}\b")
_PATH_PARAM_RE = re.compile(r"\{[^{}]+\}")


def _normalize_route_template(path: str) -> str:
    return _PATH_PARAM_RE.sub("{id}", path)


def _sanitize_path(path: str) -> str:
    without_uuids = _UUID_RE.sub("{id}", path)
    without_tokens = _TOKEN_RE.sub("/{token}", without_uuids)
    return _INT_RE.sub("/{id}", without_tokens)


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


def observe_inactivity_sweep(trigger: str, status: str, duration: float) -> None:
    crm_inactivity_sweeps_total.labels(trigger=trigger, status=status).inc()
    crm_inactivity_sweep_duration_seconds.labels(trigger=trigger).observe(duration)


def observe_task_created(task_type: str, count: int = 1) -> None:
    if count > 0:
        crm_tasks_created_total.labels(type=task_type).inc(count)


def observe_notification_created(notification_type: str, count: int = 1) -> None:
    if count > 0:
        crm_notifications_created_total.labels(type=notification_type).inc(count)


def observe_customer_number_retry() -> None:
    crm_customer_number_retries_total.inc()


def observe_public_lead_rate_limited() -> None:
    public_lead_rate_limited_total.inc()


def generate_metrics_payload() -> bytes:
    return generate_latest()


def metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
