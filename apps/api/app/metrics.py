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

pipeline_stage_transitions_total = Counter(
    "pipeline_stage_transitions_total",
    "Deal stage transitions by outcome",
    ["outcome"],
)

pipeline_stage_transition_duration_seconds = Histogram(
    "pipeline_stage_transition_duration_seconds",
    "Stage transition duration in seconds",
)

pipeline_automation_executions_total = Counter(
    "pipeline_automation_executions_total",
    "Automation rule executions by action type and result",
    ["action_type", "result"],
)

pipeline_analytics_cache_total = Counter(
    "pipeline_analytics_cache_total",
    "Analytics cache lookups by result",
    ["result"],
)


_INT_RE = re.compile(r"/\d+\b")
_PATH_PARAM_RE = re.compile(r"\{[^{}]+\}")


def _normalize_route_template(path: str) -> str:
    return _PATH_PARAM_RE.sub("{id}", path)


def _sanitize_path(path: str) -> str:
    return _INT_RE.sub("/{id}", path)


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


def observe_stage_transition(outcome: str, duration: float | None = None) -> None:
    pipeline_stage_transitions_total.labels(outcome=outcome).inc()
    if duration is not None:
        pipeline_stage_transition_duration_seconds.observe(duration)


def observe_automation_execution(action_type: str, result: str) -> None:
    pipeline_automation_executions_total.labels(action_type=action_type, result=result).inc()


def observe_cache_lookup(result: str) -> None:
    pipeline_analytics_cache_total.labels(result=result).inc()


def generate_metrics_payload() -> bytes:
    return generate_latest()


def metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
