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

crm_qualification_evaluations_total = Counter(
    "crm_qualification_evaluations_total",
    "Total contact qualification evaluations by outcome",
    ["outcome"],
)

crm_qualification_evaluation_duration_seconds = Histogram(
    "crm_qualification_evaluation_duration_seconds",
    "Qualification evaluation duration in seconds",
)

crm_qualification_transitions_total = Counter(
    "crm_qualification_transitions_total",
    "Total contacts promoted to MQL",
)

crm_custom_value_coercion_failures_total = Counter(
    "crm_custom_value_coercion_failures_total",
    "Total custom value coercion failures by declared type",
    ["declared_type"],
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
            template = getattr(route, attribute, None)
            if isinstance(template, str) and template:
                return _PATH_PARAM_RE.sub("{id}", template)
    return _sanitize_path(request.url.path)


def observe_http_request(method: str, path: str, status: int, duration: float) -> None:
    http_requests_total.labels(method=method, path=path, status=str(status)).inc()
    http_request_duration_seconds.labels(method=method, path=path).observe(duration)


def observe_qualification_evaluation(outcome: str, duration: float) -> None:
    crm_qualification_evaluations_total.labels(outcome=outcome).inc()
    crm_qualification_evaluation_duration_seconds.observe(duration)


def observe_qualification_transition() -> None:
    crm_qualification_transitions_total.inc()


def observe_coercion_failure(declared_type: str) -> None:
    crm_custom_value_coercion_failures_total.labels(declared_type=declared_type).inc()


def generate_metrics_payload() -> bytes:
    return generate_latest()


def metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
