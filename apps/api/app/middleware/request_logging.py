from __future__ import annotations

import logging
import time
from typing import Any

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from app.metrics import observe_http_request, resolve_http_path_label


logger = logging.getLogger("app.request")


def _request_fields(request: Request, status_code: int, duration: float) -> dict[str, Any]:
    # Path params and the route are only known once the router has matched.
    path_params = request.scope.get("path_params") or {}
    return {
        "method": request.method,
        "path": resolve_http_path_label(request),
        "status_code": status_code,
        "duration_ms": round(duration * 1000, 2),
        "tenant_id": request.headers.get("x-tenant-id"),
        "entity_kind": path_params.get("entity_kind"),
    }


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):  # type: ignore[no-untyped-def]
        started = time.perf_counter()
        try:
            response = await call_next(request)
        except Exception:
            fields = _request_fields(request, 500, time.perf_counter() - started)
            observe_http_request(method=fields["method"], path=fields["path"], status=500, duration=fields["duration_ms"] / 1000)
            logger.error("http.error", exc_info=True, extra=fields)
            raise

        fields = _request_fields(request, response.status_code, time.perf_counter() - started)
        observe_http_request(
            method=fields["method"],
            path=fields["path"],
            status=response.status_code,
            duration=fields["duration_ms"] / 1000,
        )
        logger.info("http.request", extra=fields)
        return response
