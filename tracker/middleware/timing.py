"""
Request timing middleware.

Records request duration and logs slow requests.
Adds X-Request-ID and X-Request-Duration-Ms headers to all responses.
"""

import logging
import time
import uuid

from flask import Flask, g, request

logger = logging.getLogger(__name__)

# Endpoints excluded from timing logs (high frequency, low value)
_SKIP_LOG = frozenset({"/api/v1/health", "/api/v1/health/ready"})


def _extract_scope() -> tuple[int | None, int | None]:
    view_args = request.view_args or {}
    project_id = view_args.get("project_id")
    tenant_id = request.args.get("tenant_id", type=int)
    if tenant_id is None and request.is_json:
        payload = request.get_json(silent=True) or {}
        tenant_id = payload.get("tenant_id") if isinstance(payload, dict) else None
    return tenant_id, project_id


def init_request_timing(app: Flask):
    """Register before/after hooks for request timing."""
    slow_ms = app.config.get("SLOW_REQUEST_MS", 1000)

    @app.before_request
    def _start_timer():
        g.request_start = time.perf_counter()
        g.request_id = request.headers.get("X-Request-ID", uuid.uuid4().hex[:12])

    @app.after_request
    def _log_request(response):
        start = getattr(g, "request_start", None)
        if start is None:
            return response

        duration_ms = (time.perf_counter() - start) * 1000
        response.headers["X-Request-Duration-Ms"] = f"{duration_ms:.1f}"
        response.headers["X-Request-ID"] = getattr(g, "request_id", "")

        if request.path in _SKIP_LOG:
            return response

        tenant_id, project_id = _extract_scope()
        extra = {
            "method": request.method,
            "path": request.path,
            "status": response.status_code,
            "duration_ms": duration_ms,
            "remote_addr": request.remote_addr,
            "request_id": getattr(g, "request_id", ""),
            "tenant_id": tenant_id,
            "project_id": project_id,
        }
        if duration_ms > slow_ms:
            logger.warning("Slow request: %s %s %d (%.0fms)",
                           request.method, request.path,
                           response.status_code, duration_ms, extra=extra)
        elif response.status_code >= 500:
            logger.error("Server error: %s %s %d (%.0fms)",
                         request.method, request.path,
                         response.status_code, duration_ms, extra=extra)
        else:
            logger.debug("Request: %s %s %d (%.0fms)",
                         request.method, request.path,
                         response.status_code, duration_ms, extra=extra)
        return response
