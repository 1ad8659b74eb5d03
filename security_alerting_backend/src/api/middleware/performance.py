from __future__ import annotations

import logging
import time
from typing import Any, Dict, Optional

from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

from src.api.state import get_state

logger = logging.getLogger(__name__)

DEFAULT_THRESHOLD_MS = 5000

# "METHOD /route/path" -> monitoring profile
CRITICAL_ENDPOINTS: Dict[str, Dict[str, Any]] = {
    "POST /api/auth/login": {"category": "auth", "critical": True, "threshold": 2000},
    "POST /api/auth/register": {"category": "auth", "critical": True, "threshold": 3000},
    "POST /api/auth/refresh-token": {"category": "auth", "critical": True, "threshold": 1000},
    "GET /api/auth/me": {"category": "auth", "critical": True, "threshold": 500},
    "POST /api/auth/logout": {"category": "auth", "critical": False, "threshold": 1000},
    "GET /api/dashboard/quick-stats": {"category": "dashboard", "critical": True, "threshold": 1500},
    "GET /api/dashboard/tasks-metrics": {"category": "dashboard", "critical": True, "threshold": 2000},
    "GET /api/dashboard/leads-metrics": {"category": "dashboard", "critical": True, "threshold": 2000},
    "GET /api/dashboard/financial-metrics": {"category": "dashboard", "critical": True, "threshold": 2500},
    "GET /api/dashboard/system-metrics": {"category": "dashboard", "critical": True, "threshold": 1000},
    "GET /api/dashboard/notifications": {"category": "dashboard", "critical": False, "threshold": 1000},
    "POST /api/2fa/enable": {"category": "2fa", "critical": True, "threshold": 2000},
    "POST /api/2fa/verify": {"category": "2fa", "critical": True, "threshold": 1000},
    "POST /api/2fa/disable": {"category": "2fa", "critical": True, "threshold": 1500},
    "GET /api/health": {"category": "system", "critical": False, "threshold": 200},
}


def _route_path(request: Request) -> str:
    route = request.scope.get("route")
    return getattr(route, "path", None) or request.url.path


def _client_ip(request: Request) -> Optional[str]:
    return request.client.host if request.client else None


class PerformanceMiddleware(BaseHTTPMiddleware):
    """
    Times every request and reports slow or failing ones to the alert service.

    Reporting happens after the response is produced and never changes it.
    """

    def __init__(self, app, endpoints: Optional[Dict[str, Dict[str, Any]]] = None):
        super().__init__(app)
        self._endpoints = CRITICAL_ENDPOINTS if endpoints is None else endpoints

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        started = time.perf_counter()
        try:
            response = await call_next(request)
        except Exception:
            self._record(request, 500, (time.perf_counter() - started) * 1000.0)
            raise
        self._record(request, response.status_code, (time.perf_counter() - started) * 1000.0)
        return response

    def _record(self, request: Request, status_code: int, duration_ms: float) -> None:
        path = _route_path(request)
        endpoint = f"{request.method} {path}"
        profile = self._endpoints.get(endpoint) or {}
        threshold = profile.get("threshold") or DEFAULT_THRESHOLD_MS
        critical = bool(profile.get("critical"))
        slow = duration_ms > threshold
        error = status_code >= 400

        if not (slow or error):
            return

        try:
            if error:
                logger.error("Request failed endpoint=%s status=%s duration=%.2fms", endpoint, status_code, duration_ms)
            else:
                logger.warning(
                    "Slow request endpoint=%s duration=%.2fms threshold=%sms critical=%s",
                    endpoint,
                    duration_ms,
                    threshold,
                    critical,
                )
            if slow and critical:
                logger.error(
                    "Critical endpoint %s took %.0fms (threshold: %sms)", endpoint, duration_ms, threshold
                )

            get_state(request.app).alert_service.record_performance_issue(
                {
                    "endpoint": path,
                    "duration": duration_ms,
                    "statusCode": status_code,
                    "critical": critical,
                    "method": request.method,
                    "userId": getattr(request.state, "user_id", None),
                    "ip": _client_ip(request),
                }
            )
        except Exception:
            logger.exception("Error recording performance metrics endpoint=%s", endpoint)
