"""Access audit logging middleware.

Logs every request to call-data endpoints with structured JSON including
timestamp, caller identity, resource accessed, HTTP method, and response status.
"""

import json
import logging
import time

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response


logger = logging.getLogger("callwatch.audit")

# Paths that expose call records, transcripts or alert contents
AUDITED_PATHS = [
    "/api/dashboard",
    "/api/monitor",
    "/api/voice/calls",
]


class AccessAuditMiddleware(BaseHTTPMiddleware):
    """Middleware that logs access to call-data endpoints.

    Every request matching an audited path prefix is logged with:
    - event: "call_data_access"
    - timestamp: Unix timestamp
    - method: HTTP method
    - path: Request path
    - caller_ip: Client IP address
    - authenticated: whether an X-API-Key header was sent
    - status_code: Response status code
    - duration_ms: Request duration in milliseconds
    """

    async def dispatch(self, request: Request, call_next) -> Response:
        start_time = time.time()
        response = await call_next(request)
        duration_ms = (time.time() - start_time) * 1000

        if any(request.url.path.startswith(prefix) for prefix in AUDITED_PATHS):
            audit_entry = {
                "event": "call_data_access",
                "timestamp": time.time(),
                "method": request.method,
                "path": str(request.url.path),
                "caller_ip": request.client.host if request.client else "unknown",
                "authenticated": "X-API-Key" in request.headers,
                "status_code": response.status_code,
                "duration_ms": round(duration_ms, 2),
            }
            logger.info(json.dumps(audit_entry))

        return response
