"""FastAPI middleware that captures unhandled exceptions and logs them to the DB.

Every 5xx response is recorded in the error_logs table; 4xx responses are
recorded at WARNING severity.
"""

from __future__ import annotations

import logging
import time
from typing import Optional

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.responses import JSONResponse

from app.models.error_log import ErrorSeverity
from app.services.error_logger import log_error_standalone

logger = logging.getLogger("commission.middleware")

# Webhook bodies carry bank account details
_SENSITIVE_PATHS = {
    "/api/webhooks",
}

# Max body size to capture
_MAX_BODY_SIZE = 4096


class ErrorCaptureMiddleware(BaseHTTPMiddleware):
    """Catches unhandled exceptions, returns 500, and persists the error."""

    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint
    ) -> Response:
        start = time.time()
        request_body: Optional[str] = None

        _is_sensitive = any(request.url.path.startswith(p) for p in _SENSITIVE_PATHS)
        if request.method in ("POST", "PUT", "PATCH") and not _is_sensitive:
            body_bytes = await request.body()
            if len(body_bytes) <= _MAX_BODY_SIZE:
                request_body = body_bytes.decode("utf-8", errors="replace")

        context = dict(
            module="middleware.error_capture",
            request_method=request.method,
            request_path=str(request.url.path),
            request_body=request_body,
            ip_address=request.client.host if request.client else None,
        )

        try:
            response = await call_next(request)
        except Exception as exc:
            elapsed_ms = round((time.time() - start) * 1000, 2)
            severity = ErrorSeverity.CRITICAL if "database" in str(exc).lower() else ErrorSeverity.ERROR
            await log_error_standalone(
                exc, severity=severity, status_code=500, response_time_ms=elapsed_ms, **context
            )
            logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
            return JSONResponse(
                status_code=500,
                content={"detail": {"category": "internal", "reason": "Internal Server Error"}},
            )

        elapsed_ms = round((time.time() - start) * 1000, 2)
        if response.status_code >= 400:
            severity = ErrorSeverity.ERROR if response.status_code >= 500 else ErrorSeverity.WARNING
            await log_error_standalone(
                Exception(f"HTTP {response.status_code} on {request.method} {request.url.path}"),
                severity=severity,
                function_name="dispatch",
                status_code=response.status_code,
                response_time_ms=elapsed_ms,
                **context,
            )
        return response
