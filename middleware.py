"""Middleware for request/response processing in runmeter."""
import time
import uuid
import logging
from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware

logger = logging.getLogger("runmeter.middleware")

QUIET_PATHS = ("/health", "/docs", "/openapi.json", "/redoc")


class RequestContextMiddleware(BaseHTTPMiddleware):
    """Stamps every request with an id and a start time and logs its outcome."""

    async def dispatch(self, request: Request, call_next):
        start_time = time.time()
        request_id = request.headers.get("X-Request-ID") or f"req-{uuid.uuid4().hex[:12]}"
        request.state.request_id = request_id
        request.state.start_time = start_time

        path = request.url.path
        status_code = 500
        try:
            response = await call_next(request)
            status_code = response.status_code
            response.headers["X-Request-ID"] = request_id
            return response
        except Exception as e:
            logger.error(f"Request error {request_id}: {str(e)}")
            raise
        finally:
            if request.method != "OPTIONS" and path not in QUIET_PATHS:
                duration_ms = (time.time() - start_time) * 1000
                logger.info(f"{request.method} {path} -> {status_code} in {duration_ms:.1f}ms [{request_id}]")
