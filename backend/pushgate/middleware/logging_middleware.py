"""
Request Logging Middleware

Middleware that:
- Generates a correlation id for each request (or reuses X-Request-ID)
- Logs request start and end with timing
- Propagates the correlation id to all logs, including dispatch logs
- Records metrics for Prometheus
"""
import time
import uuid
import logging
from typing import Callable

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

from pushgate.core.logging_config import set_correlation_id, clear_correlation_id
from pushgate.core.metrics import record_request_metrics

logger = logging.getLogger(__name__)


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """
    Middleware that logs all HTTP requests with timing and correlation IDs.
    """

    # Paths to exclude from detailed logging
    EXCLUDED_PATHS = {'/health', '/metrics', '/docs', '/redoc', '/openapi.json'}

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        token = set_correlation_id(request_id)
        request.state.request_id = request_id

        start_time = time.perf_counter()
        method = request.method
        path = request.url.path
        should_log = path not in self.EXCLUDED_PATHS

        if should_log:
            logger.info(
                "Request started",
                extra={
                    "event_type": "request_start",
                    "method": method,
                    "path": path,
                }
            )

        try:
            response = await call_next(request)
            response_time_ms = (time.perf_counter() - start_time) * 1000
            response.headers["X-Request-ID"] = request_id

            if should_log:
                log_level = logging.INFO if response.status_code < 400 else logging.WARNING
                if response.status_code >= 500:
                    log_level = logging.ERROR

                logger.log(
                    log_level,
                    "Request completed",
                    extra={
                        "event_type": "request_complete",
                        "method": method,
                        "path": path,
                        "status_code": response.status_code,
                        "response_time_ms": round(response_time_ms, 2),
                    }
                )

            record_request_metrics(
                method=method,
                path=path,
                status_code=response.status_code,
                response_time_seconds=response_time_ms / 1000
            )
            return response

        except Exception as e:
            response_time_ms = (time.perf_counter() - start_time) * 1000
            logger.error(
                "Request failed with exception",
                extra={
                    "event_type": "request_error",
                    "method": method,
                    "path": path,
                    "response_time_ms": round(response_time_ms, 2),
                    "error_type": type(e).__name__,
                },
                exc_info=True
            )
            record_request_metrics(
                method=method,
                path=path,
                status_code=500,
                response_time_seconds=response_time_ms / 1000
            )
            raise

        finally:
            clear_correlation_id(token)
