"""
Logging middleware for request/response logging.

Logs all HTTP requests with timing and context and feeds the HTTP metrics.
"""
import time
from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware

from meetingflow.logging_config import get_logger
from meetingflow.routes.metrics import track_request

logger = get_logger(component="http")


class LoggingMiddleware(BaseHTTPMiddleware):
    """
    Middleware to log all HTTP requests with timing and context.

    Adds: route, method, duration_ms, status to every log.
    """

    async def dispatch(self, request: Request, call_next):
        start_time = time.perf_counter()

        request_logger = logger.bind(
            route=request.url.path,
            method=request.method,
        )

        try:
            response = await call_next(request)
        except Exception as e:
            duration = time.perf_counter() - start_time
            track_request(request.method, self._endpoint(request), 500, duration)
            request_logger.error(
                "request_failed",
                status_code=500,
                duration_ms=round(duration * 1000, 2),
                error=str(e)
            )
            raise

        duration = time.perf_counter() - start_time
        track_request(request.method, self._endpoint(request), response.status_code, duration)

        request_logger.info(
            "request_completed",
            status_code=response.status_code,
            duration_ms=round(duration * 1000, 2)
        )

        return response

    @staticmethod
    def _endpoint(request: Request) -> str:
        """Route template (/api/webhooks/{webhook_id}) so metric labels stay bounded."""
        route = request.scope.get("route")
        return getattr(route, "path", None) or "unmatched"
