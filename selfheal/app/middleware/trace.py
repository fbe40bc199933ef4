import time
import uuid
import logging

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware

from selfheal.app.core.logging import correlation_id_ctx

logger = logging.getLogger(__name__)


class TracingMiddleware(BaseHTTPMiddleware):
    """
    Assigns every request a correlation ID, taken from the caller's
    X-Correlation-ID / X-Trace-ID header when present, and logs its outcome.
    """
    async def dispatch(self, request: Request, call_next):
        correlation_id = request.headers.get("X-Correlation-ID") or \
                         request.headers.get("X-Trace-ID") or \
                         str(uuid.uuid4())
        token = correlation_id_ctx.set(correlation_id)
        start_time = time.time()

        try:
            response = await call_next(request)
            logger.info(
                f"{request.method} {request.url.path} completed",
                extra={
                    "extra_data": {
                        "method": request.method,
                        "path": request.url.path,
                        "status_code": response.status_code,
                        "duration_ms": round((time.time() - start_time) * 1000, 2),
                    }
                }
            )
            response.headers["X-Correlation-ID"] = correlation_id
            return response

        except Exception as e:
            logger.error(
                f"Request failed: {request.method} {request.url.path}",
                extra={
                    "extra_data": {
                        "method": request.method,
                        "path": request.url.path,
                        "status_code": 500,
                        "duration_ms": round((time.time() - start_time) * 1000, 2),
                        "error": str(e),
                    }
                },
                exc_info=True
            )
            raise
        finally:
            correlation_id_ctx.reset(token)
