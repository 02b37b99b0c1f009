"""
Correlation ID Middleware

Tags each request with a correlation ID that follows it into every log
line, emitted event and lifecycle call made while serving it.
"""
import time

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.responses import Response

from ...utils.idgen import generate_correlation_id
from ...utils.logger import get_logger, set_correlation_id

logger = get_logger(__name__)

CORRELATION_HEADER = "X-Correlation-Id"


class CorrelationIdMiddleware(BaseHTTPMiddleware):
    """
    Reuses the caller's X-Correlation-Id or mints one, and echoes it back.
    """

    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint
    ) -> Response:
        correlation_id = request.headers.get(CORRELATION_HEADER) or generate_correlation_id()
        set_correlation_id(correlation_id)

        started = time.perf_counter()
        response = await call_next(request)
        elapsed_ms = int((time.perf_counter() - started) * 1000)

        response.headers[CORRELATION_HEADER] = correlation_id
        logger.debug(
            f"{request.method} {request.url.path} -> {response.status_code} in {elapsed_ms}ms",
            extra={"status": response.status_code}
        )
        return response
