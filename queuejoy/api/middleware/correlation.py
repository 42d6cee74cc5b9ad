"""
Correlation ID Middleware

Tags every request with a correlation ID and logs one access line per request.
"""
import time

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.responses import Response

from ...utils.logger import get_logger, set_correlation_id
from ...utils.idgen import generate_correlation_id

logger = get_logger(__name__)

# Checked in order; the edge proxy sets its own request id
CORRELATION_HEADERS = ("X-Correlation-Id", "X-Request-Id", "X-Nf-Request-Id")


class CorrelationIdMiddleware(BaseHTTPMiddleware):
    """
    Reuses an inbound request id when one is present, otherwise mints one.
    The id is echoed back in ``X-Correlation-Id``.
    """

    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint
    ) -> Response:
        correlation_id = next(
            (request.headers[h] for h in CORRELATION_HEADERS if request.headers.get(h)),
            None,
        ) or generate_correlation_id()
        set_correlation_id(correlation_id)

        started = time.perf_counter()
        response = await call_next(request)
        elapsed_ms = int((time.perf_counter() - started) * 1000)

        response.headers["X-Correlation-Id"] = correlation_id
        logger.info(
            f"{request.method} {request.url.path} -> {response.status_code} ({elapsed_ms} ms)"
        )
        return response
