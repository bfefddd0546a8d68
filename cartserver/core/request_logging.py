"""
Request logging middleware.
One structured line per request, with timing and a request id.
NEVER logs: Authorization headers, query strings, request bodies.
"""
import logging
import time

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

from cartserver.core.log_context import set_request_id
from cartserver.core.metrics import metrics

logger = logging.getLogger("cartserver.request")

REQUEST_ID_HEADER = "X-Request-Id"

# Probes are counted but not logged
QUIET_PATHS = frozenset({"/health", "/metrics"})


def _client_ip(request: Request) -> str:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else "unknown"


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Assigns a request id, counts responses by status class, logs the request."""

    async def dispatch(self, request: Request, call_next) -> Response:
        # Reuse a proxy-supplied id only if it is short and printable
        incoming = request.headers.get(REQUEST_ID_HEADER, "")
        request_id = set_request_id(incoming if 0 < len(incoming) <= 64 and incoming.isprintable() else None)

        started = time.perf_counter()
        response: Response = await call_next(request)
        duration_ms = int((time.perf_counter() - started) * 1000)

        response.headers[REQUEST_ID_HEADER] = request_id

        metrics.inc("requests_total")
        status_class = f"requests_{response.status_code // 100}xx"
        if status_class in ("requests_2xx", "requests_4xx", "requests_5xx"):
            metrics.inc(status_class)

        if request.url.path not in QUIET_PATHS:
            logger.info(
                f"request method={request.method} path={request.url.path} status={response.status_code}",
                extra={
                    "method": request.method,
                    "path": request.url.path,
                    "status_code": response.status_code,
                    "duration_ms": duration_ms,
                    "client_ip": _client_ip(request),
                },
            )

        return response
