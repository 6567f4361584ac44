"""
Request logging middleware.

One structured line per request with timing, status and the caller's short
identity. Health checks are not logged.

NEVER logs: API keys, proof headers, request bodies, query strings (apiKey).
"""
import logging
import re
import time
import uuid
from contextvars import ContextVar

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

from app.core.metrics import metrics

logger = logging.getLogger("buildservice.request")

request_id_var: ContextVar[str] = ContextVar("request_id", default="")

# Client-supplied ids are echoed back only if they look like ids
INBOUND_REQUEST_ID = re.compile(r"^[A-Za-z0-9\-]{8,64}$")

STATUS_COUNTERS = {2: "requests_2xx", 4: "requests_4xx", 5: "requests_5xx"}

QUIET_PATHS = frozenset(["/health"])


def get_request_id() -> str:
    """Current request id ("" outside a request)."""
    return request_id_var.get()


def _client_ip(request: Request) -> str:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else "unknown"


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """
    Wraps the auth middleware, so rejected credentials are timed and counted
    like any other request. Sets X-Request-Id on every response.
    """

    async def dispatch(self, request: Request, call_next) -> Response:
        inbound = request.headers.get("x-request-id", "")
        request_id = inbound if INBOUND_REQUEST_ID.match(inbound) else uuid.uuid4().hex
        request_id_var.set(request_id)

        started = time.perf_counter()
        response: Response = await call_next(request)
        duration_ms = int((time.perf_counter() - started) * 1000)

        response.headers["X-Request-Id"] = request_id

        metrics.inc("requests_total")
        counter = STATUS_COUNTERS.get(response.status_code // 100)
        if counter:
            metrics.inc(counter)

        if request.url.path in QUIET_PATHS:
            return response

        # Set by the auth middleware on the shared request state
        identity = getattr(request.state, "identity", None)
        level = logging.WARNING if response.status_code >= 500 else logging.INFO
        logger.log(
            level,
            "request",
            extra={
                "request_id": request_id,
                "method": request.method,
                "path": request.url.path,
                "status_code": response.status_code,
                "duration_ms": duration_ms,
                "client_ip": _client_ip(request),
                "caller": identity.short if identity is not None else "anonymous",
            },
        )
        return response
