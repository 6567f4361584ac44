"""
Credential authentication middleware.

Credential can be provided via:
- X-API-Key header
- Authorization: Bearer <token> header
- apiKey query parameter (browser downloads)

The credential is either the admin key (from ADMIN_API_KEY) or a principal
token issued by POST /api/auth.

PUBLIC ROUTES (no credential required):
- /health
- /docs, /redoc, /openapi.json
- POST /api/auth (authenticated by the delegated proof itself)
"""
import logging
from typing import Optional

from fastapi import Request
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from app.core.auth import Identity
from app.core.build_service import get_build_service
from app.core.errors import AuthError, OwnershipError
from app.core.metrics import metrics

logger = logging.getLogger(__name__)

# Routes that don't require authentication
PUBLIC_PATHS = frozenset([
    "/health",
    "/docs",
    "/redoc",
    "/openapi.json",
])

# (method, path) pairs that carry their own authentication
PUBLIC_ROUTES = frozenset([
    ("POST", "/api/auth"),
])


def is_public_route(method: str, path: str) -> bool:
    """Check if a request needs no credential."""
    if path in PUBLIC_PATHS:
        return True
    return (method.upper(), path.rstrip("/") or "/") in PUBLIC_ROUTES


def extract_credential(request: Request) -> Optional[str]:
    """Find the presented credential, header first."""
    credential = request.headers.get("X-API-Key")
    if not credential:
        auth_header = request.headers.get("Authorization", "")
        if auth_header.startswith("Bearer "):
            credential = auth_header[7:].strip()
    if not credential:
        credential = request.query_params.get("apiKey")
    return credential or None


def expected_request_url(request: Request, public_base_url: str = "") -> str:
    """
    Absolute URL the client addressed, used to check the proof's "u" tag.

    Priority:
    1. PUBLIC_BASE_URL (if set) + request path
    2. X-Forwarded-Proto / X-Forwarded-Host headers
    3. The request URL as received
    """
    path = request.url.path
    if public_base_url:
        return f"{public_base_url}{path}"
    scheme = request.headers.get("x-forwarded-proto", request.url.scheme)
    host = request.headers.get("x-forwarded-host", request.headers.get("host", request.url.netloc))
    return f"{scheme}://{host}{path}"


class APIKeyMiddleware(BaseHTTPMiddleware):
    """
    Middleware to resolve the caller identity on protected endpoints.

    Attaches request.state.identity for downstream use.
    """

    async def dispatch(self, request: Request, call_next):
        path = request.url.path

        if is_public_route(request.method, path):
            return await call_next(request)

        credential = extract_credential(request)
        if not credential:
            return JSONResponse(
                status_code=401,
                content={"detail": "Missing API key", "error_code": AuthError.error_code},
            )

        identity = get_build_service().authenticate(credential)
        if identity is None:
            # Never log the credential itself
            metrics.inc("auth_failures_total")
            logger.warning(f"auth_failed path={path}")
            return JSONResponse(
                status_code=401,
                content={"detail": "Invalid or missing API key", "error_code": AuthError.error_code},
            )

        request.state.identity = identity
        return await call_next(request)


def get_identity(request: Request) -> Identity:
    """Identity resolved by the middleware."""
    identity = getattr(request.state, "identity", None)
    if identity is None:
        raise AuthError("Invalid or missing API key")
    return identity


def require_admin(request: Request) -> Identity:
    """Identity of an admin caller, else 403."""
    identity = get_identity(request)
    if not identity.is_admin:
        raise OwnershipError("Admin access required")
    return identity
