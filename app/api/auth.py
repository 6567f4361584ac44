"""
Credential exchange endpoints.

POST /api/auth is public: the delegated proof in the Authorization header is
the authentication. Everything else requires a credential.
"""
import logging

from fastapi import APIRouter, Request

from app.core.build_service import get_build_service
from app.core.security import expected_request_url, get_identity, require_admin
from app.schemas.auth import AuthExchangeResponse, AuthStatsResponse, RevokeResponse

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/auth", tags=["auth"])


@router.post("", response_model=AuthExchangeResponse)
async def exchange_proof(request: Request) -> AuthExchangeResponse:
    """
    Exchange a signed proof for an API key.

    Idempotent: a principal that already holds a key gets the same key back
    (isNew=false).
    """
    service = get_build_service()
    url = expected_request_url(request, service.config.public_base_url)
    result = service.exchange_proof(request.headers.get("Authorization"), url, request.method)
    return AuthExchangeResponse(**result)


@router.delete("", response_model=RevokeResponse)
async def revoke_key(request: Request) -> RevokeResponse:
    """Revoke the caller's own API key. The next exchange mints a new one."""
    identity = get_identity(request)
    get_build_service().revoke(identity)
    return RevokeResponse()


@router.get("/stats", response_model=AuthStatsResponse)
async def auth_stats(request: Request) -> AuthStatsResponse:
    """Masked list of issued keys (admin only)."""
    require_admin(request)
    return AuthStatsResponse(**get_build_service().credentials.stats())
