"""
Pydantic schemas for the credential exchange API.
"""
from typing import List, Optional

from pydantic import BaseModel


class AuthExchangeResponse(BaseModel):
    """Response for POST /api/auth. apiKey is the raw token."""
    success: bool = True
    apiKey: str
    pubkey: str
    isNew: bool
    message: str


class RevokeResponse(BaseModel):
    success: bool = True
    message: str = "API key revoked"


class CredentialInfo(BaseModel):
    """Masked credential listing entry."""
    pubkey: str
    createdAt: str
    lastUsed: Optional[str] = None


class AuthStatsResponse(BaseModel):
    """Response for GET /api/auth/stats (admin)."""
    totalUsers: int
    keys: List[CredentialInfo]
