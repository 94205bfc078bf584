"""Schemas returned by the authorization endpoints."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class AuthorizeResponse(BaseModel):
    """Everything a client needs to send the user to the provider."""

    provider_key: str
    user_id: str
    state_key: str = Field(..., description="Opaque state token issued for this handshake.")
    authorization_url: str = Field(..., description="Provider consent URL.")
    client_redirect_url: Optional[str] = None
    expires_at: Optional[datetime] = None
    is_authorized: bool = Field(
        False, description="Whether the user already holds a credential for this shim."
    )


class CallbackResolutionResponse(BaseModel):
    """Body returned from a callback when no client redirect was requested."""

    status: str = "authorized"
    provider_key: str
    user_id: str
    details: Dict[str, Any] = Field(default_factory=dict)


class DeauthorizeResponse(BaseModel):
    provider_key: str
    user_id: str
    removed: int


class AuthorizationSummary(BaseModel):
    provider_key: str
    authorized_at: datetime
    grants: int


class AuthorizationsResponse(BaseModel):
    user_id: str
    authorizations: List[AuthorizationSummary] = Field(default_factory=list)


__all__ = [
    "AuthorizationSummary",
    "AuthorizationsResponse",
    "AuthorizeResponse",
    "CallbackResolutionResponse",
    "DeauthorizeResponse",
]
