"""
Domain models for handshake correlation and credential persistence.
"""

from __future__ import annotations

from datetime import date, datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class HandshakeState(str, Enum):
    """Lifecycle of a single authorization attempt."""

    INITIATED = "initiated"
    RESOLVED = "resolved"
    FAILED = "failed"


class AuthorizationRequestParameters(BaseModel):
    """One in-flight handshake, keyed by its correlation token."""

    state_key: str = Field(..., description="Unguessable correlation token.")
    user_id: str
    provider_key: str
    client_redirect_url: Optional[str] = None
    authorization_url: str = Field(
        ..., description="Provider consent URL the user is sent to."
    )
    request_fields: Dict[str, Any] = Field(
        default_factory=dict,
        description="Provider-specific fields needed again when the callback arrives.",
    )
    state: HandshakeState = HandshakeState.INITIATED
    created_at: datetime = Field(default_factory=utcnow)
    expires_at: Optional[datetime] = None
    claimed_at: Optional[datetime] = None

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        if self.expires_at is None:
            return False
        return self.expires_at <= (now or utcnow())


class AccessParameters(BaseModel):
    """A resolved credential grant for one user and shim."""

    credential_id: Optional[str] = Field(
        None, description="Store-assigned identifier of this grant."
    )
    user_id: str
    provider_key: str
    payload: Dict[str, Any] = Field(
        default_factory=dict,
        description="Provider credential material (tokens, expiry); opaque to the core.",
    )
    state_key: Optional[str] = Field(
        None, description="Handshake that produced this grant, if any."
    )
    created_at: datetime = Field(default_factory=utcnow)


class AuthorizationResolution(BaseModel):
    """Result of a provider accepting a callback."""

    provider_key: str
    status: str = "authorized"
    credential_payload: Dict[str, Any] = Field(default_factory=dict, exclude=True)
    details: Dict[str, Any] = Field(
        default_factory=dict,
        description="Non-secret metadata such as granted scopes or the provider user id.",
    )


class CompletionOutcome(BaseModel):
    """What the boundary layer should do once a callback is handled."""

    user_id: str
    provider_key: str
    state_key: str
    resolution: AuthorizationResolution
    redirect_url: Optional[str] = None
    replayed: bool = False

    @property
    def should_redirect(self) -> bool:
        return bool(self.redirect_url)


class DataQuery(BaseModel):
    """Options forwarded to a shim's data endpoint."""

    date_start: Optional[date] = None
    date_end: Optional[date] = None
    num_to_return: Optional[int] = Field(None, ge=1)
    extra: Dict[str, str] = Field(default_factory=dict)


class DataPayload(BaseModel):
    """Raw data returned by a shim for one data type."""

    provider_key: str
    data_type: str
    body: Any = None
    retrieved_at: datetime = Field(default_factory=utcnow)


__all__ = [
    "AccessParameters",
    "AuthorizationRequestParameters",
    "AuthorizationResolution",
    "CompletionOutcome",
    "DataPayload",
    "DataQuery",
    "HandshakeState",
    "utcnow",
]
