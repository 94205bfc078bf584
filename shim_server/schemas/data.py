"""Schemas for the data and registry endpoints."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class DataResponse(BaseModel):
    """Raw provider data wrapped with its origin."""

    provider_key: str
    data_type: str
    retrieved_at: datetime
    body: Any = None


class ShimDescription(BaseModel):
    key: str
    label: str
    configured: bool
    data_types: Dict[str, str] = Field(default_factory=dict)
    callback_url: Optional[str] = Field(
        None, description="Redirect URI to register with the provider."
    )


class RegistryResponse(BaseModel):
    shims: List[ShimDescription] = Field(default_factory=list)


__all__ = ["DataResponse", "RegistryResponse", "ShimDescription"]
