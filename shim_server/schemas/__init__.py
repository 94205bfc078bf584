"""Public schema exports."""

from .auth import (
    AuthorizationSummary,
    AuthorizationsResponse,
    AuthorizeResponse,
    CallbackResolutionResponse,
    DeauthorizeResponse,
)
from .data import DataResponse, RegistryResponse, ShimDescription

__all__ = [
    "AuthorizationSummary",
    "AuthorizationsResponse",
    "AuthorizeResponse",
    "CallbackResolutionResponse",
    "DataResponse",
    "DeauthorizeResponse",
    "RegistryResponse",
    "ShimDescription",
]
