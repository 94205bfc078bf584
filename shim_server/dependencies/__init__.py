"""Expose dependency helpers for FastAPI routers."""

from .clients import (
    get_correlation_store,
    get_credential_store,
    get_data_access_service,
    get_handshake_service,
    get_provider_registry,
    get_token_cipher_service,
)
from .config import get_app_settings

__all__ = [
    "get_app_settings",
    "get_correlation_store",
    "get_credential_store",
    "get_data_access_service",
    "get_handshake_service",
    "get_provider_registry",
    "get_token_cipher_service",
]
