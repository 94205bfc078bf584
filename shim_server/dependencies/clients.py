"""
Factory functions to provide shared stores, registry and services as FastAPI dependencies.
"""

from functools import lru_cache

from shim_server.clients import (
    CorrelationStore,
    CredentialStore,
    DynamoDBCorrelationStore,
    DynamoDBCredentialStore,
    SQLiteCorrelationStore,
    SQLiteCredentialStore,
)
from shim_server.core.config import get_settings
from shim_server.providers import ProviderRegistry, build_provider_registry
from shim_server.services import DataAccessService, HandshakeService, TokenCipherService


@lru_cache()
def _settings():
    """Internal helper to cache settings for client factories."""
    return get_settings()


@lru_cache()
def get_token_cipher_service() -> TokenCipherService:
    """Provide symmetric encryption helper for credential storage."""
    settings = _settings()
    secret = settings.security.token_encryption_secret
    if not secret:
        raise RuntimeError("TOKEN_ENCRYPTION_SECRET must be configured.")
    return TokenCipherService(secret=secret)


@lru_cache()
def get_correlation_store() -> CorrelationStore:
    """Provide the shared handshake record store."""
    storage = _settings().storage
    if storage.backend == "dynamodb":
        return DynamoDBCorrelationStore(storage)
    return SQLiteCorrelationStore(storage.sqlite_path)


@lru_cache()
def get_credential_store() -> CredentialStore:
    """Provide the shared credential store."""
    settings = _settings()
    storage = settings.storage
    cipher = get_token_cipher_service()
    if storage.backend == "dynamodb":
        # Replay markers outlive their handshake by at most one claim lease.
        return DynamoDBCredentialStore(
            storage,
            cipher=cipher,
            marker_ttl_seconds=settings.oauth.state_ttl_seconds
            + settings.oauth.claim_timeout_seconds,
        )
    return SQLiteCredentialStore(storage.sqlite_path, cipher=cipher)


@lru_cache()
def get_provider_registry() -> ProviderRegistry:
    """Create the process-wide shim registry."""
    return build_provider_registry(_settings())


def get_handshake_service() -> HandshakeService:
    """Build a handshake service over the shared stores."""
    return HandshakeService(
        registry=get_provider_registry(),
        correlation_store=get_correlation_store(),
        credential_store=get_credential_store(),
        oauth_settings=_settings().oauth,
    )


def get_data_access_service() -> DataAccessService:
    """Build a data access service over the shared credential store."""
    return DataAccessService(
        registry=get_provider_registry(),
        credential_store=get_credential_store(),
    )


__all__ = [
    "get_correlation_store",
    "get_credential_store",
    "get_data_access_service",
    "get_handshake_service",
    "get_provider_registry",
    "get_token_cipher_service",
]
