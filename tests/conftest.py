"""Pytest configuration shared across the suite."""

from __future__ import annotations

try:
    from . import _bootstrap  # noqa: F401
except Exception:  # pragma: no cover - fallback for direct execution
    import _bootstrap  # type: ignore # noqa: F401

import asyncio
from types import MappingProxyType
from typing import Any, Mapping, Optional

import pytest

from shim_server.clients.sqlite_store import SQLiteCorrelationStore, SQLiteCredentialStore
from shim_server.core.config import OAuthSettings
from shim_server.core.errors import (
    AuthorizationDeniedError,
    ProviderProtocolError,
    ShimError,
)
from shim_server.models.records import (
    AccessParameters,
    AuthorizationRequestParameters,
    AuthorizationResolution,
    DataPayload,
    DataQuery,
)
from shim_server.providers.base import ShimProvider
from shim_server.providers.registry import ProviderRegistry
from shim_server.services.data_access import DataAccessService
from shim_server.services.handshake import HandshakeService
from shim_server.services.token_cipher import TokenCipherService


class StubProvider(ShimProvider):
    """In-process shim whose behaviour tests can steer."""

    label = "Stub"
    data_types = MappingProxyType({"steps": "Daily steps"})

    def __init__(self, key: str = "fitbit") -> None:
        self.key = key
        self.configured = True
        self.resolve_delay = 0.0
        self.resolve_error: Optional[ShimError] = None
        self.fetch_error: Optional[ShimError] = None
        self.refresh_delay = 0.0
        self.refresh_error: Optional[ShimError] = None
        self.refreshed_credential: Optional[dict] = None
        self.resolve_calls: list[dict] = []
        self.fetch_calls: list[AccessParameters] = []

    def is_configured(self) -> bool:
        return self.configured

    def build_authorization_request(
        self,
        *,
        user_id: str,
        state_key: str,
        options: Optional[Mapping[str, str]] = None,
    ) -> AuthorizationRequestParameters:
        return AuthorizationRequestParameters(
            state_key=state_key,
            user_id=user_id,
            provider_key=self.key,
            authorization_url=f"https://provider.example/auth?state={state_key}",
            request_fields={"nonce": "abc"},
        )

    async def resolve_callback(
        self,
        *,
        payload: Mapping[str, Any],
        request: AuthorizationRequestParameters,
    ) -> AuthorizationResolution:
        self.resolve_calls.append(dict(payload))
        if self.resolve_delay:
            await asyncio.sleep(self.resolve_delay)
        if self.resolve_error is not None:
            raise self.resolve_error
        if payload.get("error") == "access_denied":
            raise AuthorizationDeniedError("denied", provider_key=self.key)
        if not payload.get("code"):
            raise ProviderProtocolError("missing code", provider_key=self.key)
        return AuthorizationResolution(
            provider_key=self.key,
            credential_payload={"access_token": f"token-{payload['code']}"},
            details={"scope": "activity"},
        )

    async def refresh_if_needed(
        self, credential: AccessParameters
    ) -> Optional[dict]:
        if self.refresh_delay:
            await asyncio.sleep(self.refresh_delay)
        if self.refresh_error is not None:
            raise self.refresh_error
        return self.refreshed_credential

    async def fetch_data(
        self,
        *,
        credential: AccessParameters,
        data_type: str,
        query: DataQuery,
    ) -> DataPayload:
        self.fetch_calls.append(credential)
        if self.fetch_error is not None:
            raise self.fetch_error
        return DataPayload(
            provider_key=self.key,
            data_type=data_type,
            body={"access_token": credential.payload.get("access_token")},
        )


@pytest.fixture
def anyio_backend() -> str:
    """Force AnyIO-powered tests to run against asyncio backend only."""
    return "asyncio"


@pytest.fixture
def cipher() -> TokenCipherService:
    return TokenCipherService(secret="unit-test-secret")


@pytest.fixture
def correlation_store(tmp_path) -> SQLiteCorrelationStore:
    return SQLiteCorrelationStore(str(tmp_path / "shims.db"))


@pytest.fixture
def credential_store(tmp_path, cipher) -> SQLiteCredentialStore:
    return SQLiteCredentialStore(str(tmp_path / "shims.db"), cipher=cipher)


@pytest.fixture
def stub_provider() -> StubProvider:
    return StubProvider()


@pytest.fixture
def registry(stub_provider) -> ProviderRegistry:
    return ProviderRegistry([stub_provider, StubProvider("withings")])


@pytest.fixture
def oauth_settings() -> OAuthSettings:
    return OAuthSettings(state_ttl_seconds=900, claim_timeout_seconds=60)


@pytest.fixture
def handshake_service(
    registry, correlation_store, credential_store, oauth_settings
) -> HandshakeService:
    return HandshakeService(
        registry=registry,
        correlation_store=correlation_store,
        credential_store=credential_store,
        oauth_settings=oauth_settings,
    )


@pytest.fixture
def data_access_service(registry, credential_store) -> DataAccessService:
    return DataAccessService(registry=registry, credential_store=credential_store)
