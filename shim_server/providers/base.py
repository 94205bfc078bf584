"""
Shim provider interface.

Each third-party service implements the three handshake/data operations
below. Providers receive the acting user explicitly; none of them reads an
ambient identity.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, Dict, Mapping, Optional

from shim_server.models.records import (
    AccessParameters,
    AuthorizationRequestParameters,
    AuthorizationResolution,
    DataPayload,
    DataQuery,
)


class ShimProvider(ABC):
    """Authorization and data access adapter for one third-party service."""

    key: str = ""
    label: str = ""

    @property
    @abstractmethod
    def data_types(self) -> Mapping[str, str]:
        """Supported data type keys mapped to a short description."""

    @abstractmethod
    def is_configured(self) -> bool:
        """Whether client credentials are available for this shim."""

    @abstractmethod
    def build_authorization_request(
        self,
        *,
        user_id: str,
        state_key: str,
        options: Optional[Mapping[str, str]] = None,
    ) -> AuthorizationRequestParameters:
        """Return the consent URL and any fields the callback will need again.

        Raises ``ProviderConfigurationError`` when the shim cannot be used.
        """

    def extract_state_key(self, payload: Mapping[str, Any]) -> Optional[str]:
        """Pull the correlation token out of a raw callback."""
        value = payload.get("state")
        if value is None:
            return None
        value = str(value).strip()
        return value or None

    @abstractmethod
    async def resolve_callback(
        self,
        *,
        payload: Mapping[str, Any],
        request: AuthorizationRequestParameters,
    ) -> AuthorizationResolution:
        """Turn a provider callback into credential material.

        Raises ``AuthorizationDeniedError`` when the user declined and
        ``ProviderProtocolError`` when the callback cannot be verified.
        """

    async def refresh_if_needed(
        self, credential: AccessParameters
    ) -> Optional[Dict[str, Any]]:
        """Return a refreshed credential payload, or ``None`` if the stored one is fine.

        Raises ``CredentialExpiredError`` when the provider refuses to refresh.
        """
        return None

    @abstractmethod
    async def fetch_data(
        self,
        *,
        credential: AccessParameters,
        data_type: str,
        query: DataQuery,
    ) -> DataPayload:
        """Retrieve one data type on the credential owner's behalf.

        Raises ``CredentialExpiredError``, ``ProviderUnavailableError`` or
        ``ProviderProtocolError``.
        """

    def describe(self) -> Dict[str, Any]:
        return {
            "key": self.key,
            "label": self.label,
            "configured": self.is_configured(),
            "data_types": dict(self.data_types),
        }


__all__ = ["ShimProvider"]
