"""
Authorized data retrieval and credential revocation.
"""

from __future__ import annotations

import logging
from typing import Optional

from shim_server.clients.stores import CredentialStore
from shim_server.core.errors import (
    CredentialExpiredError,
    NotAuthorizedError,
    ReauthorizationRequiredError,
)
from shim_server.models.records import AccessParameters, DataPayload, DataQuery
from shim_server.providers.registry import ProviderRegistry

logger = logging.getLogger(__name__)


class DataAccessService:
    """Serve data requests using the newest credential for a user and shim."""

    def __init__(
        self,
        *,
        registry: ProviderRegistry,
        credential_store: CredentialStore,
    ) -> None:
        self._registry = registry
        self._credentials = credential_store

    async def get_data(
        self,
        *,
        user_id: str,
        provider_key: str,
        data_type: str,
        query: Optional[DataQuery] = None,
    ) -> DataPayload:
        provider = self._registry.resolve(provider_key)
        credential = self._credentials.latest(user_id, provider.key)
        if credential is None:
            raise NotAuthorizedError(
                f"User '{user_id}' has not authorized shim '{provider.key}'.",
                provider_key=provider.key,
            )

        try:
            refreshed = await provider.refresh_if_needed(credential)
        except CredentialExpiredError as exc:
            raise self._reauthorization_required(user_id, provider.key) from exc

        if refreshed is not None:
            # Persist before the data call so a rotated refresh token survives
            # a failing fetch.
            replacement = self._credentials.replace(
                credential.credential_id,
                AccessParameters(
                    user_id=user_id,
                    provider_key=provider.key,
                    payload=refreshed,
                ),
            )
            if replacement is None:
                raise NotAuthorizedError(
                    f"Authorization for shim '{provider.key}' was revoked.",
                    provider_key=provider.key,
                )
            credential = replacement

        try:
            return await provider.fetch_data(
                credential=credential,
                data_type=data_type,
                query=query or DataQuery(),
            )
        except CredentialExpiredError as exc:
            raise self._reauthorization_required(user_id, provider.key) from exc

    @staticmethod
    def _reauthorization_required(
        user_id: str, provider_key: str
    ) -> ReauthorizationRequiredError:
        logger.info(
            "Credential for user %s on %s expired; reauthorization required",
            user_id,
            provider_key,
        )
        return ReauthorizationRequiredError(
            f"Credential for shim '{provider_key}' has expired; start a new "
            "authorization.",
            provider_key=provider_key,
        )

    def revoke(self, *, user_id: str, provider_key: str) -> int:
        """Delete every grant for the pair; repeated calls remove nothing."""
        provider = self._registry.resolve(provider_key)
        removed = self._credentials.delete_all(user_id, provider.key)
        logger.info(
            "Removed %s %s credential(s) for user %s", removed, provider.key, user_id
        )
        return removed


__all__ = ["DataAccessService"]
