"""Lookup table from shim key to provider, built once at startup."""

from __future__ import annotations

from types import MappingProxyType
from typing import Any, Dict, Iterable, List

import httpx

from shim_server.core.config import AppSettings
from shim_server.core.errors import UnknownProviderError
from shim_server.providers.base import ShimProvider
from shim_server.providers.fitbit import FitbitProvider
from shim_server.providers.googlefit import GoogleFitProvider
from shim_server.providers.withings import WithingsProvider


class ProviderRegistry:
    """Read-only registry of shims; safe for concurrent lookups."""

    def __init__(self, providers: Iterable[ShimProvider]) -> None:
        table: Dict[str, ShimProvider] = {}
        for provider in providers:
            key = provider.key.strip().lower()
            if not key:
                raise ValueError(f"{type(provider).__name__} has no shim key.")
            if key in table:
                raise ValueError(f"Shim key '{key}' registered twice.")
            table[key] = provider
        self._providers = MappingProxyType(table)

    def resolve(self, provider_key: str) -> ShimProvider:
        key = (provider_key or "").strip().lower()
        try:
            return self._providers[key]
        except KeyError:
            raise UnknownProviderError(
                f"No shim registered for '{provider_key}'.", provider_key=provider_key
            ) from None

    def keys(self) -> List[str]:
        return sorted(self._providers)

    def describe(self) -> List[Dict[str, Any]]:
        return [self._providers[key].describe() for key in self.keys()]

    def __contains__(self, provider_key: object) -> bool:
        return isinstance(provider_key, str) and provider_key.strip().lower() in self._providers


def build_provider_registry(
    settings: AppSettings,
    *,
    transport: httpx.AsyncBaseTransport | None = None,
) -> ProviderRegistry:
    """Instantiate every known shim from application settings."""
    shims = (
        (FitbitProvider, settings.fitbit),
        (WithingsProvider, settings.withings),
        (GoogleFitProvider, settings.googlefit),
    )
    return ProviderRegistry(
        provider_cls(
            client_settings,
            redirect_uri=settings.callback_url_for(provider_cls.key),
            oauth_settings=settings.oauth,
            http_settings=settings.http,
            transport=transport,
        )
        for provider_cls, client_settings in shims
    )


__all__ = ["ProviderRegistry", "build_provider_registry"]
