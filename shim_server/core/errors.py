"""
Typed failures raised by the handshake, provider, and data access layers.

The HTTP boundary maps these onto responses; nothing in the core decides
status codes.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:  # pragma: no cover - type hints only
    from shim_server.models.records import CompletionOutcome


class ShimError(Exception):
    """Base class for every failure surfaced to callers."""

    retryable: bool = False

    def __init__(self, message: str, *, provider_key: Optional[str] = None) -> None:
        super().__init__(message)
        self.message = message
        self.provider_key = provider_key

    @property
    def kind(self) -> str:
        return type(self).__name__


class UnknownProviderError(ShimError):
    """Raised when no shim is registered under the requested key."""


class ProviderConfigurationError(ShimError):
    """Raised when a shim is missing client credentials or other settings."""


class UnknownCorrelationError(ShimError):
    """Raised when a callback state key matches no live handshake."""


class AuthorizationDeniedError(ShimError):
    """Raised when the user declined the provider's consent screen."""


class ProviderProtocolError(ShimError):
    """Raised when a provider response or callback is malformed or unverifiable."""


class CredentialExpiredError(ShimError):
    """Raised by a shim when the stored credential is no longer accepted."""


class ProviderUnavailableError(ShimError):
    """Raised for transient provider failures; safe to retry."""

    retryable = True


class NotAuthorizedError(ShimError):
    """Raised when no credential exists for the user and shim."""


class ReauthorizationRequiredError(ShimError):
    """Raised when the latest credential expired and a new handshake is needed."""


class StateKeyAllocationError(ShimError):
    """Raised when no unique correlation token could be issued."""


class RedirectTargetError(ShimError):
    """Raised when the client redirect target is malformed.

    The handshake itself succeeded: ``outcome`` carries the resolution and the
    credential has already been persisted.
    """

    def __init__(
        self,
        message: str,
        *,
        outcome: "CompletionOutcome",
        provider_key: Optional[str] = None,
    ) -> None:
        super().__init__(message, provider_key=provider_key)
        self.outcome = outcome


__all__ = [
    "AuthorizationDeniedError",
    "CredentialExpiredError",
    "NotAuthorizedError",
    "ProviderConfigurationError",
    "ProviderProtocolError",
    "ProviderUnavailableError",
    "ReauthorizationRequiredError",
    "RedirectTargetError",
    "ShimError",
    "StateKeyAllocationError",
    "UnknownCorrelationError",
    "UnknownProviderError",
]
