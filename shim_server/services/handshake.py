"""
Authorization handshake orchestration.

A handshake moves ``initiated -> resolved`` or ``initiated -> failed`` and
never leaves a terminal state. The correlation store's atomic ``claim`` is
the gate every callback must pass before any provider code sees it.
"""

from __future__ import annotations

import logging
import secrets
from datetime import timedelta
from typing import Any, Dict, List, Mapping, Optional
from urllib.parse import urlparse

from shim_server.clients.stores import (
    CorrelationStore,
    CredentialStore,
    DuplicateStateKeyError,
)
from shim_server.core.config import OAuthSettings
from shim_server.core.errors import (
    AuthorizationDeniedError,
    ProviderProtocolError,
    RedirectTargetError,
    StateKeyAllocationError,
    UnknownCorrelationError,
)
from shim_server.models.records import (
    AccessParameters,
    AuthorizationRequestParameters,
    AuthorizationResolution,
    CompletionOutcome,
    HandshakeState,
    utcnow,
)
from shim_server.providers.registry import ProviderRegistry

logger = logging.getLogger(__name__)

# Client redirect value meaning "no redirect, return the resolution body".
OUT_OF_BAND = "oob"

_STATE_KEY_BYTES = 32
_MAX_STATE_KEY_ATTEMPTS = 3


class HandshakeService:
    """Start handshakes and complete them from provider callbacks."""

    def __init__(
        self,
        *,
        registry: ProviderRegistry,
        correlation_store: CorrelationStore,
        credential_store: CredentialStore,
        oauth_settings: OAuthSettings,
    ) -> None:
        self._registry = registry
        self._correlations = correlation_store
        self._credentials = credential_store
        self._state_ttl = timedelta(seconds=oauth_settings.state_ttl_seconds)
        self._claim_timeout = oauth_settings.claim_timeout_seconds

    def start(
        self,
        *,
        user_id: str,
        provider_key: str,
        client_redirect_url: Optional[str] = None,
        options: Optional[Mapping[str, str]] = None,
    ) -> AuthorizationRequestParameters:
        """Issue a correlation token and persist the pending request."""
        provider = self._registry.resolve(provider_key)

        for _ in range(_MAX_STATE_KEY_ATTEMPTS):
            state_key = secrets.token_urlsafe(_STATE_KEY_BYTES)
            built = provider.build_authorization_request(
                user_id=user_id, state_key=state_key, options=options
            )
            now = utcnow()
            record = built.model_copy(
                update={
                    "state_key": state_key,
                    "user_id": user_id,
                    "provider_key": provider.key,
                    "client_redirect_url": client_redirect_url or None,
                    "state": HandshakeState.INITIATED,
                    "created_at": now,
                    "expires_at": now + self._state_ttl,
                    "claimed_at": None,
                }
            )
            try:
                self._correlations.create(record)
            except DuplicateStateKeyError:
                logger.warning("State key collision for %s; regenerating", provider.key)
                continue
            logger.info(
                "Started %s handshake for user %s", provider.key, user_id
            )
            return record

        raise StateKeyAllocationError(
            "Unable to allocate a unique state key.", provider_key=provider.key
        )

    def is_authorized(self, *, user_id: str, provider_key: str) -> bool:
        provider = self._registry.resolve(provider_key)
        return self._credentials.latest(user_id, provider.key) is not None

    async def complete_callback(
        self,
        *,
        provider_key: str,
        payload: Mapping[str, Any],
    ) -> CompletionOutcome:
        """Resolve a provider callback into a persisted credential.

        Raises ``UnknownCorrelationError`` for unknown, expired, replayed, or
        concurrently claimed state keys before the provider is consulted.
        """
        provider = self._registry.resolve(provider_key)
        state_key = provider.extract_state_key(payload)
        if not state_key:
            raise UnknownCorrelationError(
                "Callback carries no state key.", provider_key=provider.key
            )

        request = self._correlations.claim(
            state_key,
            provider_key=provider.key,
            lease_seconds=self._claim_timeout,
        )
        if request is None:
            logger.warning("Rejected %s callback with unknown state key", provider.key)
            raise UnknownCorrelationError(
                "Invalid state key, original access request not found.",
                provider_key=provider.key,
            )

        existing = self._credentials.find_by_state_key(
            request.user_id, request.provider_key, request.state_key
        )
        if existing is not None:
            # A previous attempt persisted the grant but did not close the handshake.
            logger.info("Replaying completed %s handshake", provider.key)
            resolution = AuthorizationResolution(
                provider_key=provider.key,
                credential_payload=existing.payload,
                details=provider_details(existing.payload),
            )
            replayed = True
        else:
            try:
                resolution = await provider.resolve_callback(
                    payload=payload, request=request
                )
            except (AuthorizationDeniedError, ProviderProtocolError) as exc:
                self._correlations.finish(state_key, HandshakeState.FAILED)
                logger.info(
                    "%s handshake failed for user %s: %s",
                    provider.key,
                    request.user_id,
                    exc.kind,
                )
                raise
            except Exception:
                self._correlations.release(state_key)
                raise

            self._credentials.save(
                AccessParameters(
                    user_id=request.user_id,
                    provider_key=request.provider_key,
                    payload=resolution.credential_payload,
                    state_key=request.state_key,
                )
            )
            replayed = False

        self._correlations.finish(state_key, HandshakeState.RESOLVED)
        logger.info(
            "Resolved %s handshake for user %s", provider.key, request.user_id
        )

        outcome = CompletionOutcome(
            user_id=request.user_id,
            provider_key=request.provider_key,
            state_key=request.state_key,
            resolution=resolution,
            replayed=replayed,
        )
        target = (request.client_redirect_url or "").strip()
        if not target or target == OUT_OF_BAND:
            return outcome
        if not is_valid_redirect_target(target):
            raise RedirectTargetError(
                f"Malformed client redirect target: {target!r}",
                outcome=outcome,
                provider_key=provider.key,
            )
        return outcome.model_copy(update={"redirect_url": target})

    def list_authorizations(self, *, user_id: str) -> List[Dict[str, Any]]:
        """Summarize which shims a user has granted, newest grant per shim."""
        latest: Dict[str, AccessParameters] = {}
        counts: Dict[str, int] = {}
        for credential in self._credentials.list_for_user(user_id):
            counts[credential.provider_key] = counts.get(credential.provider_key, 0) + 1
            latest.setdefault(credential.provider_key, credential)
        return [
            {
                "provider_key": key,
                "authorized_at": latest[key].created_at,
                "grants": counts[key],
            }
            for key in sorted(latest)
        ]


def provider_details(payload: Mapping[str, Any]) -> Dict[str, Any]:
    """Non-secret fields of a stored credential payload."""
    return {
        field: payload[field]
        for field in ("scope", "expires_at")
        if payload.get(field)
    }


def is_valid_redirect_target(target: str) -> bool:
    try:
        parsed = urlparse(target)
    except ValueError:
        return False
    return parsed.scheme in ("http", "https") and bool(parsed.netloc)


__all__ = [
    "HandshakeService",
    "OUT_OF_BAND",
    "is_valid_redirect_target",
    "provider_details",
]
