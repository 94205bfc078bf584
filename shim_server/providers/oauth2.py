"""
Shared OAuth 2.0 authorization-code machinery for shims.

Concrete shims set their endpoints and override the hooks where their
protocol variant differs (client authentication, PKCE, response envelopes,
data request shape).
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import logging
import secrets
from datetime import date, datetime, timedelta, timezone
from typing import Any, Dict, Mapping, Optional, Tuple
from urllib.parse import urlencode

import httpx

from shim_server.core.config import HTTPSettings, OAuthSettings, ShimClientSettings
from shim_server.core.errors import (
    AuthorizationDeniedError,
    CredentialExpiredError,
    ProviderConfigurationError,
    ProviderProtocolError,
    ProviderUnavailableError,
)
from shim_server.models.records import (
    AccessParameters,
    AuthorizationRequestParameters,
    AuthorizationResolution,
    DataPayload,
    DataQuery,
)
from shim_server.providers.base import ShimProvider
from shim_server.utils.http import RETRYABLE_STATUS_CODES, RetryConfig, send_with_retry

logger = logging.getLogger(__name__)

DataRequest = Tuple[str, str, Dict[str, Any]]


def pkce_pair() -> Tuple[str, str]:
    """Return an RFC 7636 ``(code_verifier, S256 code_challenge)`` pair."""
    verifier = secrets.token_urlsafe(64)
    digest = hashlib.sha256(verifier.encode("ascii")).digest()
    challenge = base64.urlsafe_b64encode(digest).decode("ascii").rstrip("=")
    return verifier, challenge


def date_range(query: DataQuery, *, default_days: int = 7) -> Tuple[date, date]:
    """Resolve the inclusive date window for a data request."""
    end = query.date_end or datetime.now(timezone.utc).date()
    start = query.date_start or end - timedelta(days=default_days - 1)
    if start > end:
        raise ProviderProtocolError("date_start must not be after date_end.")
    return start, end


class OAuth2Provider(ShimProvider):
    """Authorization-code grant with refresh support."""

    AUTH_BASE_URL = ""
    TOKEN_URL = ""
    DENIAL_ERRORS = frozenset({"access_denied"})
    SCOPE_SEPARATOR = " "
    USE_PKCE = False

    def __init__(
        self,
        client_settings: ShimClientSettings,
        *,
        redirect_uri: str,
        oauth_settings: OAuthSettings,
        http_settings: HTTPSettings,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._client = client_settings
        self._redirect_uri = redirect_uri
        self._refresh_window = timedelta(seconds=oauth_settings.refresh_window_seconds)
        self._timeout = http_settings.timeout_seconds
        self._retry = RetryConfig(
            attempts=http_settings.retry_attempts,
            backoff_seconds=http_settings.retry_backoff_seconds,
        )
        self._transport = transport

    def is_configured(self) -> bool:
        return self._client.configured

    def _require_configuration(self) -> None:
        if not self.is_configured():
            raise ProviderConfigurationError(
                f"Shim '{self.key}' is missing client credentials.",
                provider_key=self.key,
            )

    def _http_client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self._timeout, transport=self._transport)

    # -- Authorization ---------------------------------------------------

    def build_authorization_request(
        self,
        *,
        user_id: str,
        state_key: str,
        options: Optional[Mapping[str, str]] = None,
    ) -> AuthorizationRequestParameters:
        self._require_configuration()
        options = options or {}
        scope = options.get("scope") or self.SCOPE_SEPARATOR.join(self._client.scopes)
        request_fields: Dict[str, Any] = {
            "redirect_uri": self._redirect_uri,
            "scope": scope,
        }
        params = {
            "client_id": self._client.client_id,
            "redirect_uri": self._redirect_uri,
            "response_type": "code",
            "scope": scope,
            "state": state_key,
        }
        params.update(self._extra_authorization_params())
        if self.USE_PKCE:
            verifier, challenge = pkce_pair()
            request_fields["code_verifier"] = verifier
            params["code_challenge"] = challenge
            params["code_challenge_method"] = "S256"

        return AuthorizationRequestParameters(
            state_key=state_key,
            user_id=user_id,
            provider_key=self.key,
            authorization_url=f"{self.AUTH_BASE_URL}?{urlencode(params)}",
            request_fields=request_fields,
        )

    def _extra_authorization_params(self) -> Dict[str, str]:
        return {}

    async def resolve_callback(
        self,
        *,
        payload: Mapping[str, Any],
        request: AuthorizationRequestParameters,
    ) -> AuthorizationResolution:
        error = payload.get("error")
        if error:
            description = payload.get("error_description") or error
            if error in self.DENIAL_ERRORS:
                raise AuthorizationDeniedError(
                    f"User denied access to '{self.key}': {description}",
                    provider_key=self.key,
                )
            raise ProviderProtocolError(
                f"'{self.key}' returned an authorization error: {description}",
                provider_key=self.key,
            )

        state = self.extract_state_key(payload) or ""
        if not hmac.compare_digest(state.encode("utf-8"), request.state_key.encode("utf-8")):
            raise ProviderProtocolError(
                "Callback state does not match the handshake.", provider_key=self.key
            )

        code = payload.get("code")
        if not code:
            raise ProviderProtocolError(
                "Callback is missing the authorization code.", provider_key=self.key
            )

        form = {
            "grant_type": "authorization_code",
            "code": str(code),
            "redirect_uri": request.request_fields.get("redirect_uri", self._redirect_uri),
        }
        verifier = request.request_fields.get("code_verifier")
        if verifier:
            form["code_verifier"] = verifier

        # Codes are single-use; a resent exchange would come back as invalid_grant.
        try:
            token_payload = await self._token_request(
                form, retry_config=RetryConfig(attempts=1)
            )
        except CredentialExpiredError as exc:
            raise ProviderProtocolError(
                f"'{self.key}' rejected the authorization code.", provider_key=self.key
            ) from exc
        return AuthorizationResolution(
            provider_key=self.key,
            credential_payload=token_payload,
            details=self._resolution_details(token_payload),
        )

    def _resolution_details(self, token_payload: Mapping[str, Any]) -> Dict[str, Any]:
        details: Dict[str, Any] = {}
        if token_payload.get("scope"):
            details["scope"] = token_payload["scope"]
        if token_payload.get("expires_at"):
            details["expires_at"] = token_payload["expires_at"]
        return details

    # -- Token endpoint --------------------------------------------------

    async def _token_request(
        self,
        form: Dict[str, str],
        *,
        retry_config: RetryConfig | None = None,
    ) -> Dict[str, Any]:
        self._require_configuration()
        async with self._http_client() as client:
            try:
                response = await send_with_retry(
                    client,
                    "POST",
                    self.TOKEN_URL,
                    retry_config=retry_config or self._retry,
                    **self._token_request_kwargs(form),
                )
            except httpx.TransportError as exc:
                raise ProviderUnavailableError(
                    f"Token endpoint for '{self.key}' is unreachable.",
                    provider_key=self.key,
                ) from exc
        return self._parse_token_response(response)

    def _token_request_kwargs(self, form: Dict[str, str]) -> Dict[str, Any]:
        """Client authentication via ``client_secret_post``."""
        return {
            "data": {
                **form,
                "client_id": self._client.client_id,
                "client_secret": self._client.client_secret,
            }
        }

    def _parse_token_response(self, response: httpx.Response) -> Dict[str, Any]:
        if response.status_code in RETRYABLE_STATUS_CODES:
            raise ProviderUnavailableError(
                f"Token endpoint for '{self.key}' returned {response.status_code}.",
                provider_key=self.key,
            )
        if response.status_code != httpx.codes.OK:
            logger.warning(
                "Token endpoint for %s returned %s", self.key, response.status_code
            )
            raise ProviderProtocolError(
                f"Token endpoint for '{self.key}' rejected the request "
                f"({response.status_code}).",
                provider_key=self.key,
            )
        return self._token_payload(self._decode_json(response))

    def _token_payload(self, body: Mapping[str, Any]) -> Dict[str, Any]:
        access_token = body.get("access_token")
        if not access_token:
            raise ProviderProtocolError(
                f"Incomplete token payload returned from '{self.key}'.",
                provider_key=self.key,
            )
        payload: Dict[str, Any] = {
            "access_token": access_token,
            "token_type": body.get("token_type", "Bearer"),
        }
        for field in ("refresh_token", "scope"):
            if body.get(field):
                payload[field] = body[field]
        expires_in = body.get("expires_in")
        if expires_in:
            expires_at = datetime.now(timezone.utc) + timedelta(seconds=int(expires_in))
            payload["expires_at"] = expires_at.isoformat()
        return payload

    def _decode_json(self, response: httpx.Response) -> Any:
        try:
            return response.json()
        except ValueError as exc:
            raise ProviderProtocolError(
                f"'{self.key}' returned a non-JSON response.", provider_key=self.key
            ) from exc

    # -- Refresh ---------------------------------------------------------

    def _needs_refresh(self, payload: Mapping[str, Any]) -> bool:
        expires_at_raw = payload.get("expires_at")
        if not expires_at_raw or not payload.get("refresh_token"):
            return False
        expires_at = datetime.fromisoformat(expires_at_raw)
        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=timezone.utc)
        return expires_at <= datetime.now(timezone.utc) + self._refresh_window

    async def refresh_if_needed(
        self, credential: AccessParameters
    ) -> Optional[Dict[str, Any]]:
        if not self._needs_refresh(credential.payload):
            return None
        return await self._refresh(credential.payload)

    async def _refresh(self, payload: Mapping[str, Any]) -> Dict[str, Any]:
        form = {
            "grant_type": "refresh_token",
            "refresh_token": payload["refresh_token"],
        }
        try:
            refreshed = await self._token_request(form)
        except ProviderProtocolError as exc:
            raise CredentialExpiredError(
                f"Refreshing the '{self.key}' credential failed.",
                provider_key=self.key,
            ) from exc
        # Providers that do not rotate refresh tokens omit them on refresh.
        refreshed.setdefault("refresh_token", payload["refresh_token"])
        for field, value in payload.items():
            refreshed.setdefault(field, value)
        logger.info("Refreshed %s credential", self.key)
        return refreshed

    # -- Data ------------------------------------------------------------

    async def fetch_data(
        self,
        *,
        credential: AccessParameters,
        data_type: str,
        query: DataQuery,
    ) -> DataPayload:
        if data_type not in self.data_types:
            raise ProviderProtocolError(
                f"Shim '{self.key}' does not support data type '{data_type}'.",
                provider_key=self.key,
            )
        payload: Dict[str, Any] = dict(credential.payload)
        if not payload.get("access_token"):
            raise CredentialExpiredError(
                "Stored credential has no access token.", provider_key=self.key
            )

        method, url, request_kwargs = self._build_data_request(data_type, query, payload)
        headers = dict(request_kwargs.pop("headers", {}))
        headers["Authorization"] = f"Bearer {payload['access_token']}"

        async with self._http_client() as client:
            try:
                response = await send_with_retry(
                    client,
                    method,
                    url,
                    retry_config=self._retry,
                    headers=headers,
                    **request_kwargs,
                )
            except httpx.TransportError as exc:
                raise ProviderUnavailableError(
                    f"'{self.key}' data endpoint is unreachable.", provider_key=self.key
                ) from exc

        body = self._parse_data_response(response)
        return DataPayload(
            provider_key=self.key,
            data_type=data_type,
            body=body,
        )

    def _build_data_request(
        self, data_type: str, query: DataQuery, payload: Mapping[str, Any]
    ) -> DataRequest:
        """Return ``(method, url, httpx request kwargs)`` for a data type."""
        raise NotImplementedError

    def _parse_data_response(self, response: httpx.Response) -> Any:
        if response.status_code == httpx.codes.UNAUTHORIZED:
            raise CredentialExpiredError(
                f"'{self.key}' rejected the stored credential.", provider_key=self.key
            )
        if response.status_code in RETRYABLE_STATUS_CODES:
            raise ProviderUnavailableError(
                f"'{self.key}' returned {response.status_code}.", provider_key=self.key
            )
        if not response.is_success:
            raise ProviderProtocolError(
                f"'{self.key}' returned unexpected status {response.status_code}.",
                provider_key=self.key,
            )
        return self._decode_json(response)


__all__ = ["DataRequest", "OAuth2Provider", "date_range", "pkce_pair"]
