"""
Withings shim.

Withings wraps every response, including token responses, in a
``{"status": <int>, "body": {...}}`` envelope and answers HTTP 200 even on
failure, so status handling happens on the envelope.
"""

from __future__ import annotations

from datetime import datetime, time, timezone
from types import MappingProxyType
from typing import Any, Dict, Mapping

import httpx

from shim_server.core.errors import (
    CredentialExpiredError,
    ProviderProtocolError,
    ProviderUnavailableError,
)
from shim_server.models.records import DataQuery
from shim_server.providers.oauth2 import DataRequest, OAuth2Provider, date_range
from shim_server.utils.http import RETRYABLE_STATUS_CODES

_STATUS_OK = 0
_STATUS_INVALID_TOKEN = 401
_STATUS_RATE_LIMITED = 601
_STATUS_UNAVAILABLE = frozenset({2554, 2555, 5000, 5001, 5005})


def _epoch(value, *, end_of_day: bool = False) -> int:
    moment = datetime.combine(value, time.max if end_of_day else time.min, timezone.utc)
    return int(moment.timestamp())


class WithingsProvider(OAuth2Provider):
    """Body measures, activity summaries and sleep summaries from Withings."""

    key = "withings"
    label = "Withings"

    AUTH_BASE_URL = "https://account.withings.com/oauth2_user/authorize2"
    TOKEN_URL = "https://wbsapi.withings.net/v2/oauth2"
    API_BASE_URL = "https://wbsapi.withings.net"
    SCOPE_SEPARATOR = ","

    data_types = MappingProxyType(
        {
            "body": "Body measures (weight, fat ratio, blood pressure)",
            "activity": "Daily activity summaries",
            "sleep": "Nightly sleep summaries",
        }
    )

    def _token_request_kwargs(self, form: Dict[str, str]) -> Dict[str, Any]:
        kwargs = super()._token_request_kwargs(form)
        kwargs["data"]["action"] = "requesttoken"
        return kwargs

    def _parse_token_response(self, response: httpx.Response) -> Dict[str, Any]:
        if response.status_code in RETRYABLE_STATUS_CODES:
            raise ProviderUnavailableError(
                f"Token endpoint for '{self.key}' returned {response.status_code}.",
                provider_key=self.key,
            )
        body = self._unwrap(response)
        return self._token_payload(body)

    def _token_payload(self, body: Mapping[str, Any]) -> Dict[str, Any]:
        payload = super()._token_payload(body)
        if body.get("userid") is not None:
            payload["userid"] = str(body["userid"])
        return payload

    def _resolution_details(self, token_payload: Mapping[str, Any]) -> Dict[str, Any]:
        details = super()._resolution_details(token_payload)
        if token_payload.get("userid"):
            details["provider_user_id"] = token_payload["userid"]
        return details

    def _build_data_request(
        self, data_type: str, query: DataQuery, payload: Mapping[str, Any]
    ) -> DataRequest:
        start, end = date_range(query)
        if data_type == "body":
            form = {
                "action": "getmeas",
                "category": "1",
                "startdate": str(_epoch(start)),
                "enddate": str(_epoch(end, end_of_day=True)),
            }
            return "POST", f"{self.API_BASE_URL}/measure", {"data": form}

        form = {
            "action": "getactivity" if data_type == "activity" else "getsummary",
            "startdateymd": start.isoformat(),
            "enddateymd": end.isoformat(),
        }
        path = "/v2/measure" if data_type == "activity" else "/v2/sleep"
        return "POST", f"{self.API_BASE_URL}{path}", {"data": form}

    def _parse_data_response(self, response: httpx.Response) -> Any:
        if response.status_code == httpx.codes.UNAUTHORIZED:
            raise CredentialExpiredError(
                f"'{self.key}' rejected the stored credential.", provider_key=self.key
            )
        if response.status_code in RETRYABLE_STATUS_CODES:
            raise ProviderUnavailableError(
                f"'{self.key}' returned {response.status_code}.", provider_key=self.key
            )
        return self._unwrap(response)

    def _unwrap(self, response: httpx.Response) -> Dict[str, Any]:
        envelope = self._decode_json(response)
        if not isinstance(envelope, dict) or "status" not in envelope:
            raise ProviderProtocolError(
                f"'{self.key}' returned a response without a status envelope.",
                provider_key=self.key,
            )
        status = envelope["status"]
        if status == _STATUS_OK:
            return envelope.get("body") or {}
        if status == _STATUS_INVALID_TOKEN:
            raise CredentialExpiredError(
                f"'{self.key}' reports the access token is invalid.",
                provider_key=self.key,
            )
        if status == _STATUS_RATE_LIMITED or status in _STATUS_UNAVAILABLE:
            raise ProviderUnavailableError(
                f"'{self.key}' is temporarily unavailable (status {status}).",
                provider_key=self.key,
            )
        raise ProviderProtocolError(
            f"'{self.key}' returned error status {status}: {envelope.get('error', '')}",
            provider_key=self.key,
        )


__all__ = ["WithingsProvider"]
