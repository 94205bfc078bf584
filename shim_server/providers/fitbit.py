"""Fitbit Web API shim (OAuth 2.0 with PKCE and HTTP Basic client auth)."""

from __future__ import annotations

from types import MappingProxyType
from typing import Any, Dict, Mapping

from shim_server.models.records import DataQuery
from shim_server.providers.oauth2 import DataRequest, OAuth2Provider, date_range


class FitbitProvider(OAuth2Provider):
    """Steps, activities, body weight, sleep and heart rate from Fitbit."""

    key = "fitbit"
    label = "Fitbit"

    AUTH_BASE_URL = "https://www.fitbit.com/oauth2/authorize"
    TOKEN_URL = "https://api.fitbit.com/oauth2/token"
    API_BASE_URL = "https://api.fitbit.com"
    USE_PKCE = True

    data_types = MappingProxyType(
        {
            "steps": "Daily step count time series",
            "activity": "Logged activities",
            "weight": "Body weight log",
            "sleep": "Sleep logs",
            "heart_rate": "Daily heart rate summaries",
        }
    )

    _SERIES_PATHS = {
        "steps": "/1/user/-/activities/steps/date/{start}/{end}.json",
        "weight": "/1/user/-/body/log/weight/date/{start}/{end}.json",
        "sleep": "/1.2/user/-/sleep/date/{start}/{end}.json",
        "heart_rate": "/1/user/-/activities/heart/date/{start}/{end}.json",
    }

    def _token_request_kwargs(self, form: Dict[str, str]) -> Dict[str, Any]:
        # Fitbit requires client_secret_basic on the token endpoint.
        return {
            "auth": (self._client.client_id, self._client.client_secret),
            "data": form,
        }

    def _resolution_details(self, token_payload: Mapping[str, Any]) -> Dict[str, Any]:
        details = super()._resolution_details(token_payload)
        if token_payload.get("user_id"):
            details["provider_user_id"] = token_payload["user_id"]
        return details

    def _token_payload(self, body: Mapping[str, Any]) -> Dict[str, Any]:
        payload = super()._token_payload(body)
        if body.get("user_id"):
            payload["user_id"] = body["user_id"]
        return payload

    def _build_data_request(
        self, data_type: str, query: DataQuery, payload: Mapping[str, Any]
    ) -> DataRequest:
        start, end = date_range(query)
        if data_type == "activity":
            params = {
                "afterDate": start.isoformat(),
                "sort": "asc",
                "offset": "0",
                "limit": str(min(query.num_to_return or 20, 100)),
            }
            return "GET", f"{self.API_BASE_URL}/1/user/-/activities/list.json", {"params": params}

        path = self._SERIES_PATHS[data_type].format(
            start=start.isoformat(), end=end.isoformat()
        )
        return "GET", f"{self.API_BASE_URL}{path}", {}


__all__ = ["FitbitProvider"]
