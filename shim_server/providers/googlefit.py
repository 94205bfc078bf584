"""Google Fit shim using the REST aggregate endpoint."""

from __future__ import annotations

from datetime import datetime, time, timezone
from types import MappingProxyType
from typing import Dict, Mapping

from shim_server.models.records import DataQuery
from shim_server.providers.oauth2 import DataRequest, OAuth2Provider, date_range

_DAY_MILLIS = 24 * 60 * 60 * 1000


class GoogleFitProvider(OAuth2Provider):
    """Daily aggregates of Google Fit data sources."""

    key = "googlefit"
    label = "Google Fit"

    AUTH_BASE_URL = "https://accounts.google.com/o/oauth2/v2/auth"
    TOKEN_URL = "https://oauth2.googleapis.com/token"
    AGGREGATE_URL = "https://www.googleapis.com/fitness/v1/users/me/dataset:aggregate"

    data_types = MappingProxyType(
        {
            "steps": "Daily step count",
            "activity": "Activity segments",
            "weight": "Body weight samples",
            "heart_rate": "Heart rate summaries",
        }
    )

    _DATA_TYPE_NAMES = {
        "steps": "com.google.step_count.delta",
        "activity": "com.google.activity.segment",
        "weight": "com.google.weight",
        "heart_rate": "com.google.heart_rate.bpm",
    }

    def _extra_authorization_params(self) -> Dict[str, str]:
        # Offline access plus forced consent so Google always issues a refresh token.
        return {
            "access_type": "offline",
            "include_granted_scopes": "true",
            "prompt": "consent",
        }

    def _build_data_request(
        self, data_type: str, query: DataQuery, payload: Mapping[str, object]
    ) -> DataRequest:
        start, end = date_range(query)
        start_ms = int(datetime.combine(start, time.min, timezone.utc).timestamp() * 1000)
        end_ms = int(datetime.combine(end, time.min, timezone.utc).timestamp() * 1000)
        body = {
            "aggregateBy": [{"dataTypeName": self._DATA_TYPE_NAMES[data_type]}],
            "bucketByTime": {"durationMillis": _DAY_MILLIS},
            "startTimeMillis": start_ms,
            "endTimeMillis": end_ms + _DAY_MILLIS,
        }
        return "POST", self.AGGREGATE_URL, {"json": body}


__all__ = ["GoogleFitProvider"]
