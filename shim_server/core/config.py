"""
Application configuration models and helpers.

Centralizes settings management so the FastAPI app, the provider registry,
and maintenance scripts share a consistent configuration surface.
"""

from functools import lru_cache
from pathlib import Path
from typing import Annotated, Literal, Optional

import os

from pydantic import AnyHttpUrl, Field, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict


def _load_env_file(path: str = ".env") -> None:
    """Best-effort load key=value pairs from a .env file without extra deps."""
    env_path = Path(path)
    if not env_path.exists():
        return
    for raw_line in env_path.read_text().splitlines():
        line = raw_line.strip()
        if not line or line.startswith("#"):
            continue
        key, sep, value = line.partition("=")
        if not sep:
            continue
        key = key.strip()
        if not key or key in os.environ:
            continue
        cleaned = value.strip().strip('"').strip("'")
        os.environ[key] = cleaned


_load_env_file()


def _split_scopes(value: str | tuple[str, ...] | list[str]) -> tuple[str, ...]:
    """Support providing scopes as a comma-separated string."""
    if isinstance(value, tuple):
        return value
    if isinstance(value, list):
        return tuple(value)
    return tuple(scope.strip() for scope in value.split(",") if scope.strip())


Scopes = Annotated[tuple[str, ...], NoDecode]


class ShimClientSettings(BaseSettings):
    """Client registration shared by every OAuth 2.0 shim."""

    model_config = SettingsConfigDict(populate_by_name=True, extra="ignore")

    client_id: Optional[str] = None
    client_secret: Optional[str] = None
    scopes: Scopes = ()

    @field_validator("scopes", mode="before")
    @classmethod
    def _parse_scopes(cls, value: str | tuple[str, ...] | list[str]) -> tuple[str, ...]:
        return _split_scopes(value)

    @property
    def configured(self) -> bool:
        return bool(self.client_id and self.client_secret)


class FitbitSettings(ShimClientSettings):
    """Credentials for the Fitbit Web API."""

    client_id: Optional[str] = Field(None, validation_alias="FITBIT_CLIENT_ID")
    client_secret: Optional[str] = Field(None, validation_alias="FITBIT_CLIENT_SECRET")
    scopes: Scopes = Field(
        ("activity", "heartrate", "sleep", "weight", "profile"),
        validation_alias="FITBIT_SCOPES",
    )


class WithingsSettings(ShimClientSettings):
    """Credentials for the Withings public API."""

    client_id: Optional[str] = Field(None, validation_alias="WITHINGS_CLIENT_ID")
    client_secret: Optional[str] = Field(None, validation_alias="WITHINGS_CLIENT_SECRET")
    scopes: Scopes = Field(
        ("user.info", "user.metrics", "user.activity"),
        validation_alias="WITHINGS_SCOPES",
    )


class GoogleFitSettings(ShimClientSettings):
    """Credentials for the Google Fit REST API."""

    client_id: Optional[str] = Field(None, validation_alias="GOOGLEFIT_CLIENT_ID")
    client_secret: Optional[str] = Field(None, validation_alias="GOOGLEFIT_CLIENT_SECRET")
    scopes: Scopes = Field(
        (
            "https://www.googleapis.com/auth/fitness.activity.read",
            "https://www.googleapis.com/auth/fitness.body.read",
            "https://www.googleapis.com/auth/fitness.heart_rate.read",
        ),
        validation_alias="GOOGLEFIT_SCOPES",
    )


class OAuthSettings(BaseSettings):
    """Handshake timing configuration."""

    model_config = SettingsConfigDict(populate_by_name=True, extra="ignore")

    state_ttl_seconds: int = Field(900, validation_alias="OAUTH_STATE_TTL")
    claim_timeout_seconds: int = Field(
        60,
        validation_alias="OAUTH_CLAIM_TIMEOUT",
        description="Seconds a callback may hold a handshake before it can be replayed.",
    )
    refresh_window_seconds: int = Field(300, validation_alias="OAUTH_REFRESH_WINDOW")


class StorageSettings(BaseSettings):
    """Where correlation and credential records live."""

    model_config = SettingsConfigDict(populate_by_name=True, extra="ignore")

    backend: Literal["sqlite", "dynamodb"] = Field("sqlite", validation_alias="STORAGE_BACKEND")
    sqlite_path: str = Field("data/shim_server.db", validation_alias="SHIM_DB_PATH")
    region_name: str = Field("us-east-1", validation_alias="AWS_REGION")
    dynamodb_table_name: Optional[str] = Field(None, validation_alias="DYNAMODB_TABLE_NAME")


class SecuritySettings(BaseSettings):
    """Security-related configuration."""

    model_config = SettingsConfigDict(populate_by_name=True, extra="ignore")

    token_encryption_secret: Optional[str] = Field(
        None,
        validation_alias="TOKEN_ENCRYPTION_SECRET",
        description=(
            "Secret used to derive the symmetric key for encrypting stored credentials."
        ),
    )


class HTTPSettings(BaseSettings):
    """Outbound HTTP behaviour for provider calls."""

    model_config = SettingsConfigDict(populate_by_name=True, extra="ignore")

    timeout_seconds: float = Field(10.0, validation_alias="HTTP_TIMEOUT")
    retry_attempts: int = Field(3, validation_alias="HTTP_RETRY_ATTEMPTS")
    retry_backoff_seconds: float = Field(1.0, validation_alias="HTTP_RETRY_BACKOFF")


class AppSettings(BaseSettings):
    """Root settings object for the FastAPI application."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        populate_by_name=True,
        extra="ignore",
    )

    environment: str = Field("development", validation_alias="APP_ENV")
    log_level: str = Field("INFO", validation_alias="APP_LOG_LEVEL")
    callback_base_url: AnyHttpUrl = Field(
        "http://localhost:8083",
        validation_alias="SHIM_CALLBACK_BASE_URL",
        description="Public base URL providers redirect back to after consent.",
    )
    oauth: OAuthSettings = Field(default_factory=OAuthSettings)
    storage: StorageSettings = Field(default_factory=StorageSettings)
    security: SecuritySettings = Field(default_factory=SecuritySettings)
    http: HTTPSettings = Field(default_factory=HTTPSettings)
    fitbit: FitbitSettings = Field(default_factory=FitbitSettings)
    withings: WithingsSettings = Field(default_factory=WithingsSettings)
    googlefit: GoogleFitSettings = Field(default_factory=GoogleFitSettings)

    def callback_url_for(self, provider_key: str) -> str:
        """Return the redirect URI registered with a provider."""
        base = str(self.callback_base_url).rstrip("/")
        return f"{base}/api/authorize/{provider_key}/callback"


@lru_cache()
def get_settings() -> AppSettings:
    """Return a cached settings object."""
    return AppSettings()  # type: ignore[call-arg]


__all__ = [
    "AppSettings",
    "FitbitSettings",
    "GoogleFitSettings",
    "HTTPSettings",
    "OAuthSettings",
    "SecuritySettings",
    "ShimClientSettings",
    "StorageSettings",
    "WithingsSettings",
    "get_settings",
]
