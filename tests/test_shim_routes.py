try:
    from . import _bootstrap  # noqa: F401
except Exception:  # pragma: no cover
    import _bootstrap  # type: ignore # noqa: F401

from urllib.parse import parse_qs, urlparse

import httpx
import pytest

from shim_server.clients.stores import DuplicateStateKeyError
from shim_server.core.errors import CredentialExpiredError, ProviderUnavailableError
from shim_server.main import app
from shim_server.models.records import AccessParameters

pytestmark = pytest.mark.anyio("asyncio")


@pytest.fixture()
def api_overrides(handshake_service, data_access_service, registry):
    from shim_server import dependencies

    overrides = {
        dependencies.get_handshake_service: lambda: handshake_service,
        dependencies.get_data_access_service: lambda: data_access_service,
        dependencies.get_provider_registry: lambda: registry,
    }
    app.dependency_overrides.update(overrides)

    yield

    app.dependency_overrides.clear()


def _client() -> httpx.AsyncClient:
    return httpx.AsyncClient(
        transport=httpx.ASGITransport(app=app), base_url="http://testserver"
    )


def _state_from(authorization_url: str) -> str:
    return parse_qs(urlparse(authorization_url).query)["state"][0]


async def _authorize(client: httpx.AsyncClient, **params) -> dict:
    params.setdefault("username", "alice")
    response = await client.get("/api/authorize/fitbit", params=params)
    assert response.status_code == 200
    return response.json()


async def test_health_endpoint() -> None:
    async with _client() as client:
        response = await client.get("/api/health")

    assert response.status_code == 200
    assert response.json() == {"status": "ok"}


async def test_authorize_returns_json_by_default(api_overrides) -> None:
    async with _client() as client:
        data = await _authorize(client, client_redirect_url="https://app.example/done")

    assert data["provider_key"] == "fitbit"
    assert data["user_id"] == "alice"
    assert data["is_authorized"] is False
    assert data["client_redirect_url"] == "https://app.example/done"
    assert _state_from(data["authorization_url"]) == data["state_key"]


async def test_authorize_redirects_when_requested(api_overrides) -> None:
    async with _client() as client:
        explicit = await client.get(
            "/api/authorize/fitbit", params={"username": "alice", "redirect": "true"}
        )
        browser = await client.get(
            "/api/authorize/fitbit",
            params={"username": "alice"},
            headers={"accept": "text/html,application/xhtml+xml"},
        )

    for response in (explicit, browser):
        assert response.status_code == 307
        assert response.headers["location"].startswith("https://provider.example/auth")


async def test_authorize_requires_username(api_overrides) -> None:
    async with _client() as client:
        response = await client.get("/api/authorize/fitbit")

    assert response.status_code == 422


async def test_unknown_shim_is_not_found(api_overrides) -> None:
    async with _client() as client:
        response = await client.get("/api/authorize/myspace", params={"username": "alice"})

    assert response.status_code == 404
    assert response.json()["error"] == "UnknownProviderError"


async def test_callback_redirects_to_client_without_body(api_overrides) -> None:
    async with _client() as client:
        data = await _authorize(client, client_redirect_url="https://app.example/done")
        response = await client.get(
            "/api/authorize/fitbit/callback",
            params={"state": data["state_key"], "code": "abc"},
        )
        replay = await client.get(
            "/api/authorize/fitbit/callback",
            params={"state": data["state_key"], "code": "abc"},
        )
        again = await _authorize(client)

    assert response.status_code == 302
    assert response.headers["location"] == "https://app.example/done"
    assert response.content == b""
    assert replay.status_code == 400
    assert replay.json()["error"] == "UnknownCorrelationError"
    assert again["is_authorized"] is True


async def test_callback_without_target_returns_resolution(api_overrides) -> None:
    async with _client() as client:
        data = await _authorize(client)
        response = await client.get(
            "/api/authorize/fitbit/callback",
            params={"state": data["state_key"], "code": "abc"},
        )

    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "authorized"
    assert body["user_id"] == "alice"
    assert body["details"] == {"scope": "activity"}
    assert "access_token" not in response.text


async def test_callback_accepts_form_post(api_overrides) -> None:
    async with _client() as client:
        data = await _authorize(client)
        response = await client.post(
            "/api/authorize/fitbit/callback",
            data={"state": data["state_key"], "code": "posted"},
        )

    assert response.status_code == 200
    assert response.json()["provider_key"] == "fitbit"


async def test_callback_accepts_json_post(api_overrides, credential_store) -> None:
    async with _client() as client:
        data = await _authorize(client)
        response = await client.post(
            "/api/authorize/fitbit/callback",
            json={"state": data["state_key"], "code": "json"},
        )
        broken = await client.post(
            "/api/authorize/fitbit/callback",
            content=b"{not json",
            headers={"content-type": "application/json"},
        )

    assert response.status_code == 200
    assert credential_store.latest("alice", "fitbit").payload == {"access_token": "token-json"}
    assert broken.status_code == 400


async def test_callback_rejects_undecodable_form_body(api_overrides, credential_store) -> None:
    async with _client() as client:
        response = await client.post(
            "/api/authorize/fitbit/callback",
            content=b"state=\xff\xfe&code=x",
            headers={"content-type": "application/x-www-form-urlencoded"},
        )

    assert response.status_code == 400
    assert credential_store.latest("alice", "fitbit") is None


async def test_state_key_exhaustion_is_unavailable(
    api_overrides, correlation_store, monkeypatch
) -> None:
    def always_collides(record) -> None:
        raise DuplicateStateKeyError(record.state_key)

    monkeypatch.setattr(correlation_store, "create", always_collides)

    async with _client() as client:
        response = await client.get("/api/authorize/fitbit", params={"username": "alice"})

    assert response.status_code == 503
    assert response.json()["error"] == "StateKeyAllocationError"


async def test_denied_callback_is_forbidden(api_overrides, credential_store) -> None:
    async with _client() as client:
        data = await _authorize(client, client_redirect_url="https://app.example/done")
        response = await client.get(
            "/api/authorize/fitbit/callback",
            params={"state": data["state_key"], "error": "access_denied"},
        )

    assert response.status_code == 403
    assert response.json()["error"] == "AuthorizationDeniedError"
    assert credential_store.latest("alice", "fitbit") is None


async def test_malformed_redirect_target_reports_stored_credential(
    api_overrides, credential_store
) -> None:
    async with _client() as client:
        data = await _authorize(client, client_redirect_url="not a url")
        response = await client.get(
            "/api/authorize/fitbit/callback",
            params={"state": data["state_key"], "code": "abc"},
        )

    assert response.status_code == 400
    body = response.json()
    assert body["error"] == "RedirectTargetError"
    assert body["status"] == "authorized"
    assert credential_store.latest("alice", "fitbit") is not None


async def test_data_requires_authorization(api_overrides) -> None:
    async with _client() as client:
        response = await client.get("/api/data/fitbit/steps", params={"username": "alice"})

    assert response.status_code == 403
    assert response.json()["error"] == "NotAuthorizedError"


async def test_data_after_authorization(api_overrides, stub_provider) -> None:
    async with _client() as client:
        data = await _authorize(client)
        await client.get(
            "/api/authorize/fitbit/callback",
            params={"state": data["state_key"], "code": "abc"},
        )
        response = await client.get(
            "/api/data/fitbit/steps",
            params={
                "username": "alice",
                "date_start": "2024-01-01",
                "date_end": "2024-01-07",
                "detail_level": "1min",
            },
        )

    assert response.status_code == 200
    body = response.json()
    assert body["provider_key"] == "fitbit"
    assert body["data_type"] == "steps"
    assert body["body"] == {"access_token": "token-abc"}


async def test_data_rejects_inverted_date_range(api_overrides) -> None:
    async with _client() as client:
        response = await client.get(
            "/api/data/fitbit/steps",
            params={"username": "alice", "date_start": "2024-02-01", "date_end": "2024-01-01"},
        )

    assert response.status_code == 400


@pytest.mark.parametrize(
    ("error", "status", "retry_after"),
    [
        (CredentialExpiredError("expired", provider_key="fitbit"), 401, None),
        (ProviderUnavailableError("down", provider_key="fitbit"), 503, "30"),
    ],
)
async def test_data_error_mapping(
    api_overrides, stub_provider, credential_store, error, status, retry_after
) -> None:
    credential_store.save(
        AccessParameters(user_id="alice", provider_key="fitbit", payload={"access_token": "t"})
    )
    stub_provider.fetch_error = error

    async with _client() as client:
        response = await client.get("/api/data/fitbit/steps", params={"username": "alice"})

    assert response.status_code == status
    assert response.headers.get("retry-after") == retry_after


async def test_deauthorize_is_idempotent(api_overrides) -> None:
    async with _client() as client:
        data = await _authorize(client)
        await client.get(
            "/api/authorize/fitbit/callback",
            params={"state": data["state_key"], "code": "abc"},
        )
        first = await client.delete("/api/de-authorize/fitbit", params={"username": "alice"})
        second = await client.delete("/api/de-authorize/fitbit", params={"username": "alice"})
        after = await client.get("/api/data/fitbit/steps", params={"username": "alice"})

    assert first.json()["removed"] == 1
    assert second.json()["removed"] == 0
    assert after.status_code == 403


async def test_registry_and_authorizations(api_overrides) -> None:
    async with _client() as client:
        registry = await client.get("/api/registry")
        data = await _authorize(client)
        await client.get(
            "/api/authorize/fitbit/callback",
            params={"state": data["state_key"], "code": "abc"},
        )
        authorizations = await client.get(
            "/api/authorizations", params={"username": "alice"}
        )

    assert [shim["key"] for shim in registry.json()["shims"]] == ["fitbit", "withings"]
    assert registry.json()["shims"][0]["data_types"] == {"steps": "Daily steps"}
    assert registry.json()["shims"][0]["callback_url"].endswith(
        "/api/authorize/fitbit/callback"
    )
    summary = authorizations.json()["authorizations"]
    assert [item["provider_key"] for item in summary] == ["fitbit"]
    assert summary[0]["grants"] == 1
