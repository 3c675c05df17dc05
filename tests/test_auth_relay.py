from urllib.parse import parse_qs, urlparse

import httpx
import pytest
from fastapi.testclient import TestClient

from auth_relay.config import ProviderCredentials, RelayConfigurationError, RelaySettings, get_relay_settings
from auth_relay.main import create_app
from auth_relay.state_store import RelayStateStore, TokensNotReady

APP_REDIRECT = "http://127.0.0.1:8765/auth/callback"


class UpstreamStub:
    """Stands in for the provider's token and profile endpoints."""

    def __init__(self):
        self.requests: list[httpx.Request] = []
        self.token_response = httpx.Response(
            200,
            json={"access_token": "a1", "refresh_token": "r1", "expires_in": 3599, "token_type": "Bearer"},
        )
        self.profile_response = httpx.Response(
            200, json={"id": "user-1", "name": "Alice", "email": "alice@example.com"}
        )

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if request.url.path == "/token":
            return self.token_response
        if request.url.path == "/oauth2/v2/userinfo":
            return self.profile_response
        return httpx.Response(404)


@pytest.fixture
def upstream() -> UpstreamStub:
    return UpstreamStub()


@pytest.fixture
def client(upstream: UpstreamStub):
    settings = RelaySettings(
        public_url="https://relay.test",
        app_redirect=APP_REDIRECT,
        credentials={"google_drive": ProviderCredentials("client-id", "client-secret")},
    )
    app = create_app(settings, http_client=httpx.AsyncClient(transport=httpx.MockTransport(upstream.handler)))
    with TestClient(app) as test_client:
        yield test_client


def _query(response) -> dict[str, str]:
    return {k: v[0] for k, v in parse_qs(urlparse(response.headers["location"]).query).items()}


def test_health(client: TestClient) -> None:
    assert client.get("/health").json() == {"status": "ok"}


def test_start_redirects_to_provider(client: TestClient) -> None:
    response = client.get("/auth/google_drive", params={"state": "s1"}, follow_redirects=False)

    assert response.status_code == 302
    location = response.headers["location"]
    assert location.startswith("https://accounts.google.com/o/oauth2/v2/auth?")
    query = _query(response)
    assert query["state"] == "s1"
    assert query["client_id"] == "client-id"
    assert query["redirect_uri"] == "https://relay.test/auth/callback"
    assert query["access_type"] == "offline"
    assert "client-secret" not in location


def test_start_unknown_provider(client: TestClient) -> None:
    response = client.get("/auth/dropbox", params={"state": "s1"}, follow_redirects=False)

    assert response.status_code == 404
    assert response.json()["error"] == "unsupported_provider"


def test_start_requires_state(client: TestClient) -> None:
    response = client.get("/auth/google_drive", follow_redirects=False)

    assert response.status_code == 400


def test_full_handshake_hands_tokens_out_once(client: TestClient, upstream: UpstreamStub) -> None:
    client.get("/auth/google_drive", params={"state": "s1"}, follow_redirects=False)

    assert client.get("/auth/tokens/s1").json()["error"] == "tokens_not_ready"

    callback = client.get("/auth/callback", params={"code": "c1", "state": "s1"}, follow_redirects=False)
    assert callback.status_code == 302
    assert callback.headers["location"].startswith(APP_REDIRECT)
    assert _query(callback) == {"code": "c1", "state": "s1"}

    exchange = parse_qs(upstream.requests[0].content.decode())
    assert exchange["grant_type"] == ["authorization_code"]
    assert exchange["client_secret"] == ["client-secret"]
    assert upstream.requests[1].headers["authorization"] == "Bearer a1"

    tokens = client.get("/auth/tokens/s1")
    assert tokens.status_code == 200
    body = tokens.json()
    assert body["access_token"] == "a1"
    assert body["refresh_token"] == "r1"
    assert body["profile"]["email"] == "alice@example.com"

    again = client.get("/auth/tokens/s1")
    assert again.status_code == 404
    assert again.json()["error"] == "invalid_state"


def test_callback_with_unknown_state(client: TestClient, upstream: UpstreamStub) -> None:
    response = client.get("/auth/callback", params={"code": "c1", "state": "nope"}, follow_redirects=False)

    assert _query(response)["error"] == "invalid_state"
    assert upstream.requests == []


def test_callback_with_provider_error(client: TestClient) -> None:
    client.get("/auth/google_drive", params={"state": "s1"}, follow_redirects=False)

    response = client.get(
        "/auth/callback", params={"error": "access_denied", "state": "s1"}, follow_redirects=False
    )

    assert _query(response) == {"error": "access_denied", "state": "s1"}
    tokens = client.get("/auth/tokens/s1")
    assert tokens.status_code == 400
    assert tokens.json()["error"] == "access_denied"


def test_failed_code_exchange(client: TestClient, upstream: UpstreamStub) -> None:
    upstream.token_response = httpx.Response(400, json={"error": "invalid_grant"})
    client.get("/auth/google_drive", params={"state": "s1"}, follow_redirects=False)

    response = client.get("/auth/callback", params={"code": "c1", "state": "s1"}, follow_redirects=False)

    assert _query(response)["error"] == "token_exchange_failed"
    assert client.get("/auth/tokens/s1").json()["error"] == "token_exchange_failed"


def test_refresh_success(client: TestClient, upstream: UpstreamStub) -> None:
    upstream.token_response = httpx.Response(200, json={"access_token": "a2", "expires_in": 3600})

    response = client.post("/auth/google_drive/refresh", json={"refresh_token": "r1"})

    assert response.status_code == 200
    assert response.json() == {"access_token": "a2", "expires_in": 3600, "token_type": "Bearer"}
    sent = parse_qs(upstream.requests[0].content.decode())
    assert sent["grant_type"] == ["refresh_token"]
    assert sent["refresh_token"] == ["r1"]


def test_refresh_rotated_token_is_passed_on(client: TestClient, upstream: UpstreamStub) -> None:
    upstream.token_response = httpx.Response(
        200, json={"access_token": "a2", "refresh_token": "r2", "expires_in": 3600}
    )

    response = client.post("/auth/google_drive/refresh", json={"refresh_token": "r1"})

    assert response.json()["refresh_token"] == "r2"


def test_refresh_rejected_grant(client: TestClient, upstream: UpstreamStub) -> None:
    upstream.token_response = httpx.Response(
        400, json={"error": "invalid_grant", "error_description": "Token has been expired or revoked."}
    )

    response = client.post("/auth/google_drive/refresh", json={"refresh_token": "r1"})

    assert response.status_code == 400
    assert response.json() == {
        "error": "invalid_grant",
        "error_description": "Token has been expired or revoked.",
    }


def test_refresh_upstream_outage(client: TestClient, upstream: UpstreamStub) -> None:
    upstream.token_response = httpx.Response(503)

    response = client.post("/auth/google_drive/refresh", json={"refresh_token": "r1"})

    assert response.status_code == 502
    assert response.json()["error"] == "upstream_unavailable"


def test_refresh_requires_body(client: TestClient) -> None:
    assert client.post("/auth/google_drive/refresh", json={}).status_code == 422


def test_state_store_expiry(monkeypatch: pytest.MonkeyPatch) -> None:
    store = RelayStateStore(ttl_seconds=10)
    store.begin("s1", "google_drive")

    with pytest.raises(TokensNotReady):
        store.take_tokens("s1")

    import auth_relay.state_store as state_store

    real_time = state_store.time.time
    monkeypatch.setattr(state_store.time, "time", lambda: real_time() + 60)
    assert store.take_tokens("s1") is None
    assert len(store) == 0


def test_relay_settings_need_id_and_secret_together(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr("auth_relay.config.load_dotenv", lambda: None)
    monkeypatch.setenv("RELAY_DROPBOX_CLIENT_ID", "id-only")
    monkeypatch.delenv("RELAY_DROPBOX_CLIENT_SECRET", raising=False)

    with pytest.raises(RelayConfigurationError):
        get_relay_settings()


def test_relay_settings_from_env(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr("auth_relay.config.load_dotenv", lambda: None)
    for provider in ("GOOGLE_DRIVE", "ONE_DRIVE", "DROPBOX"):
        monkeypatch.delenv(f"RELAY_{provider}_CLIENT_ID", raising=False)
        monkeypatch.delenv(f"RELAY_{provider}_CLIENT_SECRET", raising=False)
    monkeypatch.setenv("RELAY_ONE_DRIVE_CLIENT_ID", "ms-id")
    monkeypatch.setenv("RELAY_ONE_DRIVE_CLIENT_SECRET", "ms-secret")
    monkeypatch.setenv("RELAY_PUBLIC_URL", "https://relay.example.com/")
    monkeypatch.setenv("RELAY_STATE_TTL_SECONDS", "not-a-number")

    settings = get_relay_settings()

    assert set(settings.credentials) == {"one_drive"}
    assert settings.callback_url == "https://relay.example.com/auth/callback"
    assert settings.state_ttl_seconds == 600
    assert "ms-secret" not in repr(settings)
