"""
Authentication Flow Tests

Tests the login and callback endpoints end to end against the mock
identity provider: redirects, Jitsi token issuance, replay and expiry
protection, cookie binding and error pages.
"""

import time
from urllib.parse import parse_qs, urlparse

import httpx
import jwt
import pytest
from fastapi.testclient import TestClient

from conftest import (
    AUTHORIZATION_ENDPOINT,
    CLIENT_ID,
    JITSI_APP_ID,
    JITSI_SECRET,
    FakeClock,
    build_settings,
)
from jitsi_bridge.auth.correlator import InMemoryHandshakeStore
from jitsi_bridge.auth.oidc import OIDCClient
from jitsi_bridge.auth.routes import HANDSHAKE_COOKIE
from jitsi_bridge.main import create_app


def decode_jitsi_token(token: str) -> dict:
    return jwt.decode(
        token,
        JITSI_SECRET,
        algorithms=["HS256"],
        audience=JITSI_APP_ID,
        issuer=JITSI_APP_ID,
    )


def jwt_from_redirect(location: str) -> str:
    return parse_qs(urlparse(location).query)["jwt"][0]


@pytest.fixture
def clock():
    return FakeClock(start=time.time())


def make_client(settings, provider, provider_metadata, clock=None, **client_kwargs) -> TestClient:
    oidc_client = OIDCClient(
        settings,
        http_client=httpx.AsyncClient(transport=httpx.MockTransport(provider.handler)),
        metadata=provider_metadata,
    )
    store = InMemoryHandshakeStore(
        ttl_seconds=settings.HANDSHAKE_TTL_SECONDS,
        clock=clock or time.time,
        max_entries=settings.MAX_PENDING_HANDSHAKES,
    )
    app = create_app(settings=settings, store=store, oidc_client=oidc_client)
    return TestClient(app, **client_kwargs)


@pytest.fixture
def client(settings, provider, provider_metadata, clock):
    with make_client(settings, provider, provider_metadata, clock) as test_client:
        yield test_client


def start_login(client, path="/auth/login"):
    response = client.get(path, follow_redirects=False)
    assert response.status_code == 302
    return response


def run_callback(client, code, state):
    return client.get(
        "/auth/callback",
        params={"code": code, "state": state},
        follow_redirects=False,
    )


class TestLogin:
    """Test suite for the login endpoints"""

    def test_login_redirects_to_provider(self, client):
        response = start_login(client)

        location = response.headers["location"]
        assert location.startswith(AUTHORIZATION_ENDPOINT)

        query = parse_qs(urlparse(location).query)
        assert query["client_id"] == [CLIENT_ID]
        assert query["response_type"] == ["code"]
        assert query["redirect_uri"] == ["http://testserver/auth/callback"]
        assert "openid" in query["scope"][0].split()
        assert query["code_challenge_method"] == ["S256"]

    def test_login_sets_handshake_cookie(self, client):
        response = start_login(client)

        state = parse_qs(urlparse(response.headers["location"]).query)["state"][0]
        set_cookie = response.headers["set-cookie"]
        assert f"{HANDSHAKE_COOKIE}={state}" in set_cookie
        assert "HttpOnly" in set_cookie
        assert "samesite=lax" in set_cookie.lower()

    def test_each_login_gets_fresh_state(self, client):
        first = parse_qs(urlparse(start_login(client).headers["location"]).query)
        second = parse_qs(urlparse(start_login(client).headers["location"]).query)

        assert first["state"] != second["state"]
        assert first["nonce"] != second["nonce"]

    def test_invalid_room_name_rejected(self, client):
        response = client.get("/auth/login", params={"room": "a/b"}, follow_redirects=False)
        assert response.status_code == 400

    def test_login_refused_when_too_many_handshakes_pending(self, provider, provider_metadata):
        settings = build_settings(MAX_PENDING_HANDSHAKES=2)

        with make_client(settings, provider, provider_metadata) as client:
            start_login(client)
            start_login(client)
            response = client.get("/auth/login", follow_redirects=False)

            assert response.status_code == 503
            assert "Service Busy" in response.text
            assert client.get("/health").json()["pending_handshakes"] == 2


class TestCallbackFlow:
    """End-to-end handshake through the callback"""

    def test_successful_flow_redirects_to_jitsi_with_token(self, client, provider, settings):
        login = start_login(client)
        code, state = provider.authorize(login.headers["location"])

        response = run_callback(client, code, state)

        assert response.status_code == 302
        location = response.headers["location"]
        assert location.startswith("https://meet.example.com/?jwt=")

        claims = decode_jitsi_token(jwt_from_redirect(location))
        assert claims["room"] == "*"
        assert claims["sub"] == "Alice A."
        assert claims["context"]["user"]["email"] == "alice@example.com"
        assert claims["context"]["user"]["id"] == "alice"

        ttl_seconds = settings.JITSI_TOKEN_EXPIRY_MINUTES * 60
        assert claims["exp"] - claims["iat"] == ttl_seconds
        assert claims["exp"] > time.time()

    def test_room_login_lands_in_room(self, client, provider):
        login = start_login(client, "/room/team-standup")
        code, state = provider.authorize(login.headers["location"])

        response = run_callback(client, code, state)

        location = response.headers["location"]
        assert location.startswith("https://meet.example.com/team-standup?jwt=")
        # Wildcard scope still issues room='*'
        assert decode_jitsi_token(jwt_from_redirect(location))["room"] == "*"

    def test_room_scoped_token(self, provider, provider_metadata):
        settings = build_settings(JITSI_ROOM_SCOPE="room")

        with make_client(settings, provider, provider_metadata) as client:
            login = start_login(client, "/auth/login?room=retro")
            code, state = provider.authorize(login.headers["location"])
            response = run_callback(client, code, state)

        claims = decode_jitsi_token(jwt_from_redirect(response.headers["location"]))
        assert claims["room"] == "retro"

    def test_pkce_verifier_sent_on_exchange(self, client, provider):
        login = start_login(client)
        code, state = provider.authorize(login.headers["location"])

        response = run_callback(client, code, state)

        # The mock provider rejects the exchange if the verifier does not match
        assert response.status_code == 302

    def test_successful_flow_clears_cookie_and_handshake(self, client, provider):
        login = start_login(client)
        code, state = provider.authorize(login.headers["location"])
        assert client.get("/health").json()["pending_handshakes"] == 1

        run_callback(client, code, state)

        assert client.get("/health").json()["pending_handshakes"] == 0


class TestCallbackRejections:
    """Test suite for rejected callbacks"""

    def test_replayed_state_rejected(self, client, provider):
        login = start_login(client)
        code, state = provider.authorize(login.headers["location"])
        assert run_callback(client, code, state).status_code == 302

        # Replay the same state with a cookie still presenting it
        client.cookies.clear()
        client.cookies.set(HANDSHAKE_COOKIE, state, path="/auth")
        second_code = provider.issue_code(nonce="whatever")
        response = run_callback(client, second_code, state)

        assert response.status_code == 400
        assert "Security Error" in response.text

    def test_expired_state_rejected(self, client, provider, clock, settings):
        login = start_login(client)
        code, state = provider.authorize(login.headers["location"])

        clock.advance(settings.HANDSHAKE_TTL_SECONDS + 1)
        response = run_callback(client, code, state)

        assert response.status_code == 400
        assert "location" not in response.headers

    def test_unknown_state_rejected(self, client, provider):
        start_login(client)
        client.cookies.clear()
        client.cookies.set(HANDSHAKE_COOKIE, "forged-state", path="/auth")

        response = run_callback(client, "some-code", "forged-state")

        assert response.status_code == 400

    def test_cookie_mismatch_rejected_and_handshake_discarded(self, client, provider):
        login = start_login(client)
        code, state = provider.authorize(login.headers["location"])
        client.cookies.clear()
        client.cookies.set(HANDSHAKE_COOKIE, "other-browser", path="/auth")

        response = run_callback(client, code, state)

        assert response.status_code == 400
        assert client.get("/health").json()["pending_handshakes"] == 0

    def test_cookie_binding_can_be_disabled(self, provider, provider_metadata):
        settings = build_settings(BIND_HANDSHAKE_COOKIE=False)

        with make_client(settings, provider, provider_metadata) as client:
            login = start_login(client)
            code, state = provider.authorize(login.headers["location"])
            client.cookies.clear()
            response = run_callback(client, code, state)

        assert response.status_code == 302

    def test_nonce_mismatch_rejected(self, client, provider):
        login = start_login(client)
        _, state = provider.authorize(login.headers["location"])
        substituted_code = provider.issue_code(nonce="nonce-from-another-handshake")

        response = run_callback(client, substituted_code, state)

        assert response.status_code == 400
        assert "Nonce mismatch" in response.text
        assert "location" not in response.headers

    def test_wrong_audience_rejected(self, client, provider):
        provider.claim_overrides = {"aud": "some-other-client"}
        login = start_login(client)
        code, state = provider.authorize(login.headers["location"])

        response = run_callback(client, code, state)

        assert response.status_code == 401
        assert "Token Verification Failed" in response.text

    def test_exchange_failure_returns_502(self, client, provider):
        login = start_login(client)
        _, state = provider.authorize(login.headers["location"])

        response = run_callback(client, "code-the-provider-never-issued", state)

        assert response.status_code == 502
        assert "Identity Provider Error" in response.text

    def test_missing_subject_rejected(self, client, provider):
        provider.claim_overrides = {"sub": None}
        login = start_login(client)
        code, state = provider.authorize(login.headers["location"])

        response = run_callback(client, code, state)

        assert response.status_code == 401

    def test_provider_error_renders_page_and_discards_handshake(self, client):
        login = start_login(client)
        state = parse_qs(urlparse(login.headers["location"]).query)["state"][0]

        response = client.get(
            "/auth/callback",
            params={"error": "access_denied", "error_description": "User cancelled", "state": state},
            follow_redirects=False,
        )

        assert response.status_code == 400
        assert "User cancelled" in response.text
        assert client.get("/health").json()["pending_handshakes"] == 0

    def test_missing_parameters(self, client):
        response = client.get("/auth/callback", follow_redirects=False)

        assert response.status_code == 400
        assert "Missing required parameters" in response.text

    def test_error_page_escapes_provider_text(self, client):
        response = client.get(
            "/auth/callback",
            params={"error": "x", "error_description": "<script>alert(1)</script>"},
            follow_redirects=False,
        )

        assert "<script>" not in response.text
        assert "&lt;script&gt;" in response.text


class TestHealth:
    """Test suite for the health endpoint"""

    def test_health(self, client):
        response = client.get("/health")

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "ok"
        assert body["service"] == "jitsi-oidc-bridge"
        assert body["pending_handshakes"] == 0

    def test_unhandled_error_returns_error_response(self, settings, provider, provider_metadata):
        async def broken():
            raise RuntimeError("boom")

        test_client = make_client(
            settings, provider, provider_metadata, raise_server_exceptions=False
        )
        test_client.app.add_api_route("/broken", broken)

        with test_client:
            response = test_client.get("/broken")

        assert response.status_code == 500
        assert response.json() == {
            "error": "internal_server_error",
            "message": "An unexpected error occurred",
        }
