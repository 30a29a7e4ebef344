"""
Shared fixtures: settings, RSA test keys, a mock identity provider.
"""

import base64
import hashlib
import secrets
import time
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import parse_qs, urlparse

import httpx
import jwt
import pytest
from cryptography.hazmat.backends import default_backend
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from jwt.algorithms import RSAAlgorithm

from jitsi_bridge.auth.correlator import generate_code_challenge
from jitsi_bridge.auth.oidc import OIDCClient, ProviderMetadata
from jitsi_bridge.config import Settings


ISSUER = "https://idp.example.com/realms/main"
CLIENT_ID = "jitsi-bridge"
CLIENT_SECRET = "test-client-secret"
JITSI_APP_ID = "meet.example.com"
JITSI_SECRET = "test-jitsi-shared-secret-0123456789abcdef"

AUTHORIZATION_ENDPOINT = f"{ISSUER}/protocol/openid-connect/auth"
TOKEN_ENDPOINT = f"{ISSUER}/protocol/openid-connect/token"
JWKS_URI = f"{ISSUER}/protocol/openid-connect/certs"

DISCOVERY_DOCUMENT = {
    "issuer": ISSUER,
    "authorization_endpoint": AUTHORIZATION_ENDPOINT,
    "token_endpoint": TOKEN_ENDPOINT,
    "jwks_uri": JWKS_URI,
    "id_token_signing_alg_values_supported": ["RS256"],
    "response_types_supported": ["code"],
}


# Test RSA key pair generation for mocking JWKS
def generate_test_keys() -> Tuple[str, str]:
    """Generate RSA key pair for testing"""
    private_key = rsa.generate_private_key(
        public_exponent=65537,
        key_size=2048,
        backend=default_backend()
    )

    private_pem = private_key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption()
    )
    public_pem = private_key.public_key().public_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PublicFormat.SubjectPublicKeyInfo
    )

    return private_pem.decode(), public_pem.decode()


# Generate test keys once for reuse
TEST_PRIVATE_KEY, TEST_PUBLIC_KEY = generate_test_keys()
TEST_KID = "test-key-id-2024"

ROTATED_PRIVATE_KEY, ROTATED_PUBLIC_KEY = generate_test_keys()
ROTATED_KID = "test-key-id-2025"


def compute_at_hash(access_token: str) -> str:
    digest = hashlib.sha256(access_token.encode("ascii")).digest()
    return base64.urlsafe_b64encode(digest[: len(digest) // 2]).decode("ascii").rstrip("=")


def create_mock_id_token(
    nonce: Optional[str] = "test-nonce",
    kid: str = TEST_KID,
    private_key: str = TEST_PRIVATE_KEY,
    exp_delta_minutes: int = 60,
    iat_delta_seconds: int = 0,
    access_token: Optional[str] = None,
    **overrides: Any,
) -> str:
    """
    Create an ID token signed with a test private key.

    Pass a claim as None in ``overrides`` to drop it.
    """
    now = int(time.time())
    payload: Dict[str, Any] = {
        "iss": ISSUER,
        "sub": "alice",
        "aud": CLIENT_ID,
        "exp": now + exp_delta_minutes * 60,
        "iat": now + iat_delta_seconds,
        "nonce": nonce,
        "name": "Alice A.",
        "email": "alice@example.com",
        "preferred_username": "alice",
    }
    if access_token:
        payload["at_hash"] = compute_at_hash(access_token)
    payload.update(overrides)
    payload = {key: value for key, value in payload.items() if value is not None}

    return jwt.encode(payload, private_key, algorithm="RS256", headers={"kid": kid})


def create_mock_jwks(kid: str = TEST_KID, public_key: str = TEST_PUBLIC_KEY) -> Dict[str, Any]:
    """Create a JWKS document holding one RSA public key."""
    public_key_obj = serialization.load_pem_public_key(
        public_key.encode(),
        backend=default_backend()
    )

    jwk = RSAAlgorithm.to_jwk(public_key_obj, as_dict=True)
    jwk["kid"] = kid
    jwk["use"] = "sig"
    jwk["alg"] = "RS256"

    return {"keys": [jwk]}


class FakeClock:
    """Manually advanced clock for TTL tests."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class MockProvider:
    """
    In-process OIDC provider served through httpx.MockTransport.

    Codes are single-use and remember the nonce and PKCE challenge of the
    authorization request they were issued for.
    """

    def __init__(self):
        self.jwks = create_mock_jwks()
        self.codes: Dict[str, Dict[str, Optional[str]]] = {}
        self.requests: List[httpx.Request] = []
        self.claim_overrides: Dict[str, Any] = {}
        self.signing_key = (TEST_KID, TEST_PRIVATE_KEY)

    def issue_code(self, nonce: str, code_challenge: Optional[str] = None) -> str:
        code = secrets.token_urlsafe(16)
        self.codes[code] = {"nonce": nonce, "code_challenge": code_challenge}
        return code

    def authorize(self, authorization_url: str) -> Tuple[str, str]:
        """Simulate a successful login; returns (code, state) for the callback."""
        query = parse_qs(urlparse(authorization_url).query)
        code = self.issue_code(
            nonce=query["nonce"][0],
            code_challenge=query.get("code_challenge", [None])[0],
        )
        return code, query["state"][0]

    def requests_to(self, url: str) -> List[httpx.Request]:
        return [request for request in self.requests if str(request.url).split("?")[0] == url]

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        url = str(request.url).split("?")[0]

        if url == f"{ISSUER}/.well-known/openid-configuration":
            return httpx.Response(200, json=DISCOVERY_DOCUMENT)

        if url == JWKS_URI:
            return httpx.Response(200, json=self.jwks)

        if url == TOKEN_ENDPOINT:
            form = {key: values[0] for key, values in parse_qs(request.content.decode()).items()}
            grant = self.codes.pop(form.get("code", ""), None)
            if grant is None:
                return httpx.Response(
                    400,
                    json={"error": "invalid_grant", "error_description": "Code not valid"},
                )
            if grant["code_challenge"]:
                verifier = form.get("code_verifier", "")
                if generate_code_challenge(verifier) != grant["code_challenge"]:
                    return httpx.Response(
                        400,
                        json={"error": "invalid_grant", "error_description": "PKCE verification failed"},
                    )

            access_token = f"access-{secrets.token_hex(8)}"
            kid, private_key = self.signing_key
            id_token = create_mock_id_token(
                nonce=grant["nonce"],
                kid=kid,
                private_key=private_key,
                access_token=access_token,
                **self.claim_overrides,
            )
            return httpx.Response(
                200,
                json={
                    "access_token": access_token,
                    "id_token": id_token,
                    "token_type": "Bearer",
                    "expires_in": 300,
                },
            )

        return httpx.Response(404)


def build_settings(**overrides: Any) -> Settings:
    values: Dict[str, Any] = {
        "OIDC_ISSUER_URL": ISSUER,
        "OIDC_CLIENT_ID": CLIENT_ID,
        "OIDC_CLIENT_SECRET": CLIENT_SECRET,
        "JITSI_URL": "https://meet.example.com",
        "JITSI_APP_ID": JITSI_APP_ID,
        "JITSI_APP_SECRET": JITSI_SECRET,
        "BASE_URL": "http://testserver",
    }
    values.update(overrides)
    return Settings(**values)


@pytest.fixture
def settings() -> Settings:
    return build_settings()


@pytest.fixture
def provider() -> MockProvider:
    return MockProvider()


@pytest.fixture
def provider_metadata() -> ProviderMetadata:
    return ProviderMetadata.model_validate(DISCOVERY_DOCUMENT)


@pytest.fixture
def http_client(provider) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(provider.handler))


@pytest.fixture
def oidc_client(settings, http_client, provider_metadata) -> OIDCClient:
    return OIDCClient(settings, http_client=http_client, metadata=provider_metadata)
