"""
OIDC client for the identity provider.

This module handles:
- Provider discovery (.well-known/openid-configuration)
- Building the authorization request URL
- Exchanging the authorization code at the token endpoint
- Fetching and caching the provider JWKS
- Verifying ID tokens (signature, issuer, audience, expiry, iat, nonce)
"""

import logging
import secrets
import time
from typing import Any, Dict, List, Optional
from urllib.parse import quote_plus, urlencode

import httpx
from jose import jwk, jwt, JWTError
from jose.exceptions import ExpiredSignatureError, JWTClaimsError
from pydantic import BaseModel, ValidationError

from jitsi_bridge.auth.exceptions import (
    AssertionInvalid,
    ConfigurationError,
    ExchangeFailed,
    KeyFetchFailed,
    NonceMismatch,
)
from jitsi_bridge.config import Settings
from jitsi_bridge.models import IdentityAssertion, IdentityClaims

logger = logging.getLogger(__name__)

# Asymmetric algorithms accepted for provider ID tokens
SUPPORTED_ID_TOKEN_ALGORITHMS = [
    "RS256", "RS384", "RS512",
    "ES256", "ES384", "ES512",
]

JWKS_FETCH_ATTEMPTS = 2


class ProviderMetadata(BaseModel):
    """Subset of the provider discovery document used by the bridge."""
    issuer: str
    authorization_endpoint: str
    token_endpoint: str
    jwks_uri: str
    id_token_signing_alg_values_supported: List[str] = ["RS256"]


class OIDCClient:
    """
    Authorization-code flow client bound to one identity provider.

    The JWKS cache lives on the instance; keys are refetched when a token
    is signed with an unknown key id.
    """

    def __init__(
        self,
        settings: Settings,
        http_client: Optional[httpx.AsyncClient] = None,
        metadata: Optional[ProviderMetadata] = None,
    ):
        self.settings = settings
        self.http_client = http_client or httpx.AsyncClient(
            timeout=settings.HTTP_TIMEOUT_SECONDS
        )
        self.metadata = metadata
        self._jwks_cache: Optional[Dict[str, Any]] = None
        self._jwks_cache_time: float = 0.0

    async def aclose(self) -> None:
        await self.http_client.aclose()

    # =========================================================================
    # Discovery
    # =========================================================================

    async def discover(self) -> ProviderMetadata:
        """
        Fetch and validate the provider discovery document.

        Raises:
            ConfigurationError: If the document is unreachable or inconsistent
        """
        issuer = self.settings.issuer_url_str
        discovery_url = f"{issuer}/.well-known/openid-configuration"

        try:
            response = await self.http_client.get(
                discovery_url, timeout=self.settings.HTTP_TIMEOUT_SECONDS
            )
            response.raise_for_status()
            metadata = ProviderMetadata.model_validate(response.json())
        except (httpx.HTTPError, ValueError, ValidationError) as e:
            raise ConfigurationError(
                f"Unable to load provider metadata from {discovery_url}: {e}"
            ) from e

        if metadata.issuer.rstrip("/") != issuer:
            raise ConfigurationError(
                f"Provider issuer mismatch: expected {issuer}, got {metadata.issuer}"
            )

        self.metadata = metadata
        logger.info(
            "Loaded identity provider metadata",
            extra={"issuer": metadata.issuer, "client_id": self.settings.OIDC_CLIENT_ID},
        )
        return metadata

    def _require_metadata(self) -> ProviderMetadata:
        if self.metadata is None:
            raise ConfigurationError("Provider metadata not loaded; call discover() first")
        return self.metadata

    # =========================================================================
    # Authorization Request
    # =========================================================================

    def build_authorization_url(
        self,
        state: str,
        nonce: str,
        code_challenge: Optional[str] = None,
    ) -> str:
        """
        Build the provider authorization URL for a handshake.

        Args:
            state: State token from the correlator
            nonce: Nonce from the correlator
            code_challenge: PKCE S256 challenge, if PKCE is in use

        Returns:
            Absolute URL to redirect the browser to
        """
        metadata = self._require_metadata()

        params = {
            "response_type": "code",
            "client_id": self.settings.OIDC_CLIENT_ID,
            "redirect_uri": self.settings.redirect_uri,
            "scope": " ".join(self.settings.scopes_list),
            "state": state,
            "nonce": nonce,
        }
        if code_challenge:
            params["code_challenge"] = code_challenge
            params["code_challenge_method"] = "S256"

        separator = "&" if "?" in metadata.authorization_endpoint else "?"
        return f"{metadata.authorization_endpoint}{separator}{urlencode(params)}"

    # =========================================================================
    # Token Exchange
    # =========================================================================

    async def exchange_code(
        self,
        code: str,
        redirect_uri: str,
        code_verifier: Optional[str] = None,
    ) -> IdentityAssertion:
        """
        Exchange authorization code for the provider's tokens.

        Args:
            code: Authorization code from callback
            redirect_uri: Redirect URI (must match the one used on login)
            code_verifier: PKCE code verifier

        Returns:
            IdentityAssertion holding the raw ID token and access token

        Raises:
            ExchangeFailed: On transport errors, non-2xx status or malformed response
        """
        metadata = self._require_metadata()
        settings = self.settings

        payload = {
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": redirect_uri,
        }
        auth = None

        if settings.OIDC_TOKEN_AUTH_METHOD == "client_secret_basic" and settings.OIDC_CLIENT_SECRET:
            auth = httpx.BasicAuth(
                quote_plus(settings.OIDC_CLIENT_ID),
                quote_plus(settings.OIDC_CLIENT_SECRET),
            )
        else:
            payload["client_id"] = settings.OIDC_CLIENT_ID
            if settings.OIDC_CLIENT_SECRET:
                payload["client_secret"] = settings.OIDC_CLIENT_SECRET

        if code_verifier:
            payload["code_verifier"] = code_verifier

        try:
            response = await self.http_client.post(
                metadata.token_endpoint,
                data=payload,
                auth=auth,
                headers={"Accept": "application/json"},
                timeout=settings.HTTP_TIMEOUT_SECONDS,
            )
        except httpx.TimeoutException as e:
            raise ExchangeFailed("Timed out contacting the identity provider.") from e
        except httpx.HTTPError as e:
            raise ExchangeFailed(f"Unable to reach the identity provider: {e}") from e

        if not response.is_success:
            error_msg = "Token exchange failed"
            try:
                error_data = response.json()
                error_msg = error_data.get("error_description") or error_data.get("error") or error_msg
            except ValueError:
                pass
            logger.warning(
                "Token endpoint rejected code exchange",
                extra={"status_code": response.status_code},
            )
            raise ExchangeFailed(f"Token exchange failed: {error_msg}")

        try:
            token_data = response.json()
        except ValueError as e:
            raise ExchangeFailed("Token response is not valid JSON") from e

        if not isinstance(token_data, dict) or not isinstance(token_data.get("id_token"), str):
            raise ExchangeFailed("Token response missing id_token")

        return IdentityAssertion(
            id_token=token_data["id_token"],
            access_token=token_data.get("access_token"),
        )

    # =========================================================================
    # JWKS
    # =========================================================================

    async def fetch_jwks(self, force_refresh: bool = False) -> Dict[str, Any]:
        """
        Fetch the provider JWKS with caching.

        Args:
            force_refresh: If True, bypass cache and fetch fresh JWKS

        Raises:
            KeyFetchFailed: If the JWKS endpoint is unreachable or invalid
        """
        current_time = time.time()
        cache_ttl = self.settings.JWKS_CACHE_SECONDS

        if (
            not force_refresh
            and self._jwks_cache
            and (current_time - self._jwks_cache_time) < cache_ttl
        ):
            return self._jwks_cache

        jwks_uri = self._require_metadata().jwks_uri
        last_error: Optional[Exception] = None

        for attempt in range(1, JWKS_FETCH_ATTEMPTS + 1):
            try:
                response = await self.http_client.get(
                    jwks_uri, timeout=self.settings.HTTP_TIMEOUT_SECONDS
                )
                response.raise_for_status()
                jwks_data = response.json()
                break
            except httpx.TransportError as e:
                last_error = e
                logger.warning(
                    f"JWKS fetch attempt {attempt} failed: {e}",
                    extra={"jwks_uri": jwks_uri},
                )
            except (httpx.HTTPStatusError, ValueError) as e:
                raise KeyFetchFailed(f"Unable to fetch provider signing keys: {e}") from e
        else:
            raise KeyFetchFailed(
                f"Unable to fetch provider signing keys: {last_error}"
            ) from last_error

        if not isinstance(jwks_data, dict) or not isinstance(jwks_data.get("keys"), list):
            raise KeyFetchFailed("Invalid JWKS response: missing 'keys' field")

        self._jwks_cache = jwks_data
        self._jwks_cache_time = current_time
        return jwks_data

    @staticmethod
    def get_signing_key(header: Dict[str, Any], jwks: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        """
        Find the key in JWKS that matches the token header.

        A header without ``kid`` matches only when the set holds one key.
        """
        keys = [key for key in jwks.get("keys", []) if key.get("use", "sig") == "sig"]
        kid = header.get("kid")

        if kid is None:
            return keys[0] if len(keys) == 1 else None

        for key in keys:
            if key.get("kid") == kid:
                return key
        return None

    # =========================================================================
    # ID Token Validation
    # =========================================================================

    def _allowed_algorithms(self) -> List[str]:
        advertised = self._require_metadata().id_token_signing_alg_values_supported
        return [alg for alg in advertised if alg in SUPPORTED_ID_TOKEN_ALGORITHMS]

    async def validate_assertion(
        self,
        assertion: IdentityAssertion,
        expected_nonce: str,
    ) -> IdentityClaims:
        """
        Verify an ID token and return its claims.

        Performs, in order:
        1. Header parsing and algorithm allow-listing
        2. Key lookup in JWKS (refetched once on unknown kid)
        3. Signature, issuer, audience, expiry and at_hash verification
           (at_hash is required with an access token when OIDC_REQUIRE_AT_HASH)
        4. iat plausibility (not older than ID_TOKEN_MAX_AGE_SECONDS)
        5. Exact nonce comparison

        Raises:
            AssertionInvalid: If the token fails any check in 1-4
            KeyFetchFailed: If the JWKS endpoint is unreachable
            NonceMismatch: If the nonce differs from expected_nonce
        """
        settings = self.settings
        metadata = self._require_metadata()
        id_token = assertion.id_token

        try:
            header = jwt.get_unverified_header(id_token)
        except JWTError as e:
            raise AssertionInvalid(f"Malformed ID token: {e}") from e

        algorithm = header.get("alg")
        if algorithm not in self._allowed_algorithms():
            raise AssertionInvalid(f"Unsupported ID token signing algorithm: {algorithm}")

        jwks = await self.fetch_jwks()
        signing_key = self.get_signing_key(header, jwks)
        if not signing_key:
            # Try refreshing JWKS in case keys were rotated
            jwks = await self.fetch_jwks(force_refresh=True)
            signing_key = self.get_signing_key(header, jwks)

            if not signing_key:
                raise AssertionInvalid(
                    "Unable to find matching signing key in JWKS. "
                    "Token may be from a different provider or keys may have rotated."
                )

        try:
            public_key = jwk.construct(signing_key, algorithm=algorithm)
        except Exception as e:
            raise AssertionInvalid(f"Failed to construct public key from JWK: {e}") from e

        try:
            raw_claims = jwt.decode(
                id_token,
                public_key.to_pem().decode('utf-8'),
                algorithms=[algorithm],
                audience=settings.OIDC_CLIENT_ID,
                issuer=metadata.issuer,
                access_token=assertion.access_token,
                options={
                    "verify_signature": True,
                    "verify_aud": True,
                    "verify_iat": True,
                    "verify_exp": True,
                    "verify_nbf": True,
                    "verify_iss": True,
                    "verify_sub": True,
                    "verify_jti": False,
                    "verify_at_hash": assertion.access_token is not None,
                    "require_exp": True,
                    "require_iat": True,
                    "leeway": settings.ID_TOKEN_LEEWAY_SECONDS,
                },
            )
        except ExpiredSignatureError as e:
            raise AssertionInvalid("ID token has expired") from e
        except JWTClaimsError as e:
            raise AssertionInvalid(f"Invalid token claims: {e}") from e
        except JWTError as e:
            raise AssertionInvalid(f"Token verification failed: {e}") from e

        if (
            settings.OIDC_REQUIRE_AT_HASH
            and assertion.access_token is not None
            and "at_hash" not in raw_claims
        ):
            raise AssertionInvalid("ID token carries no at_hash")

        try:
            claims = IdentityClaims.model_validate(raw_claims)
        except ValidationError as e:
            raise AssertionInvalid(f"ID token claims are malformed: {e}") from e

        now = time.time()
        leeway = settings.ID_TOKEN_LEEWAY_SECONDS
        if claims.issued_at > now + leeway:
            raise AssertionInvalid("ID token was issued in the future")
        if now - claims.issued_at > settings.ID_TOKEN_MAX_AGE_SECONDS + leeway:
            raise AssertionInvalid("ID token is too old")

        if claims.nonce is None or not secrets.compare_digest(
            claims.nonce.encode("utf-8"), expected_nonce.encode("utf-8")
        ):
            raise NonceMismatch("Nonce mismatch. Please try again.")

        return claims


__all__ = [
    "OIDCClient",
    "ProviderMetadata",
    "SUPPORTED_ID_TOKEN_ALGORITHMS",
]
