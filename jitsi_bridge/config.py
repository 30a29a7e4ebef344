"""
Configuration module for the Jitsi OIDC bridge.

This module uses Pydantic Settings to load and validate environment variables
for the OIDC identity provider, Jitsi session token signing, handshake
correlation and the HTTP server.

Environment variables are loaded from .env file or system environment.
"""

from functools import lru_cache
from typing import List, Literal, Optional

from pydantic import Field, HttpUrl, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.

    All configuration for the identity provider (OIDC), Jitsi session tokens,
    handshake correlation and the server itself is defined here.
    """

    # =========================================================================
    # OIDC Identity Provider Configuration
    # =========================================================================

    OIDC_ISSUER_URL: HttpUrl = Field(
        ...,
        description="Issuer URL of the OIDC provider (e.g., https://idp.example.com/realms/main)",
    )

    OIDC_CLIENT_ID: str = Field(
        ...,
        description="Client ID registered with the identity provider",
        min_length=1,
    )

    OIDC_CLIENT_SECRET: Optional[str] = Field(
        None,
        description="Client secret (optional for public clients using PKCE)",
    )

    OIDC_SCOPES: str = Field(
        default="openid profile email",
        description="Space-separated scopes requested on the authorization request",
    )

    OIDC_TOKEN_AUTH_METHOD: Literal["client_secret_post", "client_secret_basic"] = Field(
        default="client_secret_post",
        description="How client credentials are sent to the token endpoint",
    )

    OIDC_USE_PKCE: bool = Field(
        default=True,
        description="Send a PKCE (S256) challenge with the authorization request",
    )

    OIDC_REQUIRE_AT_HASH: bool = Field(
        default=True,
        description="Reject ID tokens without at_hash when the token endpoint returned an access token",
    )

    # =========================================================================
    # Jitsi Session Token Configuration
    # =========================================================================

    JITSI_URL: HttpUrl = Field(
        ...,
        description="External base URL of the Jitsi Meet server (e.g., https://meet.example.com)",
    )

    JITSI_APP_ID: str = Field(
        default="jitsi",
        description="Jitsi application id, used as issuer and audience of session tokens",
        min_length=1,
    )

    JITSI_APP_SECRET: str = Field(
        default="",
        description="Secret shared with the Jitsi token validator (HS* algorithms)",
    )

    JITSI_JWT_ALGORITHM: str = Field(
        default="HS256",
        description="Session token signing algorithm (HS256, HS384, HS512 or RS256)",
    )

    JITSI_PRIVATE_KEY: Optional[str] = Field(
        None,
        description="PEM private key used when JITSI_JWT_ALGORITHM is RS256",
    )

    JITSI_KEY_ID: Optional[str] = Field(
        None,
        description="Key id placed in the token header for RS256 (Jitsi ASAP key lookup)",
    )

    JITSI_TOKEN_EXPIRY_MINUTES: int = Field(
        default=180,
        description="Session token lifetime in minutes",
        ge=1,
        le=1440,  # Max 24 hours
    )

    JITSI_ROOM_SCOPE: Literal["wildcard", "room"] = Field(
        default="wildcard",
        description="'wildcard' issues room='*'; 'room' restricts the token to the requested room",
    )

    # =========================================================================
    # Bridge Server Configuration
    # =========================================================================

    BASE_URL: HttpUrl = Field(
        ...,
        description="Externally reachable base URL of this service (used for the redirect URI)",
    )

    HOST: str = Field(
        default="0.0.0.0",
        description="Host to bind the bridge server",
    )

    PORT: int = Field(
        default=8080,
        description="Port to bind the bridge server",
        ge=1,
        le=65535,
    )

    LOG_LEVEL: str = Field(
        default="INFO",
        description="Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)",
    )

    # =========================================================================
    # Handshake Correlation
    # =========================================================================

    HANDSHAKE_TTL_SECONDS: int = Field(
        default=600,
        description="Lifetime of an in-flight login handshake in seconds",
        ge=30,
        le=3600,
    )

    HANDSHAKE_SWEEP_INTERVAL_SECONDS: int = Field(
        default=60,
        description="Interval of the background sweep of expired handshakes",
        ge=1,
        le=3600,
    )

    MAX_PENDING_HANDSHAKES: int = Field(
        default=10000,
        description="Upper bound on handshakes awaiting callback; further logins are refused",
        ge=1,
    )

    BIND_HANDSHAKE_COOKIE: bool = Field(
        default=True,
        description="Require the callback to carry the handshake cookie set on login",
    )

    # =========================================================================
    # ID Token Validation
    # =========================================================================

    JWKS_CACHE_SECONDS: int = Field(
        default=3600,
        description="Time to cache the provider JWKS keys in seconds",
        ge=60,
        le=86400,
    )

    ID_TOKEN_MAX_AGE_SECONDS: int = Field(
        default=600,
        description="Reject ID tokens whose iat is older than this",
        ge=30,
        le=86400,
    )

    ID_TOKEN_LEEWAY_SECONDS: int = Field(
        default=10,
        description="Clock skew tolerance for exp/iat checks",
        ge=0,
        le=300,
    )

    HTTP_TIMEOUT_SECONDS: float = Field(
        default=10.0,
        description="Timeout for calls to the identity provider",
        gt=0,
        le=120,
    )

    # =========================================================================
    # Pydantic Settings Configuration
    # =========================================================================

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
    )

    # =========================================================================
    # Computed Properties
    # =========================================================================

    @property
    def issuer_url_str(self) -> str:
        """Issuer URL without trailing slash, as published by most providers."""
        return str(self.OIDC_ISSUER_URL).rstrip("/")

    @property
    def jitsi_url_str(self) -> str:
        """Jitsi base URL without trailing slash."""
        return str(self.JITSI_URL).rstrip("/")

    @property
    def base_url_str(self) -> str:
        return str(self.BASE_URL).rstrip("/")

    @property
    def redirect_uri(self) -> str:
        """
        Callback URL registered with the identity provider.

        Returns:
            Absolute URL of the /auth/callback endpoint.
        """
        return f"{self.base_url_str}/auth/callback"

    @property
    def scopes_list(self) -> List[str]:
        return [scope for scope in self.OIDC_SCOPES.split() if scope]

    @property
    def secure_cookies(self) -> bool:
        """Only mark cookies Secure when the service is reached over HTTPS."""
        return self.base_url_str.startswith("https://")

    # =========================================================================
    # Validators
    # =========================================================================

    @field_validator("OIDC_SCOPES")
    @classmethod
    def validate_scopes(cls, v: str) -> str:
        """
        Validate that the scope list requests an ID token.

        Raises:
            ValueError: If 'openid' is not among the scopes
        """
        if "openid" not in v.split():
            raise ValueError("OIDC_SCOPES must include 'openid'")
        return v

    @field_validator("JITSI_JWT_ALGORITHM")
    @classmethod
    def validate_jwt_algorithm(cls, v: str) -> str:
        """
        Validate that the signing algorithm is one Jitsi's token validator accepts.

        Raises:
            ValueError: If algorithm is not supported
        """
        allowed_algorithms = ["HS256", "HS384", "HS512", "RS256"]

        if v not in allowed_algorithms:
            raise ValueError(
                f"JWT algorithm must be one of {allowed_algorithms}, got: {v}"
            )

        return v

    @field_validator("LOG_LEVEL")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        level = v.upper()
        if level not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"Invalid LOG_LEVEL: {v}")
        return level


# =============================================================================
# Settings Singleton
# =============================================================================

@lru_cache()
def get_settings() -> Settings:
    """
    Get or create a singleton Settings instance.

    This function is cached so that the settings are loaded only once
    during the application lifecycle.

    Returns:
        Settings instance with all configuration loaded and validated.

    Raises:
        ValidationError: If required environment variables are missing
                        or invalid.
    """
    return Settings()


# =============================================================================
# Configuration Helpers
# =============================================================================

def validate_configuration(settings: Settings) -> dict:
    """
    Validate critical configuration settings and return a status report.

    Called during application startup; the bridge refuses to start when
    any error is reported, since it could not issue tokens at all.

    Returns:
        Dictionary with validation status and any warnings.

    Example:
        >>> status = validate_configuration(get_settings())
        >>> if not status["valid"]:
        ...     print(status["errors"])
    """
    errors = []
    warnings = []

    # Check signing material
    if settings.JITSI_JWT_ALGORITHM.startswith("HS"):
        if not settings.JITSI_APP_SECRET:
            errors.append("JITSI_APP_SECRET is not set")
        elif len(settings.JITSI_APP_SECRET) < 32:
            warnings.append("JITSI_APP_SECRET is shorter than recommended (32+ chars)")
    else:
        if not settings.JITSI_PRIVATE_KEY:
            errors.append("JITSI_PRIVATE_KEY is required for RS256")
        if not settings.JITSI_KEY_ID:
            warnings.append("JITSI_KEY_ID is not set (Jitsi ASAP key lookup needs a kid)")

    # Check provider configuration
    if not settings.OIDC_CLIENT_SECRET:
        if settings.OIDC_USE_PKCE:
            warnings.append("OIDC_CLIENT_SECRET is not set (public client)")
        else:
            errors.append("OIDC_CLIENT_SECRET is required when PKCE is disabled")

    if not settings.base_url_str.startswith("https://"):
        warnings.append("BASE_URL is not HTTPS; handshake cookie will not be Secure")

    if "email" not in settings.scopes_list:
        warnings.append("OIDC_SCOPES lacks 'email'; Jitsi will not receive user emails")

    return {
        "valid": len(errors) == 0,
        "errors": errors,
        "warnings": warnings,
        "redirect_uri": settings.redirect_uri,
        "token_expiry_minutes": settings.JITSI_TOKEN_EXPIRY_MINUTES,
    }


# =============================================================================
# Example Usage & Documentation
# =============================================================================

if __name__ == "__main__":
    """
    Run this module directly to validate your .env configuration:
        python -m jitsi_bridge.config
    """
    print("=" * 80)
    print("JITSI OIDC BRIDGE CONFIGURATION")
    print("=" * 80)

    try:
        config = get_settings()

        print("\nIdentity Provider:")
        print(f"  Issuer:         {config.issuer_url_str}")
        print(f"  Client ID:      {config.OIDC_CLIENT_ID}")
        print(f"  Redirect URI:   {config.redirect_uri}")
        print(f"  Scopes:         {config.OIDC_SCOPES}")
        print(f"  PKCE:           {config.OIDC_USE_PKCE}")

        print("\nJitsi:")
        print(f"  URL:            {config.jitsi_url_str}")
        print(f"  App ID:         {config.JITSI_APP_ID}")
        print(f"  Algorithm:      {config.JITSI_JWT_ALGORITHM}")
        print(f"  Token Expiry:   {config.JITSI_TOKEN_EXPIRY_MINUTES} minutes")
        print(f"  Room Scope:     {config.JITSI_ROOM_SCOPE}")

        print("\nHandshakes:")
        print(f"  TTL:            {config.HANDSHAKE_TTL_SECONDS} seconds")
        print(f"  Cookie Binding: {config.BIND_HANDSHAKE_COOKIE}")

        status = validate_configuration(config)

        print("\n" + "=" * 80)
        if status["valid"]:
            print("All critical checks passed!")
        else:
            print("Configuration errors found:")
            for error in status["errors"]:
                print(f"  - {error}")

        if status["warnings"]:
            print("\nWarnings:")
            for warning in status["warnings"]:
                print(f"  - {warning}")

    except Exception as e:
        print(f"\nConfiguration error: {e}")
        print("""
Required variables:
  - OIDC_ISSUER_URL
  - OIDC_CLIENT_ID
  - JITSI_URL
  - BASE_URL
  - JITSI_APP_SECRET (or JITSI_PRIVATE_KEY for RS256)
        """)
