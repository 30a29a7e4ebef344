"""
Jitsi Session Token Module
==========================

Builds and signs the session JWT that Jitsi Meet's token authentication
accepts. Supports HS256/HS384/HS512 with the secret shared with Jitsi
(default) and RS256 for deployments that publish ASAP public keys.

The minter trusts the identity it is given; verification of the user
happens earlier in the handshake.
"""

import logging
import uuid
from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

import jwt

from jitsi_bridge.auth.exceptions import ConfigurationError
from jitsi_bridge.config import Settings
from jitsi_bridge.models import SessionToken, UserIdentity

logger = logging.getLogger(__name__)

WILDCARD_ROOM = "*"
DEFAULT_TOKEN_TTL = timedelta(hours=3)


# =============================================================================
# Signers
# =============================================================================

class TokenSigner(ABC):
    """Signs a claim set into a compact JWT."""

    algorithm: str

    @abstractmethod
    def sign(self, claims: Dict[str, Any]) -> str:
        ...


class HMACSigner(TokenSigner):
    """Symmetric signer using the secret shared with Jitsi."""

    def __init__(self, secret: str, algorithm: str = "HS256"):
        if not secret:
            raise ConfigurationError("Jitsi shared secret is not configured")
        if algorithm not in ("HS256", "HS384", "HS512"):
            raise ConfigurationError(f"Unsupported HMAC algorithm: {algorithm}")
        self._secret = secret
        self.algorithm = algorithm

    def sign(self, claims: Dict[str, Any]) -> str:
        return jwt.encode(claims, self._secret, algorithm=self.algorithm)


class RSASigner(TokenSigner):
    """Asymmetric RS256 signer; the key id lets Jitsi locate the public key."""

    algorithm = "RS256"

    def __init__(self, private_key: str, key_id: Optional[str] = None):
        if not private_key:
            raise ConfigurationError("RS256 enabled but JITSI_PRIVATE_KEY not configured")
        # Keys passed through env vars often carry escaped newlines
        self._private_key = private_key.replace("\\n", "\n")
        self.key_id = key_id

    def sign(self, claims: Dict[str, Any]) -> str:
        headers = {"kid": self.key_id} if self.key_id else None
        return jwt.encode(claims, self._private_key, algorithm=self.algorithm, headers=headers)


def build_signer(settings: Settings) -> TokenSigner:
    """
    Select the signer for the configured algorithm.

    Raises:
        ConfigurationError: If the signing material is missing
    """
    if settings.JITSI_JWT_ALGORITHM == "RS256":
        return RSASigner(settings.JITSI_PRIVATE_KEY or "", settings.JITSI_KEY_ID)
    return HMACSigner(settings.JITSI_APP_SECRET, settings.JITSI_JWT_ALGORITHM)


# =============================================================================
# Claims
# =============================================================================

def token_subject(identity: UserIdentity) -> str:
    """Display name, then email, then subject id."""
    return identity.display_name or identity.email or identity.subject_id


def build_claims(
    identity: UserIdentity,
    app_id: str,
    room: str = WILDCARD_ROOM,
    ttl: timedelta = DEFAULT_TOKEN_TTL,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """
    Build the Jitsi claim set for an identity.

    Args:
        identity: Normalized user identity
        app_id: Jitsi application id (issuer and audience)
        room: Room name, or '*' for any room
        ttl: Token lifetime
        now: Issue time (defaults to current UTC time)

    Returns:
        Claims dictionary with integer NumericDate timestamps
    """
    issued_at = now or datetime.now(timezone.utc)
    iat = int(issued_at.timestamp())

    return {
        "iss": app_id,
        "aud": app_id,
        "sub": token_subject(identity),
        "room": room,
        "iat": iat,
        "nbf": iat,
        "exp": iat + int(ttl.total_seconds()),
        "jti": uuid.uuid4().hex,
        "context": {
            "user": {
                "id": identity.username or identity.subject_id,
                "name": identity.display_name,
                "email": identity.email,
                "avatar": None,
            },
            "group": None,
        },
    }


# =============================================================================
# Minter
# =============================================================================

class SessionTokenMinter:
    """
    Mints Jitsi session tokens with a fixed signer, app id and lifetime.

    Room scoping: with ``scope_to_room`` the token's room claim is the room
    requested on login; otherwise (or when no room is known) it is '*'.
    """

    def __init__(
        self,
        signer: TokenSigner,
        app_id: str,
        ttl: timedelta = DEFAULT_TOKEN_TTL,
        scope_to_room: bool = False,
    ):
        if not app_id:
            raise ConfigurationError("Jitsi app id is not configured")
        self.signer = signer
        self.app_id = app_id
        self.ttl = ttl
        self.scope_to_room = scope_to_room

    @classmethod
    def from_settings(cls, settings: Settings) -> "SessionTokenMinter":
        return cls(
            signer=build_signer(settings),
            app_id=settings.JITSI_APP_ID,
            ttl=timedelta(minutes=settings.JITSI_TOKEN_EXPIRY_MINUTES),
            scope_to_room=settings.JITSI_ROOM_SCOPE == "room",
        )

    def room_claim(self, room: Optional[str]) -> str:
        if self.scope_to_room and room:
            return room
        return WILDCARD_ROOM

    def mint(self, identity: UserIdentity, room: Optional[str] = None) -> SessionToken:
        """
        Create a signed session token for an identity.

        Raises:
            ConfigurationError: If signing fails
        """
        claims = build_claims(
            identity,
            app_id=self.app_id,
            room=self.room_claim(room),
            ttl=self.ttl,
        )

        try:
            token = self.signer.sign(claims)
        except Exception as e:
            logger.error(f"Failed to sign session token: {e}", exc_info=True)
            raise ConfigurationError(f"Failed to sign session token: {e}") from e

        logger.debug(
            "Minted Jitsi session token",
            extra={"jti": claims["jti"], "room": claims["room"], "algorithm": self.signer.algorithm},
        )

        return SessionToken(
            token=token,
            claims=claims,
            jti=claims["jti"],
            expires_at=datetime.fromtimestamp(claims["exp"], tz=timezone.utc),
        )


def mint_session_token(
    identity: UserIdentity,
    shared_secret: str,
    app_id: str,
    room: Optional[str] = None,
    ttl: timedelta = DEFAULT_TOKEN_TTL,
) -> SessionToken:
    """
    Mint an HS256 session token with a wildcard (or given) room.

    Example:
        >>> identity = UserIdentity(subject_id="alice", display_name="Alice A.")
        >>> session = mint_session_token(identity, secret, "meet.example.com")
        >>> session.claims["sub"]
        'Alice A.'
    """
    minter = SessionTokenMinter(
        HMACSigner(shared_secret),
        app_id=app_id,
        ttl=ttl,
        scope_to_room=room is not None,
    )
    return minter.mint(identity, room=room)


__all__ = [
    "TokenSigner",
    "HMACSigner",
    "RSASigner",
    "build_signer",
    "build_claims",
    "token_subject",
    "SessionTokenMinter",
    "mint_session_token",
    "WILDCARD_ROOM",
]
