"""
Data Models Module

This module defines Pydantic models for the data that flows through a login
handshake and for the service's JSON responses.

Models are organized by functional area:
- Handshake models (correlation state, phases)
- Identity models (provider assertion, verified claims, normalized user)
- Session token models (signed Jitsi token)
- Health and error models
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field


# ============================================================================
# Handshake Models
# ============================================================================

class HandshakePhase(str, Enum):
    """Lifecycle of a single login handshake."""
    IDLE = "idle"
    AWAITING_CALLBACK = "awaiting_callback"
    COMPLETED = "completed"
    FAILED = "failed"


class HandshakeState(BaseModel):
    """Per-handshake correlation data, owned by the handshake store."""
    model_config = ConfigDict(frozen=True)

    state_token: str = Field(..., description="Anti-forgery state sent to the provider")
    nonce: str = Field(..., description="Replay-protection nonce bound into the ID token")
    created_at: float = Field(..., description="Creation time (epoch seconds)")
    code_verifier: Optional[str] = Field(None, description="PKCE code verifier")
    room: Optional[str] = Field(None, description="Meeting room requested on login")


# ============================================================================
# Identity Models
# ============================================================================

class IdentityAssertion(BaseModel):
    """Raw tokens returned by the provider's token endpoint."""
    model_config = ConfigDict(frozen=True)

    id_token: str = Field(..., description="Signed ID token (compact JWS)")
    access_token: Optional[str] = Field(None, description="Access token, used for at_hash")


class IdentityClaims(BaseModel):
    """
    Verified claim set extracted from an ID token.

    Only the claims the bridge uses are kept; anything else the provider
    sends is ignored.
    """
    model_config = ConfigDict(frozen=True, extra="ignore", populate_by_name=True)

    issuer: str = Field(..., alias="iss")
    audience: Union[str, List[str]] = Field(..., alias="aud")
    subject: Optional[str] = Field(None, alias="sub")
    nonce: Optional[str] = None
    expiry: int = Field(..., alias="exp")
    issued_at: int = Field(..., alias="iat")
    name: Optional[str] = None
    email: Optional[str] = None
    preferred_username: Optional[str] = None


class UserIdentity(BaseModel):
    """Normalized user identity handed to the session token minter."""
    model_config = ConfigDict(frozen=True)

    subject_id: str = Field(..., description="Provider subject identifier")
    display_name: Optional[str] = Field(None, description="User display name")
    email: Optional[str] = Field(None, description="User email address")
    username: Optional[str] = Field(None, description="Provider preferred_username")


# ============================================================================
# Session Token Models
# ============================================================================

class SessionToken(BaseModel):
    """Signed Jitsi session token and the claims it carries."""
    token: str = Field(..., description="Compact signed JWT")
    claims: Dict[str, Any] = Field(..., description="Claims embedded in the token")
    jti: str = Field(..., description="Unique token identifier")
    expires_at: datetime = Field(..., description="Token expiry (UTC)")


class FlowResult(BaseModel):
    """Outcome of a completed handshake."""
    redirect_url: str = Field(..., description="Jitsi meeting URL with the token attached")
    session_token: SessionToken
    room: Optional[str] = None


# ============================================================================
# Health Check Models
# ============================================================================

class HealthResponse(BaseModel):
    """Health check response model."""
    status: str = Field(..., description="Service health status")
    service: str = Field(..., description="Service name")
    pending_handshakes: int = Field(..., description="Handshakes awaiting callback")
    timestamp: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        description="Check timestamp",
    )


# ============================================================================
# Error Models
# ============================================================================

class ErrorResponse(BaseModel):
    """Standardized error response model."""
    error: str = Field(..., description="Error type or code")
    message: str = Field(..., description="Human-readable error message")
    details: Optional[Dict[str, Any]] = Field(None, description="Additional error details")
