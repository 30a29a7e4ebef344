"""
Authentication Package

This package handles the OIDC login handshake and the issuance of Jitsi
session tokens.

Key responsibilities:
- OIDC login flow initiation and callback handling
- State/nonce correlation with single-use, TTL-bound handshakes
- ID token validation using the provider JWKS
- Mapping verified claims to a user identity
- Signing the Jitsi session JWT

Modules:
- routes: Public endpoints (/auth/login, /room/{name}, /auth/callback)
- correlator: Handshake store and state/nonce/PKCE generation
- oidc: Discovery, token exchange, JWKS caching and ID token verification
- claims: Verified claims to UserIdentity
- tokens: Jitsi session token signing
- flow: Handshake orchestration
- exceptions: Error taxonomy

The authentication flow:
1. Browser hits /auth/login (or /room/{name})
2. User authenticates with the identity provider
3. Provider redirects to /auth/callback with code and state
4. Bridge validates state, exchanges code, verifies the ID token
5. Browser is redirected to Jitsi with ?jwt=<session token>
"""

from .routes import auth_router, room_router

__all__ = [
    "auth_router",
    "room_router",
]
