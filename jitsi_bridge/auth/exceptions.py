"""
Error taxonomy for the login handshake.

Every failure during the callback aborts the handshake. Each error carries
the HTTP status and page title used when it is rendered to the user.
"""


class BridgeError(Exception):
    """Base exception for handshake errors"""

    status_code = 400
    title = "Authentication Failed"

    def __init__(self, message: str = ""):
        super().__init__(message or self.title)
        self.message = message or self.title


class InvalidState(BridgeError):
    """State token is missing, expired, already consumed, or not bound to this browser."""

    title = "Security Error"


class NonceMismatch(BridgeError):
    """ID token nonce does not match the nonce issued for this handshake."""

    title = "Security Error"


class ExchangeFailed(BridgeError):
    """Token endpoint returned an error, timed out, or sent a malformed response."""

    status_code = 502
    title = "Identity Provider Error"


class KeyFetchFailed(BridgeError):
    """Provider signing keys (JWKS) could not be fetched."""

    status_code = 502
    title = "Identity Provider Error"


class AssertionInvalid(BridgeError):
    """ID token failed signature, issuer, audience, expiry or iat checks."""

    status_code = 401
    title = "Token Verification Failed"


class MissingSubject(BridgeError):
    """Verified claims carry no subject."""

    status_code = 401
    title = "Token Verification Failed"


class TooManyHandshakes(BridgeError):
    """The handshake store is full; new logins are refused until entries expire."""

    status_code = 503
    title = "Service Busy"


class ConfigurationError(BridgeError):
    """Signing secret or required configuration is absent."""

    status_code = 500
    title = "Service Misconfigured"


__all__ = [
    "BridgeError",
    "InvalidState",
    "NonceMismatch",
    "ExchangeFailed",
    "KeyFetchFailed",
    "AssertionInvalid",
    "MissingSubject",
    "TooManyHandshakes",
    "ConfigurationError",
]
