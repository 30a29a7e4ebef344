"""
Claim mapping from verified ID token claims to a UserIdentity.
"""

from typing import Optional

from jitsi_bridge.auth.exceptions import MissingSubject
from jitsi_bridge.models import IdentityClaims, UserIdentity


def _clean(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    value = value.strip()
    return value or None


def map_identity(claims: IdentityClaims) -> UserIdentity:
    """
    Normalize verified claims into a UserIdentity.

    Optional fields stay None when the provider did not send them.

    Args:
        claims: Claims returned by OIDCClient.validate_assertion

    Returns:
        UserIdentity for the session token minter

    Raises:
        MissingSubject: If the claims carry no usable subject
    """
    subject = _clean(claims.subject)
    if subject is None:
        raise MissingSubject("Identity token carries no subject.")

    email = _clean(claims.email)

    return UserIdentity(
        subject_id=subject,
        display_name=_clean(claims.name),
        email=email.lower() if email else None,
        username=_clean(claims.preferred_username),
    )
