"""
Login flow controller.

Drives one handshake through IDLE -> AWAITING_CALLBACK -> COMPLETED, or
FAILED from any step. A failed handshake is never retried; the user has to
start the login again.
"""

import logging
from typing import Optional, Tuple
from urllib.parse import quote, urlencode

from jitsi_bridge.auth.claims import map_identity
from jitsi_bridge.auth.correlator import SessionCorrelator, generate_code_challenge
from jitsi_bridge.auth.exceptions import BridgeError, ConfigurationError, ExchangeFailed
from jitsi_bridge.auth.oidc import OIDCClient
from jitsi_bridge.auth.tokens import SessionTokenMinter
from jitsi_bridge.config import Settings
from jitsi_bridge.models import FlowResult, HandshakePhase, HandshakeState

logger = logging.getLogger(__name__)


class FlowController:
    """Orchestrates the correlator, OIDC client and token minter."""

    def __init__(
        self,
        settings: Settings,
        correlator: SessionCorrelator,
        oidc_client: OIDCClient,
        minter: SessionTokenMinter,
    ):
        self.settings = settings
        self.correlator = correlator
        self.oidc_client = oidc_client
        self.minter = minter

    async def initiate(self, room: Optional[str] = None) -> Tuple[str, HandshakeState]:
        """
        Start a handshake and build the provider redirect.

        Args:
            room: Meeting room to land in after login

        Returns:
            (authorization URL, stored handshake)
        """
        handshake = await self.correlator.begin(room=room)

        code_challenge = None
        if handshake.code_verifier:
            code_challenge = generate_code_challenge(handshake.code_verifier)

        authorization_url = self.oidc_client.build_authorization_url(
            state=handshake.state_token,
            nonce=handshake.nonce,
            code_challenge=code_challenge,
        )

        logger.info(
            "Handshake started",
            extra={"phase": HandshakePhase.AWAITING_CALLBACK.value, "room": room},
        )
        return authorization_url, handshake

    async def complete(self, code: Optional[str], state: Optional[str]) -> FlowResult:
        """
        Finish a handshake from the provider callback.

        Every step must succeed in order; the first failure propagates and
        no token is issued.

        Raises:
            BridgeError: Subclass describing the failed step
        """
        try:
            handshake = await self.correlator.consume(state)

            if not code:
                raise ExchangeFailed("Missing authorization code.")

            assertion = await self.oidc_client.exchange_code(
                code,
                redirect_uri=self.settings.redirect_uri,
                code_verifier=handshake.code_verifier,
            )
            claims = await self.oidc_client.validate_assertion(
                assertion, expected_nonce=handshake.nonce
            )
            identity = map_identity(claims)
            session_token = self.minter.mint(identity, room=handshake.room)
        except BridgeError as e:
            log = logger.error if isinstance(e, ConfigurationError) else logger.warning
            log(
                f"Handshake failed: {e.message}",
                extra={"phase": HandshakePhase.FAILED.value, "error": type(e).__name__},
            )
            raise

        redirect_url = self.build_meeting_url(handshake.room, session_token.token)

        logger.info(
            "Handshake completed",
            extra={
                "phase": HandshakePhase.COMPLETED.value,
                "room": handshake.room,
                "jti": session_token.jti,
            },
        )
        return FlowResult(
            redirect_url=redirect_url,
            session_token=session_token,
            room=handshake.room,
        )

    async def abandon(self, state: Optional[str]) -> None:
        """Discard a handshake the provider reported as failed."""
        if not state:
            return
        try:
            await self.correlator.consume(state)
        except BridgeError:
            return
        logger.info("Handshake abandoned", extra={"phase": HandshakePhase.FAILED.value})

    def build_meeting_url(self, room: Optional[str], token: str) -> str:
        """
        Jitsi meeting URL with the session token as the ``jwt`` query parameter.
        """
        base = self.settings.jitsi_url_str
        path = f"/{quote(room, safe='')}" if room else "/"
        return f"{base}{path}?{urlencode({'jwt': token})}"


__all__ = ["FlowController"]
