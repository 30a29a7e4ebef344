"""
Handshake correlation for the OIDC login flow.

This module handles:
- Generating per-handshake state, nonce and PKCE verifier
- Storing in-flight handshakes with a bounded lifetime
- Consuming a handshake exactly once on callback
- Sweeping abandoned handshakes in the background
"""

import asyncio
import base64
import hashlib
import logging
import secrets
import time
from abc import ABC, abstractmethod
from typing import Callable, Dict, Optional

from jitsi_bridge.auth.exceptions import InvalidState, TooManyHandshakes
from jitsi_bridge.models import HandshakeState

logger = logging.getLogger(__name__)


# =============================================================================
# PKCE Helper Functions
# =============================================================================

def generate_code_verifier() -> str:
    """
    Generate a cryptographically random code verifier for PKCE.

    Returns:
        Base64-URL-encoded random string (43 characters)
    """
    verifier_bytes = secrets.token_bytes(32)
    return base64.urlsafe_b64encode(verifier_bytes).decode('utf-8').rstrip('=')


def generate_code_challenge(verifier: str) -> str:
    """
    Generate code challenge from verifier using S256 method.

    Args:
        verifier: Code verifier string

    Returns:
        Base64-URL-encoded SHA256 hash of verifier
    """
    digest = hashlib.sha256(verifier.encode('utf-8')).digest()
    return base64.urlsafe_b64encode(digest).decode('utf-8').rstrip('=')


# =============================================================================
# Handshake Stores
# =============================================================================

class HandshakeStore(ABC):
    """
    Storage contract for in-flight handshakes.

    Implementations must make ``pop`` an atomic lookup-and-remove, must
    never return an entry older than ``ttl_seconds`` and must refuse a
    ``put`` beyond ``max_entries`` live handshakes.
    """

    def __init__(
        self,
        ttl_seconds: int,
        clock: Callable[[], float] = time.time,
        max_entries: Optional[int] = None,
    ):
        self.ttl_seconds = ttl_seconds
        self.clock = clock
        self.max_entries = max_entries

    def is_expired(self, handshake: HandshakeState) -> bool:
        return self.clock() - handshake.created_at > self.ttl_seconds

    @abstractmethod
    async def put(self, handshake: HandshakeState) -> None:
        """
        Store a handshake.

        Raises:
            TooManyHandshakes: If max_entries live handshakes are pending
        """

    @abstractmethod
    async def pop(self, state_token: str) -> Optional[HandshakeState]:
        """Remove and return a live handshake, or None."""

    @abstractmethod
    async def sweep(self) -> int:
        """Evict expired handshakes and return how many were removed."""

    @abstractmethod
    async def count(self) -> int:
        ...


class InMemoryHandshakeStore(HandshakeStore):
    """
    In-memory TTL store for a single-process deployment.

    Thread-safe for the event loop using asyncio.Lock.
    """

    def __init__(
        self,
        ttl_seconds: int,
        clock: Callable[[], float] = time.time,
        max_entries: Optional[int] = None,
    ):
        super().__init__(ttl_seconds, clock, max_entries)
        self._entries: Dict[str, HandshakeState] = {}
        self._lock = asyncio.Lock()

    async def put(self, handshake: HandshakeState) -> None:
        async with self._lock:
            if self._is_full():
                # Only pay for a full scan once the cap is reached
                self._evict_expired()
                if self._is_full():
                    logger.warning(
                        "Handshake store full, refusing login",
                        extra={"max_entries": self.max_entries},
                    )
                    raise TooManyHandshakes(
                        "Too many logins are in progress. Please try again shortly."
                    )
            self._entries[handshake.state_token] = handshake

    async def pop(self, state_token: str) -> Optional[HandshakeState]:
        async with self._lock:
            handshake = self._entries.pop(state_token, None)

        if handshake is None or self.is_expired(handshake):
            return None
        return handshake

    async def sweep(self) -> int:
        async with self._lock:
            removed = self._evict_expired()

        if removed:
            logger.debug(f"Swept {removed} expired handshakes")
        return removed

    async def count(self) -> int:
        async with self._lock:
            return len(self._entries)

    def _is_full(self) -> bool:
        return self.max_entries is not None and len(self._entries) >= self.max_entries

    def _evict_expired(self) -> int:
        expired_keys = [
            key for key, handshake in self._entries.items()
            if self.is_expired(handshake)
        ]
        for key in expired_keys:
            del self._entries[key]
        return len(expired_keys)


# =============================================================================
# Session Correlator
# =============================================================================

class SessionCorrelator:
    """
    Issues and redeems the state/nonce pair of each login handshake.

    A state token is single-use: ``consume`` removes it whether or not the
    rest of the callback succeeds, so a captured callback URL cannot be
    replayed.
    """

    def __init__(self, store: HandshakeStore, use_pkce: bool = True):
        self.store = store
        self.use_pkce = use_pkce

    async def begin(self, room: Optional[str] = None) -> HandshakeState:
        """
        Start a handshake.

        Args:
            room: Meeting room the user asked for, if any

        Returns:
            The stored HandshakeState

        Raises:
            TooManyHandshakes: If the store is at capacity
        """
        handshake = HandshakeState(
            state_token=secrets.token_urlsafe(32),
            nonce=secrets.token_urlsafe(32),
            created_at=self.store.clock(),
            code_verifier=generate_code_verifier() if self.use_pkce else None,
            room=room,
        )
        await self.store.put(handshake)
        return handshake

    async def consume(self, state_token: Optional[str]) -> HandshakeState:
        """
        Redeem a state token.

        Raises:
            InvalidState: If the token is unknown, already used or expired
        """
        if not state_token:
            raise InvalidState("Missing state parameter.")

        handshake = await self.store.pop(state_token)
        if handshake is None:
            raise InvalidState(
                "Invalid or expired state parameter. Please start the login again."
            )
        return handshake

    async def sweep(self) -> int:
        return await self.store.sweep()

    async def run_sweeper(self, interval_seconds: float) -> None:
        """Sweep expired handshakes forever; cancelled on shutdown."""
        while True:
            await asyncio.sleep(interval_seconds)
            try:
                await self.sweep()
            except Exception as e:
                logger.error(f"Handshake sweep failed: {e}", exc_info=True)


__all__ = [
    "HandshakeStore",
    "InMemoryHandshakeStore",
    "SessionCorrelator",
    "generate_code_verifier",
    "generate_code_challenge",
]
