"""
SecureChat - In-band key agreement handshake.

Both peers send exactly one key-exchange envelope carrying their public
key. Whoever receives the peer's key derives the shared key with ECDH;
since ECDH is commutative it does not matter which side went first.
Key-exchange-complete envelopes are advisory: they confirm to the peer
that the key is in place but carry no key material.

The Handshake object performs no I/O. Each operation returns the
envelopes the owning session must transmit, in order.

State flow:
    NOT_STARTED --start()--------------> INITIATED
    NOT_STARTED --peer key-------------> AWAITING_LOCAL_SEND -> DERIVED
    INITIATED   --peer key-------------> DERIVED
    DERIVED     --peer complete--------> COMPLETE
    NOT_STARTED/INITIATED/AWAITING_LOCAL_SEND --abandon()--> ABANDONED
"""

import logging
from dataclasses import dataclass
from enum import Enum, auto
from typing import List, Optional

from .crypto import SessionCrypto
from .errors import CryptoError, SecureChatError
from .identity import Identity
from .protocol import Envelope

logger = logging.getLogger(__name__)


class HandshakeState(Enum):
    """Handshake progress for one connection."""

    NOT_STARTED = auto()  # Nothing sent or received
    INITIATED = auto()  # Local key sent, waiting for the peer's key
    AWAITING_LOCAL_SEND = auto()  # Peer key received before the local key was sent
    DERIVED = auto()  # Shared key derived, peer confirmation pending
    COMPLETE = auto()  # Shared key derived and peer confirmed
    ABANDONED = auto()  # Timed out or failed, session stays plaintext


# States in which the handshake may still be abandoned
_PENDING_STATES = (
    HandshakeState.NOT_STARTED,
    HandshakeState.INITIATED,
    HandshakeState.AWAITING_LOCAL_SEND,
)


@dataclass
class HandshakeStep:
    """One recorded handshake state change."""

    from_state: HandshakeState
    to_state: HandshakeState
    reason: str = ""


class Handshake:
    """
    Key agreement for a single connection.

    Writes the derived key into the session's SessionCrypto exactly once.
    """

    def __init__(self, identity: Identity, session_crypto: SessionCrypto):
        self.identity = identity
        self.session_crypto = session_crypto
        self.state = HandshakeState.NOT_STARTED
        self.local_key_sent = False
        self.peer_confirmed = False
        self.failure: Optional[SecureChatError] = None
        self.history: List[HandshakeStep] = []

    @property
    def is_derived(self) -> bool:
        return self.state in (HandshakeState.DERIVED, HandshakeState.COMPLETE)

    @property
    def is_complete(self) -> bool:
        return self.state == HandshakeState.COMPLETE

    @property
    def is_abandoned(self) -> bool:
        return self.state == HandshakeState.ABANDONED

    @property
    def is_pending(self) -> bool:
        return self.state in _PENDING_STATES

    def _transition(self, new_state: HandshakeState, reason: str = "") -> None:
        old_state = self.state
        self.state = new_state
        self.history.append(HandshakeStep(old_state, new_state, reason))
        logger.debug(f"Handshake: {old_state.name} -> {new_state.name} ({reason})")

    def _local_key_envelope(self) -> Envelope:
        self.local_key_sent = True
        return Envelope.key_exchange(self.identity.export_public_key())

    def start(self) -> List[Envelope]:
        """Send the local public key first. No-op unless NOT_STARTED."""
        if self.state != HandshakeState.NOT_STARTED:
            logger.debug(f"Handshake start ignored in state {self.state.name}")
            return []

        envelope = self._local_key_envelope()
        self._transition(HandshakeState.INITIATED, "local key sent")
        logger.info("Key exchange initiated")
        return [envelope]

    def handle_key_exchange(self, peer_public_key: bytes) -> List[Envelope]:
        """
        Process the peer's public key.

        Returns:
            Envelopes to transmit: the local key (if not yet sent) followed
            by key-exchange-complete. Empty when the key is ignored.

        Raises:
            CryptoError: If the peer key is invalid. The handshake is
                abandoned before the error propagates.
        """
        if bytes(peer_public_key) == self.identity.export_public_key():
            logger.debug("Key exchange carrying our own public key ignored (looped back)")
            return []
        if self.is_derived:
            logger.warning("Duplicate key exchange ignored; shared key already derived")
            return []
        if self.is_abandoned:
            logger.info("Key exchange ignored; handshake was abandoned for this session")
            return []

        if self.state == HandshakeState.NOT_STARTED:
            self._transition(HandshakeState.AWAITING_LOCAL_SEND, "peer key received first")

        try:
            shared_key = self.identity.derive_shared_key(peer_public_key)
            self.session_crypto.establish(shared_key)
        except CryptoError as e:
            self.abandon(e)
            raise

        replies: List[Envelope] = []
        if not self.local_key_sent:
            replies.append(self._local_key_envelope())
        replies.append(Envelope.key_exchange_complete())

        self._transition(HandshakeState.DERIVED, "shared key derived")
        logger.info("Shared key derived from peer public key")

        if self.peer_confirmed:
            self._transition(HandshakeState.COMPLETE, "early peer confirmation applied")

        return replies

    def handle_complete(self) -> bool:
        """
        Process the peer's key-exchange-complete notice.

        Returns:
            True if the handshake moved to COMPLETE
        """
        if self.state == HandshakeState.DERIVED:
            self.peer_confirmed = True
            self._transition(HandshakeState.COMPLETE, "peer confirmed")
            logger.info("Peer confirmed the shared key")
            return True

        if self.is_pending and not self.peer_confirmed:
            # Applied once the key is derived
            self.peer_confirmed = True
            logger.debug(f"Key exchange complete received early in state {self.state.name}")
        else:
            logger.debug(f"Key exchange complete ignored in state {self.state.name}")
        return False

    def abandon(self, error: SecureChatError) -> bool:
        """
        Give up on key agreement for this connection.

        Only a handshake that has not derived a key can be abandoned.

        Returns:
            True if the handshake moved to ABANDONED
        """
        if not self.is_pending:
            return False

        self.failure = error
        self._transition(HandshakeState.ABANDONED, error.message)
        logger.warning(f"Key exchange abandoned: {error.message}")
        return True
