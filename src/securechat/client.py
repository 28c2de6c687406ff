"""
SecureChat - Chat client controller.

The ChatClient ties the pieces together for one local user: it owns the
process-wide Identity, the transport peer on the signaling network and at
most one active SecureSession, and keeps the chat log and status texts a
user interface renders.

Peer lifecycle:
- A signaling error marks the peer not ready, shows the error, and after a
  short delay destroys the transport and creates a fresh one.
- A signaling disconnect marks the peer not ready and asks the transport
  to reconnect.
- An inbound connection replaces any current session.
"""

import asyncio
import logging
from typing import Any, Callable, List, Optional

from .config import Config, SessionSettings
from .connection_fsm import SessionState
from .constants import PEER_RETRY_DELAY, UI_ERROR_DISPLAY_TIMEOUT, UI_MAX_MESSAGE_HISTORY
from .errors import InvalidEnvelopeError, NoActiveConnectionError, TransportError
from .identity import Identity
from .message import ChatLog, ChatMessage
from .session import SecureSession
from .transport import Channel, Subscription, Transport
from .utils import format_fingerprint, validate_peer_id

logger = logging.getLogger(__name__)

# User-facing texts
MSG_PEER_NOT_READY = "Peer not ready. Please wait and try again."
MSG_INVALID_PEER_ID = "Please enter a valid peer ID"
MSG_SELF_CONNECT = "Cannot connect to yourself"
MSG_ALREADY_CONNECTED = "Already connected to a peer. Disconnect first."
MSG_NO_CONNECTION = "No active connection to send message"
MSG_SEND_FAILED = "Failed to send message. Connection may be lost."
MSG_CONNECTION_CLOSED = "Connection closed"
MSG_DISCONNECTED = "Disconnected"


class ChatClient:
    """
    Application controller for one local user.

    Args:
        transport_factory: Callable returning a new Transport. Called on
            start() and again each time the peer is recreated after an error.
        config: Optional Config; defaults are used when omitted
        identity: Optional pre-generated Identity
    """

    def __init__(
        self,
        transport_factory: Callable[[], Transport],
        config: Optional[Config] = None,
        identity: Optional[Identity] = None,
    ):
        self.transport_factory = transport_factory
        self.config = config
        self.settings = SessionSettings.from_config(config)
        self.identity = identity

        self.transport: Optional[Transport] = None
        self.session: Optional[SecureSession] = None
        self.peer_id: Optional[str] = None
        self.peer_ready = False
        self.running = False

        self.error: Optional[str] = None
        self.handshake_status: Optional[str] = None
        self.chat_log = ChatLog(self._setting("ui", "max_history", UI_MAX_MESSAGE_HISTORY))

        # Called after every change to the client's visible state
        self.on_update: Optional[Callable[[], None]] = None

        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._transport_subscriptions: List[Subscription] = []
        self._retry_timer: Optional[asyncio.TimerHandle] = None
        self._error_timer: Optional[asyncio.TimerHandle] = None
        self.peer_restarts = 0

    def _setting(self, section: str, key: str, default: Any) -> Any:
        if self.config is None:
            return default
        return self.config.get(section, key, default)

    @property
    def fingerprint(self) -> str:
        """Display form of the local identity fingerprint."""
        if self.identity is None or not self.identity.is_initialized:
            return ""
        return format_fingerprint(self.identity.fingerprint_hex())

    @property
    def is_connected(self) -> bool:
        return self.session is not None and self.session.is_connected

    @property
    def encrypted(self) -> bool:
        return self.session is not None and self.session.encrypted

    def start(self) -> None:
        """
        Generate the identity (if needed) and join the signaling network.

        Raises:
            KeyGenError: If the key pair cannot be generated. Fatal.
        """
        if self.running:
            return

        self._loop = asyncio.get_running_loop()
        if self.identity is None:
            self.identity = Identity()
        if not self.identity.is_initialized:
            self.identity.generate_key_pair()

        self.running = True
        self._create_transport()
        logger.info("Chat client started")

    def stop(self) -> None:
        """Close the session, release the transport and cancel timers."""
        if not self.running:
            return
        self.running = False

        for timer in (self._retry_timer, self._error_timer):
            if timer is not None:
                timer.cancel()
        self._retry_timer = None
        self._error_timer = None

        session, self.session = self.session, None
        if session is not None:
            session.close()

        self._release_transport()
        self.peer_ready = False
        logger.info("Chat client stopped")

    # Transport peer lifecycle

    def _create_transport(self) -> None:
        transport = self.transport_factory()
        self.transport = transport
        self._transport_subscriptions = [
            transport.on("open", self._on_peer_open),
            transport.on("connection", self._on_peer_connection),
            transport.on("error", self._on_peer_error),
            transport.on("disconnected", self._on_peer_disconnected),
        ]

    def _release_transport(self) -> None:
        for subscription in self._transport_subscriptions:
            subscription.cancel()
        self._transport_subscriptions = []
        if self.transport is not None:
            self.transport.destroy()
            self.transport = None

    def _on_peer_open(self, peer_id: str) -> None:
        self.peer_id = peer_id
        self.peer_ready = True
        logger.info(f"Peer ready with id {peer_id}")
        self._update()

    def _on_peer_connection(self, channel: Channel) -> None:
        if self.session is not None:
            logger.info(f"Replacing session with {self.session.remote_id} by inbound {channel.peer}")
            old_session, self.session = self.session, None
            old_session.close()

        session = self._new_session(inbound=True)
        session.accept(channel)
        self._update()

    def _on_peer_error(self, reason: Any = None) -> None:
        logger.error(f"Peer error: {reason}")
        self.peer_ready = False
        self._set_error(f"Peer error: {reason}")

        if not self._setting("network", "auto_reconnect", True) or not self.running:
            return
        if self._retry_timer is not None:
            self._retry_timer.cancel()
        delay = self._setting("network", "peer_retry_delay", PEER_RETRY_DELAY)
        self._retry_timer = self._loop.call_later(delay, self._restart_transport)

    def _restart_transport(self) -> None:
        self._retry_timer = None
        if not self.running:
            return
        logger.info("Recreating peer after error")
        self._release_transport()
        self.peer_id = None
        self.peer_restarts += 1
        self._create_transport()
        self._update()

    def _on_peer_disconnected(self, *args: Any) -> None:
        logger.warning("Peer disconnected from the signaling network, reconnecting")
        self.peer_ready = False
        self._update()
        try:
            self.transport.reconnect()
        except TransportError as e:
            self._set_error(e.message)

    # Sessions

    def _new_session(self, inbound: bool) -> SecureSession:
        session = SecureSession(self.identity, self.transport, self.settings)
        session.on_state_change = lambda old, new: self._on_session_state(session, inbound, new)
        session.on_message = lambda message: self._on_session_message(session, message)
        session.on_handshake_status = lambda text: self._on_handshake_status(session, text)
        session.on_error = lambda text: self._on_session_error(session, text)
        self.session = session
        self.handshake_status = None
        return session

    def _on_session_state(self, session: SecureSession, inbound: bool, new_state: SessionState) -> None:
        if session is not self.session:
            return

        if new_state == SessionState.CONNECTED:
            if inbound:
                self.chat_log.system(f"Accepted connection from {session.remote_id}")
            else:
                self.chat_log.system(f"Connected successfully to {session.remote_id}!")
        elif new_state == SessionState.CLOSED:
            self.chat_log.system(MSG_CONNECTION_CLOSED)
            self.handshake_status = None
        self._update()

    def _on_session_message(self, session: SecureSession, message: ChatMessage) -> None:
        if session is not self.session:
            return
        self.chat_log.append(message)
        self._update()

    def _on_handshake_status(self, session: SecureSession, text: str) -> None:
        if session is not self.session:
            return
        self.handshake_status = text
        self.chat_log.system(text)
        self._update()

    def _on_session_error(self, session: SecureSession, text: str) -> None:
        if session is not self.session:
            return
        self.handshake_status = None
        self._set_error(text)

    def connect(self, remote_id: str) -> bool:
        """
        Connect to a remote peer by discovery id.

        Returns:
            True if the connection attempt started
        """
        if not self.peer_ready:
            self._set_error(MSG_PEER_NOT_READY)
            return False

        remote_id = (remote_id or "").strip()
        if not validate_peer_id(remote_id):
            self._set_error(MSG_INVALID_PEER_ID)
            return False
        if remote_id == self.peer_id:
            self._set_error(MSG_SELF_CONNECT)
            return False
        if self.session is not None and self.session.state in (
            SessionState.CONNECTING,
            SessionState.CONNECTED,
        ):
            self._set_error(MSG_ALREADY_CONNECTED)
            return False

        session = self._new_session(inbound=False)
        session.connect(remote_id)
        self._update()
        return session.state != SessionState.ERROR

    def send(self, text: str) -> Optional[ChatMessage]:
        """
        Send a chat message on the current session.

        Returns:
            The logged local message, or None if nothing was sent
        """
        if not text or not text.strip():
            return None
        if self.session is None:
            self._set_error(MSG_NO_CONNECTION)
            return None

        try:
            message = self.session.send(text)
        except NoActiveConnectionError:
            self._set_error(MSG_NO_CONNECTION)
            return None
        except TransportError as e:
            logger.error(f"Send failed: {e}")
            self._set_error(MSG_SEND_FAILED)
            return None
        except InvalidEnvelopeError as e:
            self._set_error(e.message)
            return None

        self.chat_log.append(message)
        self._update()
        return message

    def disconnect(self) -> None:
        """Close the current session."""
        session, self.session = self.session, None
        if session is None:
            return
        session.close()
        self.handshake_status = None
        self.chat_log.system(MSG_DISCONNECTED)
        self._update()

    # Error display

    def _set_error(self, text: str) -> None:
        logger.debug(f"Showing error: {text}")
        self.error = text
        if self._error_timer is not None:
            self._error_timer.cancel()
            self._error_timer = None
        if self._loop is not None:
            timeout = self._setting("ui", "error_display_timeout", UI_ERROR_DISPLAY_TIMEOUT)
            self._error_timer = self._loop.call_later(timeout, self.clear_error)
        self._update()

    def clear_error(self) -> None:
        self._error_timer = None
        if self.error is not None:
            self.error = None
            self._update()

    def _update(self) -> None:
        if self.on_update:
            try:
                self.on_update()
            except Exception as e:
                logger.error(f"Update callback error: {e}", exc_info=True)
