"""
SecureChat - Secure peer session.

A SecureSession sequences one connection to one remote peer: it drives the
lifecycle state machine, runs the in-band key exchange over the same
channel as the chat traffic, encrypts outbound messages once a shared key
exists, and decrypts, filters and surfaces inbound envelopes.

Concurrency model:
- Every session owns one asyncio.Queue and one worker task.
- Transport callbacks only enqueue (via call_soon_threadsafe), so events are
  handled one at a time, in arrival order, each to completion.
- Timers are TimerHandles owned by the session. When they fire they enqueue
  an event tagged with the channel they were armed for.
- Events whose channel is no longer the session's current channel are stale
  and dropped. Teardown clears the channel reference before closing it.
"""

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum, auto
from typing import Any, Callable, Dict, List, Optional

from .config import SessionSettings
from .connection_fsm import SessionEvent, SessionState, SessionStateMachine
from .crypto import SessionCrypto
from .errors import (
    ConnectionTimeoutError,
    CryptoError,
    DecryptError,
    ErrorCode,
    HandshakeTimeoutError,
    InvalidEnvelopeError,
    NetworkError,
    NoActiveConnectionError,
    NotInitializedError,
    SecureChatError,
    TransportError,
)
from .handshake import Handshake, HandshakeState
from .identity import Identity
from .message import ChatMessage
from .protocol import Envelope, EnvelopeKind, Protocol
from .transport import Channel, Subscription, Transport

logger = logging.getLogger(__name__)

# Handshake status texts shown to the user
STATUS_EXCHANGING = "Exchanging keys..."
STATUS_SECURED = "Secure channel established"
STATUS_TIMED_OUT = "Key exchange timed out; messages will be sent unencrypted"
STATUS_FAILED = "Key exchange failed; messages will be sent unencrypted"
STATUS_DISABLED = "Encryption disabled; messages will be sent unencrypted"

# System notices for messages that cannot be shown
NOTICE_DECRYPT_FAILED = "Failed to decrypt message"
NOTICE_NO_KEY = "Received an encrypted message before the key exchange completed"


class _EventKind(Enum):
    OPEN = auto()
    DATA = auto()
    CLOSE = auto()
    ERROR = auto()
    CONNECT_TIMEOUT = auto()
    HANDSHAKE_TIMEOUT = auto()


@dataclass
class _QueuedEvent:
    kind: _EventKind
    channel: Channel
    payload: Any = None


# Worker shutdown marker
_STOP = object()


class SecureSession:
    """
    End-to-end encrypted session with one remote peer.

    Callbacks (all optional, exceptions are logged and swallowed):
        on_state_change(old_state, new_state)
        on_message(ChatMessage)         remote messages and system notices
        on_handshake_status(text)
        on_error(text)                  the session entered ERROR

    Sessions are created and used from coroutines running on one event loop.
    Transport callbacks may arrive from any thread.
    """

    def __init__(
        self,
        identity: Identity,
        transport: Transport,
        settings: Optional[SessionSettings] = None,
    ):
        self.identity = identity
        self.transport = transport
        self.settings = settings or SessionSettings()
        self.remote_id: Optional[str] = None
        self.last_error: Optional[SecureChatError] = None
        self.initiator = False

        self.fsm = SessionStateMachine()
        self.fsm.on_state_change = self._notify_state_change
        self.fsm.on_error = self._notify_error

        self.crypto = SessionCrypto()
        self.handshake = Handshake(identity, self.crypto)

        # Callbacks
        self.on_state_change: Optional[Callable[[SessionState, SessionState], None]] = None
        self.on_message: Optional[Callable[[ChatMessage], None]] = None
        self.on_handshake_status: Optional[Callable[[str], None]] = None
        self.on_error: Optional[Callable[[str], None]] = None

        self._loop = asyncio.get_running_loop()
        self._queue: Optional[asyncio.Queue] = None
        self._worker: Optional[asyncio.Task] = None
        self._channel: Optional[Channel] = None
        self._subscriptions: List[Subscription] = []
        self._connect_timer: Optional[asyncio.TimerHandle] = None
        self._handshake_timer: Optional[asyncio.TimerHandle] = None

        self.messages_sent = 0
        self.messages_received = 0
        self.messages_dropped = 0

    # Properties

    @property
    def state(self) -> SessionState:
        return self.fsm.get_state()

    @property
    def local_id(self) -> str:
        """Current discovery id of the local transport, or "" if unknown."""
        return self.transport.local_id or ""

    @property
    def encrypted(self) -> bool:
        return self.crypto.is_established

    @property
    def is_connected(self) -> bool:
        return self.fsm.is_connected()

    @property
    def handshake_state(self) -> HandshakeState:
        return self.handshake.state

    @property
    def channel(self) -> Optional[Channel]:
        return self._channel

    # Operations

    def connect(self, remote_id: str) -> None:
        """
        Start an outbound connection to a remote peer.

        A synchronous transport failure moves the session to ERROR. If the
        channel does not open within the connect timeout the session moves
        to ERROR with a ConnectionTimeoutError. There is no automatic retry.
        """
        self._require_idle()
        self.remote_id = remote_id
        self.initiator = True
        self.fsm.transition(SessionEvent.CONNECT_REQUESTED)
        logger.info(f"Connecting to {remote_id}")

        try:
            channel = self.transport.connect(remote_id)
        except TransportError as e:
            logger.warning(f"Transport refused connection to {remote_id}: {e}")
            self._fail(e)
            return

        self._attach(channel)

    def accept(self, channel: Channel) -> None:
        """Take over an inbound channel from the transport."""
        self._require_idle()
        self.remote_id = channel.peer
        self.initiator = self.settings.initiate_on_accept
        self.fsm.transition(SessionEvent.INCOMING_CONNECTION)
        logger.info(f"Accepting connection from {channel.peer}")

        self._attach(channel)
        if channel.is_open:
            self._post(_EventKind.OPEN, channel)

    def send(self, text: str) -> ChatMessage:
        """
        Send a chat message.

        Encrypted once the shared key has been derived, plaintext framed
        with the local discovery id before that (or when the key exchange
        was abandoned).

        Returns:
            The local ChatMessage for the sender's own log

        Raises:
            NoActiveConnectionError: If the session is not CONNECTED
            TransportError: If the channel refuses the data
            InvalidEnvelopeError: If a plaintext message is too large
        """
        if not self.fsm.is_connected() or self._channel is None:
            raise NoActiveConnectionError(
                "No active connection to send message", {"state": self.state.name}
            )

        sender_id = self.local_id or None
        if self.crypto.is_established:
            envelope = Envelope.encrypted_message(self.crypto.encrypt(text))
        else:
            envelope = Envelope.plaintext(text, sender_id)

        self._transmit(envelope)
        self.messages_sent += 1
        return ChatMessage.local(text, encrypted=self.crypto.is_established, sender_id=sender_id)

    def receive(self, data: Any) -> None:
        """Queue inbound data for the current channel."""
        if self._channel is None:
            logger.debug("Inbound data ignored; no active channel")
            return
        self._post(_EventKind.DATA, self._channel, data)

    def close(self) -> None:
        """
        Close the session. Idempotent.

        CONNECTED moves to CLOSED, CONNECTING moves back to IDLE (the
        attempt is cancelled). Other states are left unchanged.
        """
        state = self.fsm.get_state()
        if state == SessionState.CONNECTED:
            self._teardown()
            self.fsm.transition(SessionEvent.CLOSE_REQUESTED)
        elif state == SessionState.CONNECTING:
            self._teardown()
            self.fsm.transition(SessionEvent.CONNECT_CANCELLED)
        else:
            logger.debug(f"Close ignored in state {state.name}")

    async def drain(self) -> None:
        """Wait until every queued event has been handled."""
        # Let call_soon_threadsafe callbacks land in the queue
        await asyncio.sleep(0)
        if self._queue is not None:
            await self._queue.join()
        elif self._worker is not None and not self._worker.done():
            await self._worker

    def get_statistics(self) -> Dict[str, Any]:
        stats = self.fsm.get_statistics()
        stats.update(
            {
                "remote_id": self.remote_id,
                "initiator": self.initiator,
                "encrypted": self.encrypted,
                "handshake_state": self.handshake.state.name,
                "messages_sent": self.messages_sent,
                "messages_received": self.messages_received,
                "messages_dropped": self.messages_dropped,
            }
        )
        return stats

    def __repr__(self) -> str:
        return (
            f"SecureSession(remote={self.remote_id}, state={self.state.name}, "
            f"encrypted={self.encrypted})"
        )

    # Channel and worker management

    def _require_idle(self) -> None:
        if self.fsm.get_state() != SessionState.IDLE:
            raise NetworkError(
                ErrorCode.E005_OPERATION_FAILED,
                f"Session cannot start a connection in state {self.state.name}",
                {"state": self.state.name},
            )

    def _attach(self, channel: Channel) -> None:
        self._ensure_worker()
        self._channel = channel
        self.crypto = SessionCrypto()
        self.handshake = Handshake(self.identity, self.crypto)

        self._subscriptions = [
            channel.on("open", lambda *args: self._post(_EventKind.OPEN, channel)),
            channel.on("data", lambda data: self._post(_EventKind.DATA, channel, data)),
            channel.on("close", lambda *args: self._post(_EventKind.CLOSE, channel)),
            channel.on(
                "error", lambda reason=None: self._post(_EventKind.ERROR, channel, reason)
            ),
        ]
        self._connect_timer = self._loop.call_later(
            self.settings.connect_timeout, self._post, _EventKind.CONNECT_TIMEOUT, channel
        )

    def _ensure_worker(self) -> None:
        if self._queue is None:
            self._queue = asyncio.Queue()
            self._worker = self._loop.create_task(self._run(self._queue))

    def _stop_worker(self) -> None:
        if self._queue is not None:
            self._queue.put_nowait(_STOP)
            self._queue = None

    def _post(self, kind: _EventKind, channel: Channel, payload: Any = None) -> None:
        event = _QueuedEvent(kind, channel, payload)
        try:
            self._loop.call_soon_threadsafe(self._enqueue, event)
        except RuntimeError:
            logger.debug(f"Event {kind.name} dropped; event loop is closed")

    def _enqueue(self, event: _QueuedEvent) -> None:
        if self._queue is None:
            logger.debug(f"Event {event.kind.name} dropped; session is not running")
            return
        self._queue.put_nowait(event)

    async def _run(self, queue: asyncio.Queue) -> None:
        logger.debug(f"Session worker started for {self.remote_id}")
        try:
            while True:
                event = await queue.get()
                try:
                    if event is _STOP:
                        break
                    self._dispatch(event)
                except Exception as e:
                    logger.error(f"Error handling session event: {e}", exc_info=True)
                finally:
                    queue.task_done()
        finally:
            logger.debug(f"Session worker ended for {self.remote_id}")

    def _dispatch(self, event: _QueuedEvent) -> None:
        if self._channel is None or event.channel is not self._channel:
            logger.debug(f"Stale {event.kind.name} event ignored")
            return

        handlers = {
            _EventKind.OPEN: self._handle_open,
            _EventKind.DATA: self._handle_data,
            _EventKind.CLOSE: self._handle_close,
            _EventKind.ERROR: self._handle_error,
            _EventKind.CONNECT_TIMEOUT: self._handle_connect_timeout,
            _EventKind.HANDSHAKE_TIMEOUT: self._handle_handshake_timeout,
        }
        handlers[event.kind](event)

    def _cancel_timers(self) -> None:
        if self._connect_timer is not None:
            self._connect_timer.cancel()
            self._connect_timer = None
        if self._handshake_timer is not None:
            self._handshake_timer.cancel()
            self._handshake_timer = None

    def _teardown(self) -> None:
        self._cancel_timers()
        for subscription in self._subscriptions:
            subscription.cancel()
        self._subscriptions = []
        self.crypto.discard()

        channel, self._channel = self._channel, None
        if channel is not None:
            try:
                channel.close()
            except TransportError as e:
                logger.debug(f"Error closing channel to {channel.peer}: {e}")

        self._stop_worker()

    def _fail(self, error: SecureChatError, event: SessionEvent = SessionEvent.ERROR_OCCURRED) -> None:
        self.last_error = error
        self._teardown()
        self.fsm.transition(event, error.message)

    def _transmit(self, envelope: Envelope) -> None:
        self._channel.send(Protocol.encode(envelope))

    def _transmit_handshake(self, envelopes: List[Envelope]) -> None:
        for envelope in envelopes:
            try:
                self._transmit(envelope)
            except TransportError as e:
                logger.warning(f"Failed to send {envelope.kind.value}: {e}")
                return

    # Event handlers

    def _handle_open(self, event: _QueuedEvent) -> None:
        if self.fsm.get_state() != SessionState.CONNECTING:
            logger.debug(f"Open ignored in state {self.state.name}")
            return

        if self._connect_timer is not None:
            self._connect_timer.cancel()
            self._connect_timer = None
        self.fsm.transition(SessionEvent.CHANNEL_OPENED)

        if not self.settings.handshake_enabled:
            self._notify_handshake_status(STATUS_DISABLED)
            return

        self._handshake_timer = self._loop.call_later(
            self.settings.handshake_timeout,
            self._post,
            _EventKind.HANDSHAKE_TIMEOUT,
            event.channel,
        )
        self._notify_handshake_status(STATUS_EXCHANGING)
        if self.initiator:
            self._transmit_handshake(self.handshake.start())

    def _handle_data(self, event: _QueuedEvent) -> None:
        if self.fsm.get_state() == SessionState.CONNECTING:
            # Data implies the channel is open
            self._handle_open(event)
        if not self.fsm.is_connected():
            return

        try:
            envelope = Protocol.decode(event.payload)
        except InvalidEnvelopeError as e:
            self.messages_dropped += 1
            logger.warning(f"Ignoring invalid envelope from {self.remote_id}: {e}")
            return

        if envelope.kind == EnvelopeKind.KEY_EXCHANGE:
            self._on_key_exchange(envelope)
        elif envelope.kind == EnvelopeKind.KEY_EXCHANGE_COMPLETE:
            if self.settings.handshake_enabled:
                self.handshake.handle_complete()
        elif envelope.kind == EnvelopeKind.ENCRYPTED_MESSAGE:
            self._on_encrypted_message(envelope)
        else:
            self._on_plaintext_message(envelope)

    def _on_key_exchange(self, envelope: Envelope) -> None:
        if not self.settings.handshake_enabled:
            logger.debug("Key exchange ignored; encryption is disabled")
            return

        try:
            replies = self.handshake.handle_key_exchange(envelope.public_key)
        except CryptoError as e:
            logger.warning(f"Key exchange with {self.remote_id} failed: {e}")
            self._cancel_handshake_timer()
            self._notify_handshake_status(STATUS_FAILED)
            return

        if not replies:
            return

        self._cancel_handshake_timer()
        self._transmit_handshake(replies)
        logger.info(f"Secure channel established with {self.remote_id}")
        self._notify_handshake_status(STATUS_SECURED)

    def _on_encrypted_message(self, envelope: Envelope) -> None:
        try:
            text = self.crypto.decrypt(envelope.data)
        except NotInitializedError:
            self.messages_dropped += 1
            logger.warning(f"Encrypted message from {self.remote_id} arrived without a shared key")
            self._deliver(ChatMessage.system(NOTICE_NO_KEY))
            return
        except DecryptError as e:
            self.messages_dropped += 1
            logger.warning(f"Failed to decrypt message from {self.remote_id}: {e}")
            self._deliver(ChatMessage.system(NOTICE_DECRYPT_FAILED))
            return

        self.messages_received += 1
        self._deliver(ChatMessage.remote(text, encrypted=True))

    def _on_plaintext_message(self, envelope: Envelope) -> None:
        local_id = self.local_id
        if local_id and envelope.sender_id == local_id:
            self.messages_dropped += 1
            logger.debug("Dropped echo of our own message")
            return

        self.messages_received += 1
        self._deliver(ChatMessage.remote(envelope.text, encrypted=False, sender_id=envelope.sender_id))

    def _handle_close(self, event: _QueuedEvent) -> None:
        state = self.fsm.get_state()
        if state == SessionState.CONNECTING:
            self._fail(
                TransportError(
                    "Channel closed before it opened",
                    {"peer": self.remote_id},
                    code=ErrorCode.E203_CONNECTION_CLOSED,
                ),
                SessionEvent.CHANNEL_CLOSED,
            )
        elif state == SessionState.CONNECTED:
            logger.info(f"Channel to {self.remote_id} closed")
            self._teardown()
            self.fsm.transition(SessionEvent.CHANNEL_CLOSED)

    def _handle_error(self, event: _QueuedEvent) -> None:
        if self.fsm.is_terminal():
            return
        reason = event.payload or "unknown error"
        logger.error(f"Channel error with {self.remote_id}: {reason}")
        self._fail(TransportError(f"Connection error: {reason}", {"peer": self.remote_id}))

    def _handle_connect_timeout(self, event: _QueuedEvent) -> None:
        self._connect_timer = None
        if not self.fsm.is_connecting():
            return
        timeout = self.settings.connect_timeout
        logger.warning(f"Connection to {self.remote_id} timed out after {timeout}s")
        self._fail(
            ConnectionTimeoutError(
                f"Connection to {self.remote_id} timed out", {"timeout": timeout}
            ),
            SessionEvent.CONNECT_TIMEOUT,
        )

    def _handle_handshake_timeout(self, event: _QueuedEvent) -> None:
        self._handshake_timer = None
        error = HandshakeTimeoutError(
            "No key exchange received from peer",
            {"timeout": self.settings.handshake_timeout},
        )
        if self.handshake.abandon(error):
            self._notify_handshake_status(STATUS_TIMED_OUT)

    def _cancel_handshake_timer(self) -> None:
        if self._handshake_timer is not None:
            self._handshake_timer.cancel()
            self._handshake_timer = None

    # Callback plumbing

    def _deliver(self, message: ChatMessage) -> None:
        if self.on_message:
            try:
                self.on_message(message)
            except Exception as e:
                logger.error(f"Message callback error: {e}", exc_info=True)

    def _notify_handshake_status(self, text: str) -> None:
        if self.on_handshake_status:
            try:
                self.on_handshake_status(text)
            except Exception as e:
                logger.error(f"Handshake status callback error: {e}", exc_info=True)

    def _notify_state_change(self, old_state: SessionState, new_state: SessionState) -> None:
        if self.on_state_change:
            self.on_state_change(old_state, new_state)

    def _notify_error(self, message: str) -> None:
        if self.on_error:
            self.on_error(message)
