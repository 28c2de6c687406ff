"""
SecureChat - Transport and signaling interfaces.

The secure session layer does not discover peers or move bytes itself.
It consumes a Transport (one per local peer, assigns the discovery id and
creates channels) and Channels (one bidirectional, ordered data pipe per
remote peer). Both report what happens to them through events:

Transport events:
- open(local_id)       discovery id assigned, ready to connect
- connection(channel)  a remote peer connected to us
- error(reason)        signaling failure, transport should be recreated
- disconnected         lost the signaling network, transport should reconnect

Channel events:
- open                 channel ready for data
- data(data)           inbound data
- close                channel closed by either side
- error(reason)        channel failure

Listeners are registered with on(), which returns a Subscription handle
owned by the caller. Cancelling the handle detaches exactly that listener.

LoopbackNetwork provides an in-memory implementation that delivers every
event asynchronously on the running asyncio loop. It backs the test suite
and the command line demo.
"""

import asyncio
import logging
import secrets
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, List, Optional, Tuple

from .errors import ErrorCode, TransportError

logger = logging.getLogger(__name__)


class Subscription:
    """Handle for one registered listener."""

    def __init__(self, emitter: "EventEmitter", event: str, callback: Callable[..., None]):
        self._emitter = emitter
        self.event = event
        self.callback = callback
        self.active = True

    def cancel(self) -> None:
        """Detach the listener. Safe to call more than once."""
        if not self.active:
            return
        self.active = False
        self._emitter._remove_listener(self.event, self.callback)


class EventEmitter:
    """Minimal synchronous event emitter."""

    def __init__(self):
        self._listeners: Dict[str, List[Callable[..., None]]] = {}

    def on(self, event: str, callback: Callable[..., None]) -> Subscription:
        self._listeners.setdefault(event, []).append(callback)
        return Subscription(self, event, callback)

    def _remove_listener(self, event: str, callback: Callable[..., None]) -> None:
        listeners = self._listeners.get(event, [])
        if callback in listeners:
            listeners.remove(callback)

    def listener_count(self, event: str) -> int:
        return len(self._listeners.get(event, []))

    def emit(self, event: str, *args: Any) -> None:
        for callback in list(self._listeners.get(event, [])):
            try:
                callback(*args)
            except Exception as e:
                logger.error(f"Listener for '{event}' failed: {e}", exc_info=True)


class Channel(EventEmitter, ABC):
    """Bidirectional ordered data channel to one remote peer."""

    def __init__(self, peer: str):
        super().__init__()
        self.peer = peer

    @property
    @abstractmethod
    def is_open(self) -> bool:
        """True while data can be sent."""

    @abstractmethod
    def send(self, data: str) -> None:
        """Send data to the remote peer. Raises TransportError when not open."""

    @abstractmethod
    def close(self) -> None:
        """Close the channel. Idempotent."""


class Transport(EventEmitter, ABC):
    """Local peer on the signaling network."""

    @property
    @abstractmethod
    def local_id(self) -> Optional[str]:
        """Discovery id, or None until the transport is ready."""

    @property
    def ready(self) -> bool:
        return self.local_id is not None

    @abstractmethod
    def connect(self, remote_id: str) -> Channel:
        """Start a connection to a remote peer. May raise TransportError."""

    @abstractmethod
    def reconnect(self) -> None:
        """Rejoin the signaling network after a disconnect."""

    @abstractmethod
    def destroy(self) -> None:
        """Release the transport and close all of its channels."""


def generate_peer_id() -> str:
    """Generate a random discovery id (16 lowercase hex characters)."""
    return secrets.token_hex(8)


class LoopbackChannel(Channel):
    """One end of an in-memory channel pair."""

    def __init__(self, network: "LoopbackNetwork", local_id: str, peer: str):
        super().__init__(peer)
        self.network = network
        self.local_id = local_id
        self.partner: Optional["LoopbackChannel"] = None
        self._open = False
        self._closed = False

    @property
    def is_open(self) -> bool:
        return self._open and not self._closed

    @property
    def is_closed(self) -> bool:
        return self._closed

    def send(self, data: str) -> None:
        if not self.is_open:
            raise TransportError(
                "Channel is not open", {"peer": self.peer}, code=ErrorCode.E204_SEND_FAILED
            )
        self.network._record(self.local_id, self.peer, data)
        if self.partner is not None:
            self.network._schedule(self.partner._deliver, data)
        if self.network.echo:
            self.network._schedule(self._deliver, data)

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._open = False
        self.network._schedule(self.emit, "close")
        if self.partner is not None and not self.partner.is_closed:
            self.network._schedule(self.partner._remote_closed)

    def fail(self, reason: str) -> None:
        """Simulate a channel error."""
        self.network._schedule(self._fail, reason)

    def _fail(self, reason: str) -> None:
        if not self._closed:
            self.emit("error", reason)

    def _mark_open(self) -> None:
        if self._closed or self._open:
            return
        self._open = True
        self.emit("open")

    def _deliver(self, data: str) -> None:
        if self.is_open:
            self.emit("data", data)

    def _remote_closed(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._open = False
        self.emit("close")


class LoopbackTransport(Transport):
    """In-memory peer registered on a LoopbackNetwork."""

    def __init__(self, network: "LoopbackNetwork", peer_id: str):
        super().__init__()
        self.network = network
        self.peer_id = peer_id
        self.destroyed = False
        self.channels: List[LoopbackChannel] = []
        self._ready = False

    @property
    def local_id(self) -> Optional[str]:
        return self.peer_id if self._ready and not self.destroyed else None

    def connect(self, remote_id: str) -> Channel:
        if self.destroyed:
            raise TransportError("Transport has been destroyed", {"peer_id": self.peer_id})
        if not self._ready:
            raise TransportError("Transport is not ready", {"peer_id": self.peer_id})
        channel = self.network._open_link(self, remote_id)
        self.channels.append(channel)
        return channel

    def reconnect(self) -> None:
        if self.destroyed:
            raise TransportError("Cannot reconnect a destroyed transport", {"peer_id": self.peer_id})
        logger.info(f"Peer {self.peer_id} rejoining the network")
        self._ready = False
        self.network._schedule(self._announce)

    def destroy(self) -> None:
        if self.destroyed:
            return
        self.destroyed = True
        self._ready = False
        for channel in self.channels:
            channel.close()
        self.channels.clear()
        self.network._unregister(self)
        logger.debug(f"Peer {self.peer_id} destroyed")

    def _announce(self) -> None:
        if self.destroyed:
            return
        self._ready = True
        self.emit("open", self.peer_id)

    def _incoming(self, channel: LoopbackChannel) -> None:
        if self.destroyed:
            channel.close()
            return
        self.channels.append(channel)
        self.emit("connection", channel)


class LoopbackNetwork:
    """
    In-memory signaling network.

    Args:
        auto_open: Open channel pairs automatically after a connect
        open_delay: Seconds to wait before opening a channel pair
        echo: Also deliver sent data back to the sending channel
    """

    def __init__(self, auto_open: bool = True, open_delay: float = 0.0, echo: bool = False):
        self.auto_open = auto_open
        self.open_delay = open_delay
        self.echo = echo
        self.peers: Dict[str, LoopbackTransport] = {}
        self.transcript: List[Tuple[str, str, str]] = []

    def create_peer(self, peer_id: Optional[str] = None) -> LoopbackTransport:
        """Register a new peer. Usable directly as a transport factory."""
        peer_id = peer_id or generate_peer_id()
        if peer_id in self.peers:
            raise TransportError(f"Peer id is already taken: {peer_id}", {"peer_id": peer_id})
        transport = LoopbackTransport(self, peer_id)
        self.peers[peer_id] = transport
        self._schedule(transport._announce)
        return transport

    def fail_peer(self, peer_id: str, reason: str = "network") -> None:
        """Simulate a signaling error on a peer."""
        transport = self.peers[peer_id]
        self._schedule(transport.emit, "error", reason)

    def disconnect_peer(self, peer_id: str) -> None:
        """Simulate a peer losing the signaling network."""
        transport = self.peers[peer_id]
        transport._ready = False
        self._schedule(transport.emit, "disconnected")

    def messages_from(self, peer_id: str) -> List[str]:
        """Return all data sent by a peer, in order."""
        return [data for source, _, data in self.transcript if source == peer_id]

    def _open_link(self, source: LoopbackTransport, remote_id: str) -> LoopbackChannel:
        local = LoopbackChannel(self, source.peer_id, remote_id)
        target = self.peers.get(remote_id)

        if target is None or not target.ready:
            logger.debug(f"Peer {remote_id} unavailable for {source.peer_id}")
            local.fail(f"Could not connect to peer {remote_id}")
            return local

        remote = LoopbackChannel(self, remote_id, source.peer_id)
        local.partner = remote
        remote.partner = local

        self._schedule(target._incoming, remote)
        if self.auto_open:
            self._schedule(self._open_pair, local, remote, delay=self.open_delay)
        return local

    def _open_pair(self, local: LoopbackChannel, remote: LoopbackChannel) -> None:
        remote._mark_open()
        local._mark_open()

    def _record(self, source: str, destination: str, data: str) -> None:
        self.transcript.append((source, destination, data))

    def _unregister(self, transport: LoopbackTransport) -> None:
        if self.peers.get(transport.peer_id) is transport:
            del self.peers[transport.peer_id]

    def _schedule(self, callback: Callable[..., None], *args: Any, delay: float = 0.0) -> None:
        loop = asyncio.get_running_loop()
        if delay > 0:
            loop.call_later(delay, callback, *args)
        else:
            loop.call_soon(callback, *args)
