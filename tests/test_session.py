"""
SecureChat - Secure session tests.

Two sessions are wired together over the loopback network. Where a peer
must misbehave (never answer the key exchange, send garbage) the test uses
a raw channel listener instead of a second session, or injects data with
SecureSession.receive().
"""

import asyncio
import json
from unittest.mock import MagicMock

import pytest

from securechat.config import SessionSettings
from securechat.connection_fsm import SessionState
from securechat.errors import (
    ConnectionTimeoutError,
    NetworkError,
    NoActiveConnectionError,
    TransportError,
)
from securechat.handshake import HandshakeState
from securechat.identity import Identity
from securechat.message import MessageOrigin
from securechat.protocol import Envelope, EnvelopeKind, Protocol
from securechat.session import (
    NOTICE_DECRYPT_FAILED,
    NOTICE_NO_KEY,
    STATUS_EXCHANGING,
    STATUS_FAILED,
    STATUS_SECURED,
    STATUS_TIMED_OUT,
    SecureSession,
)
from securechat.transport import LoopbackNetwork


class Recorder:
    """Collects everything a session reports."""

    def __init__(self, session: SecureSession):
        self.states = []
        self.messages = []
        self.statuses = []
        self.errors = []
        session.on_state_change = lambda old, new: self.states.append((old, new))
        session.on_message = self.messages.append
        session.on_handshake_status = self.statuses.append
        session.on_error = self.errors.append

    def texts(self, origin=MessageOrigin.REMOTE):
        return [m.text for m in self.messages if m.origin == origin]


async def _session_pair(wait_until, identity, peer_identity, settings, peer_settings=None, network=None):
    network = network or LoopbackNetwork()
    alice_transport = network.create_peer("alice")
    bob_transport = network.create_peer("bob")
    assert await wait_until(lambda: alice_transport.ready and bob_transport.ready)

    accepted = []

    def on_connection(channel):
        bob = SecureSession(peer_identity, bob_transport, peer_settings or settings)
        accepted.append((bob, Recorder(bob)))
        bob.accept(channel)

    bob_transport.on("connection", on_connection)

    alice = SecureSession(identity, alice_transport, settings)
    alice_log = Recorder(alice)
    alice.connect("bob")

    assert await wait_until(lambda: accepted and alice.is_connected and accepted[0][0].is_connected)
    bob, bob_log = accepted[0]
    return network, alice, alice_log, bob, bob_log


async def _raw_peer(wait_until, network):
    """Register 'alice' and a 'bob' that only records inbound data."""
    alice_transport = network.create_peer("alice")
    bob_transport = network.create_peer("bob")
    assert await wait_until(lambda: alice_transport.ready and bob_transport.ready)

    inbound, channels = [], []

    def on_connection(channel):
        channels.append(channel)
        channel.on("data", inbound.append)

    bob_transport.on("connection", on_connection)
    return alice_transport, inbound, channels


@pytest.mark.asyncio
async def test_handshake_completes_with_identical_keys(wait_until, identity, peer_identity, fast_settings):
    """Test both sessions become encrypted and hold byte-identical keys."""
    _, alice, alice_log, bob, bob_log = await _session_pair(
        wait_until, identity, peer_identity, fast_settings
    )

    assert await wait_until(lambda: alice.encrypted and bob.encrypted)
    assert alice.crypto.shared_key == bob.crypto.shared_key
    assert await wait_until(
        lambda: alice.handshake_state == HandshakeState.COMPLETE
        and bob.handshake_state == HandshakeState.COMPLETE
    )

    assert alice_log.statuses == [STATUS_EXCHANGING, STATUS_SECURED]
    assert bob_log.statuses == [STATUS_EXCHANGING, STATUS_SECURED]
    # Handshake envelopes never reach the application
    assert alice_log.messages == []
    assert bob_log.messages == []


@pytest.mark.asyncio
async def test_encrypted_hello_scenario(wait_until, identity, peer_identity, fast_settings):
    """Test A connects to B, both derive the key, and "hello" arrives intact."""
    network, alice, _, bob, bob_log = await _session_pair(
        wait_until, identity, peer_identity, fast_settings
    )
    assert await wait_until(lambda: alice.encrypted and bob.encrypted)

    first = alice.send("hello")
    second = alice.send("hello")

    assert first.encrypted and second.encrypted
    assert first.origin == MessageOrigin.LOCAL
    assert await wait_until(lambda: len(bob_log.messages) == 2)
    assert bob_log.texts() == ["hello", "hello"]
    assert all(m.encrypted for m in bob_log.messages)

    alice_wire = [Protocol.decode(data) for data in network.messages_from("alice")]
    bob_wire = [Protocol.decode(data) for data in network.messages_from("bob")]

    assert [e.kind for e in alice_wire] == [
        EnvelopeKind.KEY_EXCHANGE,
        EnvelopeKind.KEY_EXCHANGE_COMPLETE,
        EnvelopeKind.ENCRYPTED_MESSAGE,
        EnvelopeKind.ENCRYPTED_MESSAGE,
    ]
    assert [e.kind for e in bob_wire] == [
        EnvelopeKind.KEY_EXCHANGE,
        EnvelopeKind.KEY_EXCHANGE_COMPLETE,
    ]
    assert alice_wire[0].public_key == identity.export_public_key()
    assert bob_wire[0].public_key == peer_identity.export_public_key()

    # Fresh nonce per send
    assert alice_wire[2].data != alice_wire[3].data
    assert b"hello" not in alice_wire[2].data


@pytest.mark.asyncio
async def test_both_sides_initiating_converges(wait_until, identity, peer_identity, fast_settings):
    """Test the exchange still converges when the accepting side also initiates."""
    peer_settings = SessionSettings(
        connect_timeout=fast_settings.connect_timeout,
        handshake_timeout=fast_settings.handshake_timeout,
        initiate_on_accept=True,
    )
    network, alice, _, bob, _ = await _session_pair(
        wait_until, identity, peer_identity, fast_settings, peer_settings
    )

    assert await wait_until(lambda: alice.encrypted and bob.encrypted)
    assert alice.crypto.shared_key == bob.crypto.shared_key

    # Each side sent its key exactly once
    for peer_id in ("alice", "bob"):
        kinds = [Protocol.decode(d).kind for d in network.messages_from(peer_id)]
        assert kinds.count(EnvelopeKind.KEY_EXCHANGE) == 1


@pytest.mark.asyncio
async def test_unanswered_key_exchange_falls_back_to_plaintext(wait_until, identity, fast_settings):
    """Test a peer that never answers: A falls back and "hi" arrives as plaintext."""
    network = LoopbackNetwork()
    alice_transport, inbound, _ = await _raw_peer(wait_until, network)

    alice = SecureSession(identity, alice_transport, fast_settings)
    alice_log = Recorder(alice)
    alice.connect("bob")

    assert await wait_until(lambda: alice.handshake_state == HandshakeState.ABANDONED)
    assert alice_log.statuses == [STATUS_EXCHANGING, STATUS_TIMED_OUT]
    assert alice.is_connected
    assert not alice.encrypted

    message = alice.send("hi")
    assert not message.encrypted

    assert await wait_until(lambda: len(inbound) == 2)
    assert Protocol.decode(inbound[0]).kind == EnvelopeKind.KEY_EXCHANGE
    envelope = Protocol.decode(inbound[1])
    assert envelope.kind == EnvelopeKind.PLAINTEXT_MESSAGE
    assert envelope.text == "hi"
    assert envelope.sender_id == alice.local_id == "alice"

    # A late key does not start a second exchange
    alice.receive(Protocol.encode(Envelope.key_exchange(Identity.create().export_public_key())))
    await alice.drain()
    await asyncio.sleep(fast_settings.handshake_timeout)
    assert not alice.encrypted


@pytest.mark.asyncio
async def test_legacy_peer_exchanges_plaintext(wait_until, identity, peer_identity, fast_settings):
    """Test a peer with encryption disabled still chats in plaintext."""
    legacy = SessionSettings(connect_timeout=fast_settings.connect_timeout, handshake_enabled=False)
    _, alice, alice_log, bob, bob_log = await _session_pair(
        wait_until, identity, peer_identity, fast_settings, legacy
    )

    assert await wait_until(lambda: alice.handshake_state == HandshakeState.ABANDONED)
    assert bob.handshake_state == HandshakeState.NOT_STARTED

    alice.send("from alice")
    bob.send("from bob")

    assert await wait_until(lambda: alice_log.texts() and bob_log.texts())
    assert alice_log.texts() == ["from bob"]
    assert bob_log.texts() == ["from alice"]
    assert bob_log.messages[0].sender_id == "alice"


@pytest.mark.asyncio
async def test_late_complete_accepted_after_window(wait_until, identity, peer_identity, fast_settings):
    """Test a complete notice arriving after the window still completes the handshake."""
    network = LoopbackNetwork()
    alice_transport, _, _ = await _raw_peer(wait_until, network)
    alice = SecureSession(identity, alice_transport, fast_settings)
    alice.connect("bob")
    assert await wait_until(lambda: alice.handshake_state == HandshakeState.INITIATED)

    alice.receive(Protocol.encode(Envelope.key_exchange(peer_identity.export_public_key())))
    assert await wait_until(lambda: alice.encrypted)

    await asyncio.sleep(fast_settings.handshake_timeout * 2)
    assert alice.handshake_state == HandshakeState.DERIVED

    alice.receive(Protocol.encode(Envelope.key_exchange_complete()))
    assert await wait_until(lambda: alice.handshake_state == HandshakeState.COMPLETE)
    assert alice.encrypted


@pytest.mark.asyncio
async def test_duplicate_key_exchange_keeps_key(wait_until, identity, peer_identity, fast_settings):
    """Test encrypted never reverts and the key is never replaced."""
    _, alice, _, bob, _ = await _session_pair(wait_until, identity, peer_identity, fast_settings)
    assert await wait_until(lambda: alice.encrypted and bob.encrypted)
    key = alice.crypto.shared_key

    alice.receive(Protocol.encode(Envelope.key_exchange(Identity.create().export_public_key())))
    await alice.drain()

    assert alice.encrypted
    assert alice.crypto.shared_key is key


@pytest.mark.asyncio
async def test_invalid_peer_key_falls_back(wait_until, identity, fast_settings):
    """Test an invalid peer key abandons the exchange without ending the session."""
    network = LoopbackNetwork()
    alice_transport, inbound, _ = await _raw_peer(wait_until, network)
    alice = SecureSession(identity, alice_transport, fast_settings)
    alice_log = Recorder(alice)
    alice.connect("bob")
    assert await wait_until(lambda: alice.is_connected)

    alice.receive(json.dumps({"type": "key-exchange", "publicKey": [4] + [9] * 96}))

    assert await wait_until(lambda: STATUS_FAILED in alice_log.statuses)
    assert alice.handshake_state == HandshakeState.ABANDONED
    assert alice.is_connected

    alice.send("still here")
    assert await wait_until(lambda: len(inbound) == 2)
    assert Protocol.decode(inbound[1]).kind == EnvelopeKind.PLAINTEXT_MESSAGE


@pytest.mark.parametrize("text", ["hi", "", "🔒 unicode", "x" * 500])
@pytest.mark.asyncio
async def test_self_echo_is_dropped(wait_until, identity, text):
    """Test plaintext carrying our own id never reaches the application."""
    network = LoopbackNetwork()
    alice_transport, _, _ = await _raw_peer(wait_until, network)
    settings = SessionSettings(handshake_enabled=False)
    alice = SecureSession(identity, alice_transport, settings)
    alice_log = Recorder(alice)
    alice.connect("bob")
    assert await wait_until(lambda: alice.is_connected)

    alice.receive(Protocol.encode(Envelope.plaintext(text, alice.local_id)))
    alice.receive(Protocol.encode(Envelope.plaintext("from bob", "bob")))
    await alice.drain()

    assert alice_log.texts() == ["from bob"]
    assert alice.messages_dropped == 1


@pytest.mark.asyncio
async def test_looped_back_transport_echo_suppressed(wait_until, identity, peer_identity):
    """Test a transport that echoes sent data back does not duplicate messages."""
    network = LoopbackNetwork(echo=True)
    settings = SessionSettings(handshake_enabled=False)
    _, alice, alice_log, bob, bob_log = await _session_pair(
        wait_until, identity, peer_identity, settings, network=network
    )

    alice.send("one")
    bob.send("two")

    assert await wait_until(lambda: alice_log.texts() and bob_log.texts())
    await alice.drain()
    await bob.drain()
    assert alice_log.texts() == ["two"]
    assert bob_log.texts() == ["one"]


@pytest.mark.asyncio
async def test_echoing_transport_still_agrees_on_key(wait_until, identity, peer_identity, fast_settings):
    """Test key agreement over a transport that echoes every send back."""
    network = LoopbackNetwork(echo=True)
    _, alice, alice_log, bob, bob_log = await _session_pair(
        wait_until, identity, peer_identity, fast_settings, network=network
    )

    assert await wait_until(lambda: alice.encrypted and bob.encrypted)
    assert alice.crypto.shared_key == bob.crypto.shared_key

    alice.send("hello")

    assert await wait_until(lambda: "hello" in bob_log.texts())
    await bob.drain()
    assert bob_log.texts(MessageOrigin.SYSTEM) == []


@pytest.mark.asyncio
async def test_legacy_raw_string_from_old_client(wait_until, identity):
    """Test a bare string is shown as a message from an unknown sender."""
    network = LoopbackNetwork()
    alice_transport, _, _ = await _raw_peer(wait_until, network)
    alice = SecureSession(identity, alice_transport, SessionSettings(handshake_enabled=False))
    alice_log = Recorder(alice)
    alice.connect("bob")
    assert await wait_until(lambda: alice.is_connected)

    alice.receive("plain old text")
    await alice.drain()

    assert alice_log.texts() == ["plain old text"]
    assert alice_log.messages[0].sender_id is None


@pytest.mark.asyncio
async def test_decrypt_failure_is_system_event(wait_until, identity, peer_identity, fast_settings):
    """Test tampered and truncated ciphertext produce notices, not errors."""
    _, alice, alice_log, bob, _ = await _session_pair(wait_until, identity, peer_identity, fast_settings)
    assert await wait_until(lambda: alice.encrypted and bob.encrypted)

    alice.receive(Protocol.encode(Envelope.encrypted_message(b"\x00" * 40)))
    alice.receive('{"type":"encrypted-message","data":[1,2,3]}')
    await alice.drain()

    system = alice_log.texts(MessageOrigin.SYSTEM)
    assert system == [NOTICE_DECRYPT_FAILED, NOTICE_DECRYPT_FAILED]
    assert alice.is_connected

    bob.send("after failure")
    assert await wait_until(lambda: alice_log.texts() == ["after failure"])


@pytest.mark.asyncio
async def test_encrypted_message_without_key_is_system_event(wait_until, identity):
    """Test an encrypted envelope before key agreement is reported."""
    network = LoopbackNetwork()
    alice_transport, _, _ = await _raw_peer(wait_until, network)
    alice = SecureSession(identity, alice_transport, SessionSettings(handshake_enabled=False))
    alice_log = Recorder(alice)
    alice.connect("bob")
    assert await wait_until(lambda: alice.is_connected)

    alice.receive(Protocol.encode(Envelope.encrypted_message(b"\x01" * 40)))
    await alice.drain()

    assert alice_log.texts(MessageOrigin.SYSTEM) == [NOTICE_NO_KEY]
    assert alice.is_connected


@pytest.mark.asyncio
async def test_invalid_envelope_ignored(wait_until, identity):
    """Test malformed envelopes are logged and ignored."""
    network = LoopbackNetwork()
    alice_transport, _, _ = await _raw_peer(wait_until, network)
    alice = SecureSession(identity, alice_transport, SessionSettings(handshake_enabled=False))
    alice_log = Recorder(alice)
    alice.connect("bob")
    assert await wait_until(lambda: alice.is_connected)

    alice.receive('{"type":"mystery"}')
    alice.receive('{"type":"key-exchange","publicKey":"nope"}')
    await alice.drain()

    assert alice_log.messages == []
    assert alice.messages_dropped == 2
    assert alice.is_connected


@pytest.mark.asyncio
async def test_close_is_idempotent(wait_until, identity, peer_identity, fast_settings):
    """Test a second close has no observable effect."""
    _, alice, alice_log, bob, bob_log = await _session_pair(
        wait_until, identity, peer_identity, fast_settings
    )
    assert await wait_until(lambda: alice.encrypted)

    alice.close()
    states_after_first = list(alice_log.states)
    alice.close()

    assert alice.state == SessionState.CLOSED
    assert alice_log.states == states_after_first
    assert alice_log.states[-1] == (SessionState.CONNECTED, SessionState.CLOSED)
    assert not alice.encrypted
    assert alice.channel is None

    with pytest.raises(NoActiveConnectionError):
        alice.send("too late")

    # The remote end sees the close
    assert await wait_until(lambda: bob.state == SessionState.CLOSED)
    assert not bob.encrypted


@pytest.mark.asyncio
async def test_send_requires_connection(identity):
    """Test send fails outside CONNECTED."""
    network = LoopbackNetwork()
    session = SecureSession(identity, network.create_peer("alice"))

    with pytest.raises(NoActiveConnectionError):
        session.send("hello")


@pytest.mark.asyncio
async def test_connect_timeout(wait_until, identity, fast_settings):
    """Test a channel that never opens ends in ERROR with a timeout."""
    network = LoopbackNetwork(auto_open=False)
    alice_transport, _, channels = await _raw_peer(wait_until, network)
    alice = SecureSession(identity, alice_transport, fast_settings)
    alice_log = Recorder(alice)

    alice.connect("bob")
    assert alice.state == SessionState.CONNECTING

    assert await wait_until(lambda: alice.state == SessionState.ERROR)
    assert isinstance(alice.last_error, ConnectionTimeoutError)
    assert alice_log.errors == [alice.last_error.message]
    assert alice.channel is None
    assert await wait_until(lambda: channels[0].is_closed)


@pytest.mark.asyncio
async def test_cancel_while_connecting(wait_until, identity, fast_settings):
    """Test closing before open returns to IDLE and the timer never fires."""
    network = LoopbackNetwork(auto_open=False)
    alice_transport, _, _ = await _raw_peer(wait_until, network)
    alice = SecureSession(identity, alice_transport, fast_settings)
    alice_log = Recorder(alice)

    alice.connect("bob")
    alice.close()
    assert alice.state == SessionState.IDLE

    await asyncio.sleep(fast_settings.connect_timeout * 2)
    assert alice.state == SessionState.IDLE
    assert alice_log.errors == []


@pytest.mark.asyncio
async def test_synchronous_connect_failure(identity):
    """Test a transport that refuses to connect moves the session to ERROR."""
    network = LoopbackNetwork()
    transport = network.create_peer("alice")  # Not announced yet
    session = SecureSession(identity, transport)
    on_error = MagicMock()
    session.on_error = on_error

    session.connect("bob")

    assert session.state == SessionState.ERROR
    assert isinstance(session.last_error, TransportError)
    on_error.assert_called_once()


@pytest.mark.asyncio
async def test_unknown_peer_is_transport_error(wait_until, identity, fast_settings):
    """Test connecting to an unknown id ends in ERROR via the channel error."""
    network = LoopbackNetwork()
    transport = network.create_peer("alice")
    assert await wait_until(lambda: transport.ready)
    session = SecureSession(identity, transport, fast_settings)

    session.connect("nobody")

    assert await wait_until(lambda: session.state == SessionState.ERROR)
    assert isinstance(session.last_error, TransportError)
    assert "nobody" in session.last_error.message


@pytest.mark.asyncio
async def test_transport_error_while_connected(wait_until, identity, peer_identity, fast_settings):
    """Test a channel error terminates a connected session."""
    _, alice, alice_log, bob, _ = await _session_pair(wait_until, identity, peer_identity, fast_settings)
    assert await wait_until(lambda: alice.encrypted)

    alice.channel.fail("ice-failed")

    assert await wait_until(lambda: alice.state == SessionState.ERROR)
    assert not alice.encrypted
    assert alice_log.errors == ["Connection error: ice-failed"]

    # Not reusable
    with pytest.raises(NetworkError):
        alice.connect("bob")


@pytest.mark.asyncio
async def test_data_while_connecting_implies_open(wait_until, identity, fast_settings):
    """Test inbound data before the open signal first opens the session."""
    network = LoopbackNetwork(auto_open=False)
    alice_transport, _, _ = await _raw_peer(wait_until, network)
    alice = SecureSession(identity, alice_transport, fast_settings)
    alice_log = Recorder(alice)

    alice.connect("bob")
    alice.receive(Protocol.encode(Envelope.plaintext("early", "bob")))

    assert await wait_until(lambda: alice.is_connected)
    assert await wait_until(lambda: alice_log.texts() == ["early"])


@pytest.mark.asyncio
async def test_statistics(wait_until, identity, peer_identity, fast_settings):
    """Test session statistics include lifecycle and message counters."""
    _, alice, _, bob, _ = await _session_pair(wait_until, identity, peer_identity, fast_settings)
    assert await wait_until(lambda: alice.encrypted and bob.encrypted)
    alice.send("hello")

    stats = alice.get_statistics()

    assert stats["current_state"] == "CONNECTED"
    assert stats["remote_id"] == "bob"
    assert stats["initiator"] is True
    assert stats["encrypted"] is True
    assert stats["messages_sent"] == 1
