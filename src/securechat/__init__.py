"""
SecureChat - End-to-end encrypted two-party chat session layer

Ephemeral P-384 ECDH key agreement run in-band over an externally provided
transport, AES-256-GCM message encryption, and the connection state
machine that sequences both under unreliable network conditions.

Version: 1.0.0
License: MIT
"""

__version__ = "1.0.0"
__license__ = "MIT"

from .client import ChatClient
from .config import Config, SessionSettings
from .connection_fsm import SessionState
from .constants import APP_NAME, VERSION
from .errors import (
    ConfigError,
    ConnectionTimeoutError,
    CryptoError,
    DecryptError,
    ErrorCode,
    HandshakeTimeoutError,
    InvalidEnvelopeError,
    KeyGenError,
    NetworkError,
    NoActiveConnectionError,
    NotInitializedError,
    SecureChatError,
    TransportError,
)
from .handshake import HandshakeState
from .identity import Identity
from .message import ChatMessage, MessageOrigin
from .protocol import Envelope, EnvelopeKind, Protocol
from .session import SecureSession
from .transport import Channel, LoopbackNetwork, Transport

__all__ = [
    "APP_NAME",
    "VERSION",
    "Channel",
    "ChatClient",
    "ChatMessage",
    "Config",
    "ConfigError",
    "ConnectionTimeoutError",
    "CryptoError",
    "DecryptError",
    "Envelope",
    "EnvelopeKind",
    "ErrorCode",
    "HandshakeState",
    "HandshakeTimeoutError",
    "Identity",
    "InvalidEnvelopeError",
    "KeyGenError",
    "LoopbackNetwork",
    "MessageOrigin",
    "NetworkError",
    "NoActiveConnectionError",
    "NotInitializedError",
    "Protocol",
    "SecureChatError",
    "SecureSession",
    "SessionSettings",
    "SessionState",
    "Transport",
    "TransportError",
    "__license__",
    "__version__",
]
