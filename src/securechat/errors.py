"""
SecureChat - Custom Exception Classes and Error Codes

This module defines all custom exceptions and error codes used throughout
the SecureChat package. Each error has a unique code for logging and debugging.

Version: 1.0.0
"""

from enum import Enum
from typing import Any, Dict, Optional


class ErrorCode(Enum):
    """Enumeration of all SecureChat error codes."""

    # General Errors (E001-E099)
    E005_OPERATION_FAILED = "E005"

    # Crypto Errors (E100-E199)
    E100_CRYPTO_ERROR = "E100"
    E102_DECRYPTION_FAILED = "E102"
    E103_INVALID_KEY = "E103"
    E104_KEY_GENERATION_FAILED = "E104"
    E108_KEY_DERIVATION_FAILED = "E108"
    E109_NOT_INITIALIZED = "E109"

    # Network Errors (E200-E299)
    E200_NETWORK_ERROR = "E200"
    E201_CONNECTION_FAILED = "E201"
    E202_CONNECTION_TIMEOUT = "E202"
    E203_CONNECTION_CLOSED = "E203"
    E204_SEND_FAILED = "E204"
    E206_INVALID_MESSAGE = "E206"
    E207_MESSAGE_TOO_LARGE = "E207"
    E210_NO_ACTIVE_CONNECTION = "E210"
    E211_HANDSHAKE_TIMEOUT = "E211"

    # Config Errors (E700-E799)
    E700_CONFIG_ERROR = "E700"
    E702_CONFIG_SAVE_FAILED = "E702"
    E703_INVALID_CONFIG = "E703"
    E704_CONFIG_PARSE_ERROR = "E704"


class SecureChatError(Exception):
    """Base exception class for all SecureChat errors.

    All custom exceptions in SecureChat inherit from this class.
    Provides standardized error handling and logging.

    Attributes:
        code: Error code from ErrorCode enum
        message: Human-readable error message
        details: Additional error details (optional)
    """

    def __init__(self, code: ErrorCode, message: str, details: Optional[Dict[str, Any]] = None):
        """Initialize a SecureChat error.

        Args:
            code: Error code from ErrorCode enum
            message: Human-readable error message
            details: Additional error context (optional)
        """
        self.code = code
        self.message = message
        self.details = details or {}
        super().__init__(f"[{code.value}] {message}")

    def to_dict(self) -> Dict[str, Any]:
        """Convert error to dictionary for serialization.

        Returns:
            Dictionary containing error information
        """
        return {"code": self.code.value, "message": self.message, "details": self.details}


class CryptoError(SecureChatError):
    """Exception raised for cryptographic operation failures.

    This includes key generation, key agreement, encryption and decryption.
    """

    def __init__(
        self,
        code: ErrorCode = ErrorCode.E100_CRYPTO_ERROR,
        message: str = "Cryptographic operation failed",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(code, message, details)


class KeyGenError(CryptoError):
    """Key pair generation failed. Fatal for the identity."""

    def __init__(
        self,
        message: str = "Failed to generate key pair",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(ErrorCode.E104_KEY_GENERATION_FAILED, message, details)


class NotInitializedError(CryptoError):
    """A crypto operation ran before key generation or key agreement."""

    def __init__(
        self,
        message: str = "Key material not initialized",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(ErrorCode.E109_NOT_INITIALIZED, message, details)


class DecryptError(CryptoError):
    """AEAD verification or decoding failed for a single message."""

    def __init__(
        self,
        message: str = "Decryption failed",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(ErrorCode.E102_DECRYPTION_FAILED, message, details)


class NetworkError(SecureChatError):
    """Exception raised for network operation failures.

    This includes connection errors, timeouts, send failures,
    and protocol violations.
    """

    def __init__(
        self,
        code: ErrorCode = ErrorCode.E200_NETWORK_ERROR,
        message: str = "Network operation failed",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(code, message, details)


class ConnectionTimeoutError(NetworkError):
    """The channel did not open within the connection timeout."""

    def __init__(
        self,
        message: str = "Connection timeout",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(ErrorCode.E202_CONNECTION_TIMEOUT, message, details)


class TransportError(NetworkError):
    """Error surfaced by the transport. Terminal for the session."""

    def __init__(
        self,
        message: str = "Transport error",
        details: Optional[Dict[str, Any]] = None,
        code: ErrorCode = ErrorCode.E201_CONNECTION_FAILED,
    ):
        super().__init__(code, message, details)


class NoActiveConnectionError(NetworkError):
    """Send attempted while the session is not connected."""

    def __init__(
        self,
        message: str = "No active connection",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(ErrorCode.E210_NO_ACTIVE_CONNECTION, message, details)


class HandshakeTimeoutError(NetworkError):
    """No peer key arrived within the handshake window. Non-fatal."""

    def __init__(
        self,
        message: str = "Key exchange timed out",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(ErrorCode.E211_HANDSHAKE_TIMEOUT, message, details)


class InvalidEnvelopeError(NetworkError):
    """A wire envelope could not be decoded or its payload does not match its kind."""

    def __init__(
        self,
        message: str = "Invalid envelope",
        details: Optional[Dict[str, Any]] = None,
        code: ErrorCode = ErrorCode.E206_INVALID_MESSAGE,
    ):
        super().__init__(code, message, details)


class ConfigError(SecureChatError):
    """Exception raised for configuration failures.

    This includes loading, parsing, and validating configuration files.
    """

    def __init__(
        self,
        code: ErrorCode = ErrorCode.E700_CONFIG_ERROR,
        message: str = "Configuration operation failed",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(code, message, details)
