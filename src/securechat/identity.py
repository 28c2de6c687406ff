"""
SecureChat - Identity management.

An Identity wraps one ephemeral P-384 key pair for the lifetime of the
application session. The private key never leaves process memory: it is
not exportable, not serializable, and no accessor returns it.
"""

import logging
from typing import Optional

from cryptography.hazmat.primitives.asymmetric import ec

from . import crypto
from .errors import NotInitializedError

logger = logging.getLogger(__name__)


class Identity:
    """Process-wide ephemeral key pair with a display fingerprint."""

    def __init__(self):
        self._private_key: Optional[ec.EllipticCurvePrivateKey] = None
        self._public_key_bytes: Optional[bytes] = None

    @classmethod
    def create(cls) -> "Identity":
        """Create an identity and generate its key pair."""
        identity = cls()
        identity.generate_key_pair()
        return identity

    @property
    def is_initialized(self) -> bool:
        return self._private_key is not None

    def generate_key_pair(self) -> None:
        """
        Generate the key pair. Must run before any export or derive call.

        Raises:
            KeyGenError: If the provider or the curve is unavailable
        """
        private_key = crypto.generate_private_key()
        self._private_key = private_key
        self._public_key_bytes = crypto.export_public_key(private_key.public_key())
        logger.info(f"Identity key pair generated (fingerprint {self.fingerprint_hex()[:16]}...)")

    def _require_key(self) -> ec.EllipticCurvePrivateKey:
        if self._private_key is None:
            raise NotInitializedError("Key pair not generated")
        return self._private_key

    def export_public_key(self) -> bytes:
        """Return the raw public key bytes (X9.62 uncompressed point)."""
        self._require_key()
        return self._public_key_bytes

    def fingerprint(self) -> bytes:
        """Return the SHA-256 digest of the public key."""
        return crypto.compute_fingerprint(self.export_public_key())

    def fingerprint_hex(self) -> str:
        """Return the fingerprint as lowercase hex for display."""
        return self.fingerprint().hex()

    def derive_shared_key(self, peer_public_key: bytes) -> crypto.SharedKey:
        """
        Derive the session key from the peer's public key via ECDH.

        Raises:
            NotInitializedError: If generate_key_pair() has not run
            CryptoError: If the peer key is invalid
        """
        return crypto.derive_shared_key(self._require_key(), peer_public_key)

    def __repr__(self) -> str:
        if not self.is_initialized:
            return "Identity(uninitialized)"
        return f"Identity(fingerprint={self.fingerprint_hex()[:16]}...)"
