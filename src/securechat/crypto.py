"""
SecureChat - Cryptographic operations.

This module binds the secure session layer to the `cryptography` library:
- ECDH key agreement on NIST P-384 (SECP384R1) with ephemeral key pairs
- AES-256-GCM authenticated encryption with a fresh 96-bit nonce per message
- SHA-256 public key fingerprints for out-of-band verification

Keys are derived the same way the browser WebCrypto API does for
deriveKey(ECDH -> AES-GCM-256): the first 256 bits of the ECDH shared
secret become the AES key. Peers running either implementation therefore
agree on the same key.

All provider exceptions are wrapped in SecureChat error types; callers
never see raw `cryptography` exceptions.
"""

import hashlib
import hmac
import logging
import os
from typing import Optional

from cryptography.exceptions import InvalidTag, UnsupportedAlgorithm
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from .constants import CURVE_NAME, NONCE_SIZE, SHARED_KEY_SIZE, TAG_SIZE
from .errors import (
    CryptoError,
    DecryptError,
    ErrorCode,
    KeyGenError,
    NotInitializedError,
)

logger = logging.getLogger(__name__)

# Named curve used for every key pair (P-384 equivalent strength)
CURVE = ec.SECP384R1()


def generate_private_key() -> ec.EllipticCurvePrivateKey:
    """
    Generate a fresh ephemeral P-384 private key.

    Raises:
        KeyGenError: If the provider or the curve is unavailable
    """
    try:
        return ec.generate_private_key(CURVE)
    except (UnsupportedAlgorithm, ValueError) as e:
        raise KeyGenError(f"Failed to generate key pair: {e}", {"curve": CURVE_NAME})


def export_public_key(public_key: ec.EllipticCurvePublicKey) -> bytes:
    """Export a public key as a raw X9.62 uncompressed point."""
    return public_key.public_bytes(
        encoding=serialization.Encoding.X962,
        format=serialization.PublicFormat.UncompressedPoint,
    )


def load_public_key(public_key_bytes: bytes) -> ec.EllipticCurvePublicKey:
    """
    Load a peer public key from raw X9.62 point bytes.

    Raises:
        CryptoError: If the bytes are not a valid point on the curve
    """
    try:
        return ec.EllipticCurvePublicKey.from_encoded_point(CURVE, bytes(public_key_bytes))
    except (ValueError, TypeError) as e:
        raise CryptoError(
            ErrorCode.E103_INVALID_KEY,
            f"Invalid peer public key: {e}",
            {"length": len(public_key_bytes)},
        )


class SharedKey:
    """
    Symmetric AES-256-GCM key agreed between two peers.

    The raw key bytes are kept private; use check_value() to compare keys
    held by two parties without exporting them.
    """

    def __init__(self, key: bytes):
        if len(key) != SHARED_KEY_SIZE:
            raise CryptoError(
                ErrorCode.E103_INVALID_KEY,
                f"Shared key must be {SHARED_KEY_SIZE} bytes",
                {"length": len(key)},
            )
        self._key = bytes(key)
        self._cipher = AESGCM(self._key)

    def encrypt(self, plaintext: bytes) -> bytes:
        """Encrypt bytes, returning nonce || ciphertext || tag."""
        nonce = os.urandom(NONCE_SIZE)
        return nonce + self._cipher.encrypt(nonce, plaintext, None)

    def decrypt(self, blob: bytes) -> bytes:
        """
        Decrypt nonce || ciphertext || tag.

        Raises:
            DecryptError: If the blob is truncated or fails authentication
        """
        if len(blob) < NONCE_SIZE + TAG_SIZE:
            raise DecryptError(
                "Encrypted payload is truncated",
                {"length": len(blob), "minimum": NONCE_SIZE + TAG_SIZE},
            )
        nonce, ciphertext = blob[:NONCE_SIZE], blob[NONCE_SIZE:]
        try:
            return self._cipher.decrypt(nonce, ciphertext, None)
        except InvalidTag:
            raise DecryptError("Message authentication failed (tampered data or wrong key)")

    def check_value(self) -> str:
        """Return a SHA-256 digest of the key for equality checks and diagnostics."""
        return hashlib.sha256(b"securechat-key-check" + self._key).hexdigest()

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, SharedKey):
            return NotImplemented
        return hmac.compare_digest(self._key, other._key)

    def __hash__(self) -> int:
        return hash(self.check_value())

    def __repr__(self) -> str:
        return f"SharedKey(check={self.check_value()[:16]})"


def derive_shared_key(
    private_key: ec.EllipticCurvePrivateKey, peer_public_key_bytes: bytes
) -> SharedKey:
    """
    Perform ECDH with the peer's public key and derive the AES-256 session key.

    ECDH(a_priv, b_pub) == ECDH(b_priv, a_pub), so both peers derive the
    same key regardless of who initiated the exchange.

    Raises:
        CryptoError: If the peer key is invalid or the exchange fails
    """
    peer_public_key = load_public_key(peer_public_key_bytes)
    try:
        shared_secret = private_key.exchange(ec.ECDH(), peer_public_key)
    except (ValueError, UnsupportedAlgorithm) as e:
        raise CryptoError(ErrorCode.E108_KEY_DERIVATION_FAILED, f"Key agreement failed: {e}")
    return SharedKey(shared_secret[:SHARED_KEY_SIZE])


def encrypt_message(plaintext: str, key: SharedKey) -> bytes:
    """
    Encrypt a text message with AES-256-GCM.

    A fresh random nonce is generated for every call, so encrypting the
    same text twice yields different ciphertexts.

    Returns nonce (12 bytes) || ciphertext || tag.
    """
    return key.encrypt(plaintext.encode("utf-8"))


def decrypt_message(blob: bytes, key: SharedKey) -> str:
    """
    Decrypt a message produced by encrypt_message().

    Raises:
        DecryptError: On truncated input, authentication failure or invalid UTF-8
    """
    plaintext = key.decrypt(bytes(blob))
    try:
        return plaintext.decode("utf-8")
    except UnicodeDecodeError:
        raise DecryptError("Decrypted payload is not valid UTF-8")


def compute_fingerprint(public_key_bytes: bytes) -> bytes:
    """Return the SHA-256 digest of a raw public key."""
    digest = hashes.Hash(hashes.SHA256())
    digest.update(public_key_bytes)
    return digest.finalize()


def generate_fingerprint(public_key_bytes: bytes) -> str:
    """
    Generate a human-readable fingerprint from a public key using SHA-256.

    The fingerprint is for display only and is never used in a security
    decision or in key derivation.

    Returns a 64-character lowercase hexadecimal fingerprint.
    """
    return compute_fingerprint(public_key_bytes).hex()


class SessionCrypto:
    """
    Per-connection crypto state.

    Holds the shared key once the handshake has derived it. The key is
    immutable after it is set and is dropped when the connection ends.
    A new connection always starts with a new, empty SessionCrypto.
    """

    def __init__(self):
        self._shared_key: Optional[SharedKey] = None

    @property
    def shared_key(self) -> Optional[SharedKey]:
        return self._shared_key

    @property
    def is_established(self) -> bool:
        return self._shared_key is not None

    def establish(self, key: SharedKey) -> None:
        """
        Commit the derived shared key.

        Raises:
            CryptoError: If a key has already been established
        """
        if self._shared_key is not None:
            raise CryptoError(
                ErrorCode.E103_INVALID_KEY, "Shared key already established for this session"
            )
        self._shared_key = key
        logger.debug(f"Shared key established ({key!r})")

    def encrypt(self, plaintext: str) -> bytes:
        """Encrypt with the shared key. Raises NotInitializedError before agreement."""
        if self._shared_key is None:
            raise NotInitializedError("Shared key not established")
        return encrypt_message(plaintext, self._shared_key)

    def decrypt(self, blob: bytes) -> str:
        """Decrypt with the shared key. Raises NotInitializedError before agreement."""
        if self._shared_key is None:
            raise NotInitializedError("Shared key not established")
        return decrypt_message(blob, self._shared_key)

    def discard(self) -> None:
        """Drop the shared key."""
        if self._shared_key is not None:
            logger.debug("Shared key discarded")
        self._shared_key = None
