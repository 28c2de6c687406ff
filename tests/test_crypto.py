"""
SecureChat - Cryptography tests.

Tests for P-384 key agreement, AES-256-GCM message encryption, fingerprints
and per-session crypto state.
"""

import pytest
from cryptography.exceptions import UnsupportedAlgorithm

from securechat import crypto
from securechat.constants import CURVE_NAME, NONCE_SIZE, PUBLIC_KEY_SIZE, TAG_SIZE
from securechat.errors import (
    CryptoError,
    DecryptError,
    ErrorCode,
    KeyGenError,
    NotInitializedError,
)


def _key_pair():
    private_key = crypto.generate_private_key()
    return private_key, crypto.export_public_key(private_key.public_key())


def test_public_key_export_format():
    """Test public keys export as 97-byte uncompressed points."""
    _, public_key = _key_pair()

    assert len(public_key) == PUBLIC_KEY_SIZE
    assert public_key[0] == 0x04


def test_key_agreement_is_symmetric():
    """Test both parties derive the same shared key."""
    alice_private, alice_public = _key_pair()
    bob_private, bob_public = _key_pair()

    alice_key = crypto.derive_shared_key(alice_private, bob_public)
    bob_key = crypto.derive_shared_key(bob_private, alice_public)

    assert alice_key == bob_key
    assert alice_key.check_value() == bob_key.check_value()


def test_different_peers_derive_different_keys():
    """Test a third party derives a different key."""
    alice_private, _ = _key_pair()
    _, bob_public = _key_pair()
    _, carol_public = _key_pair()

    assert crypto.derive_shared_key(alice_private, bob_public) != crypto.derive_shared_key(
        alice_private, carol_public
    )


def test_encrypt_decrypt_roundtrip():
    """Test encryption and decryption of unicode text."""
    alice_private, _ = _key_pair()
    _, bob_public = _key_pair()
    key = crypto.derive_shared_key(alice_private, bob_public)

    plaintext = "Secret message with unicode: 你好世界 🔒"
    blob = crypto.encrypt_message(plaintext, key)

    assert len(blob) == NONCE_SIZE + len(plaintext.encode("utf-8")) + TAG_SIZE
    assert crypto.decrypt_message(blob, key) == plaintext


def test_fresh_nonce_per_message():
    """Test encrypting the same text twice gives different ciphertexts."""
    key = crypto.SharedKey(b"k" * 32)

    first = crypto.encrypt_message("hello", key)
    second = crypto.encrypt_message("hello", key)

    assert first != second
    assert first[:NONCE_SIZE] != second[:NONCE_SIZE]


def test_wrong_key_fails():
    """Test decryption with the wrong key raises DecryptError."""
    blob = crypto.encrypt_message("hello", crypto.SharedKey(b"a" * 32))

    with pytest.raises(DecryptError) as exc_info:
        crypto.decrypt_message(blob, crypto.SharedKey(b"b" * 32))

    assert exc_info.value.code == ErrorCode.E102_DECRYPTION_FAILED


def test_tampered_ciphertext_fails():
    """Test that flipping one ciphertext bit is detected."""
    key = crypto.SharedKey(b"a" * 32)
    blob = bytearray(crypto.encrypt_message("hello", key))
    blob[NONCE_SIZE] ^= 0x01

    with pytest.raises(DecryptError):
        crypto.decrypt_message(bytes(blob), key)


def test_truncated_blob_fails():
    """Test that a blob shorter than nonce plus tag is rejected."""
    key = crypto.SharedKey(b"a" * 32)

    with pytest.raises(DecryptError):
        crypto.decrypt_message(b"\x00" * 5, key)


def test_invalid_peer_key_rejected():
    """Test that bytes which are not a curve point are rejected."""
    private_key, _ = _key_pair()

    with pytest.raises(CryptoError) as exc_info:
        crypto.derive_shared_key(private_key, b"\x04" + b"\x01" * 96)

    assert exc_info.value.code == ErrorCode.E103_INVALID_KEY


def test_shared_key_requires_32_bytes():
    """Test SharedKey rejects keys of the wrong size."""
    with pytest.raises(CryptoError):
        crypto.SharedKey(b"short")


def test_shared_key_repr_hides_key():
    """Test the key bytes never appear in the representation."""
    key = crypto.SharedKey(b"z" * 32)
    assert "zzzz" not in repr(key)


def test_fingerprint_generation():
    """Test fingerprint is a 64-character lowercase hex string."""
    _, public_key = _key_pair()

    fingerprint = crypto.generate_fingerprint(public_key)

    assert len(fingerprint) == 64
    assert fingerprint == fingerprint.lower()
    assert fingerprint == crypto.compute_fingerprint(public_key).hex()
    assert crypto.generate_fingerprint(public_key) == fingerprint


def test_key_generation_failure_is_wrapped(monkeypatch):
    """Test provider failures surface as KeyGenError."""

    def unsupported(curve):
        raise UnsupportedAlgorithm("curve not supported")

    monkeypatch.setattr(crypto.ec, "generate_private_key", unsupported)

    with pytest.raises(KeyGenError) as exc_info:
        crypto.generate_private_key()

    assert exc_info.value.code == ErrorCode.E104_KEY_GENERATION_FAILED
    assert exc_info.value.details == {"curve": CURVE_NAME}
    assert crypto.CURVE.name == CURVE_NAME


def test_session_crypto_lifecycle():
    """Test SessionCrypto before, during and after establishment."""
    session_crypto = crypto.SessionCrypto()
    assert not session_crypto.is_established

    with pytest.raises(NotInitializedError):
        session_crypto.encrypt("hello")
    with pytest.raises(NotInitializedError):
        session_crypto.decrypt(b"\x00" * 40)

    key = crypto.SharedKey(b"s" * 32)
    session_crypto.establish(key)
    assert session_crypto.is_established
    assert session_crypto.decrypt(session_crypto.encrypt("hello")) == "hello"

    # Key is immutable once set
    with pytest.raises(CryptoError):
        session_crypto.establish(crypto.SharedKey(b"t" * 32))
    assert session_crypto.shared_key is key

    session_crypto.discard()
    assert session_crypto.shared_key is None
