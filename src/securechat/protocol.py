"""
SecureChat - Wire protocol definitions.

This module defines the envelopes exchanged over a peer channel. Every
envelope is a JSON text message; byte strings travel as arrays of
integers (0-255), the same encoding the browser client produces with
Array.from(Uint8Array).

Envelope formats:
- Key exchange:           {"type": "key-exchange", "publicKey": [...]}
- Key exchange complete:  {"type": "key-exchange-complete"}
- Encrypted message:      {"type": "encrypted-message", "data": [...]}
- Plaintext message:      {"text": "...", "from": "<sender discovery id>"}

Older clients send bare strings; anything that is not a JSON object is
treated as a plaintext message with an unknown sender.
"""

import json
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional, Union

from .constants import (
    ENVELOPE_ENCRYPTED_MESSAGE,
    ENVELOPE_KEY_EXCHANGE,
    ENVELOPE_KEY_EXCHANGE_COMPLETE,
    ENVELOPE_TYPE_FIELD,
    MAX_ENVELOPE_SIZE,
    MAX_TEXT_MESSAGE_SIZE,
    PLAINTEXT_SENDER_FIELD,
    PLAINTEXT_TEXT_FIELD,
)
from .errors import ErrorCode, InvalidEnvelopeError


class EnvelopeKind(Enum):
    """Envelope kinds carried on a peer channel."""

    KEY_EXCHANGE = ENVELOPE_KEY_EXCHANGE
    KEY_EXCHANGE_COMPLETE = ENVELOPE_KEY_EXCHANGE_COMPLETE
    ENCRYPTED_MESSAGE = ENVELOPE_ENCRYPTED_MESSAGE
    PLAINTEXT_MESSAGE = "plaintext"

    @property
    def is_handshake(self) -> bool:
        return self in (EnvelopeKind.KEY_EXCHANGE, EnvelopeKind.KEY_EXCHANGE_COMPLETE)


@dataclass(frozen=True)
class Envelope:
    """A typed message unit. Which payload fields are set depends on kind."""

    kind: EnvelopeKind
    public_key: Optional[bytes] = None
    data: Optional[bytes] = None
    text: Optional[str] = None
    sender_id: Optional[str] = None

    @classmethod
    def key_exchange(cls, public_key: bytes) -> "Envelope":
        return cls(EnvelopeKind.KEY_EXCHANGE, public_key=bytes(public_key))

    @classmethod
    def key_exchange_complete(cls) -> "Envelope":
        return cls(EnvelopeKind.KEY_EXCHANGE_COMPLETE)

    @classmethod
    def encrypted_message(cls, data: bytes) -> "Envelope":
        return cls(EnvelopeKind.ENCRYPTED_MESSAGE, data=bytes(data))

    @classmethod
    def plaintext(cls, text: str, sender_id: Optional[str] = None) -> "Envelope":
        return cls(EnvelopeKind.PLAINTEXT_MESSAGE, text=text, sender_id=sender_id)


class Protocol:
    """Envelope codec."""

    MAX_PAYLOAD_SIZE = MAX_ENVELOPE_SIZE

    @staticmethod
    def encode(envelope: Envelope) -> str:
        """
        Serialize an envelope to its JSON wire form.

        Raises:
            InvalidEnvelopeError: If the payload does not match the kind
        """
        Protocol.validate_envelope(envelope)

        if envelope.kind == EnvelopeKind.KEY_EXCHANGE:
            payload: Dict[str, Any] = {
                ENVELOPE_TYPE_FIELD: envelope.kind.value,
                "publicKey": list(envelope.public_key),
            }
        elif envelope.kind == EnvelopeKind.KEY_EXCHANGE_COMPLETE:
            payload = {ENVELOPE_TYPE_FIELD: envelope.kind.value}
        elif envelope.kind == EnvelopeKind.ENCRYPTED_MESSAGE:
            payload = {ENVELOPE_TYPE_FIELD: envelope.kind.value, "data": list(envelope.data)}
        else:
            payload = {
                PLAINTEXT_TEXT_FIELD: envelope.text,
                PLAINTEXT_SENDER_FIELD: envelope.sender_id,
            }

        return json.dumps(payload, separators=(",", ":"))

    @staticmethod
    def decode(data: Union[str, bytes, Dict[str, Any]]) -> Envelope:
        """
        Parse inbound channel data into an envelope.

        Accepts JSON text, UTF-8 bytes, or an already-parsed object (some
        transports deliver structured data). Bare strings that are not JSON
        objects are treated as legacy plaintext messages.

        Raises:
            InvalidEnvelopeError: If the data declares a kind its payload
                does not match, or is too large
        """
        if isinstance(data, (bytes, bytearray)):
            Protocol._check_size(len(data))
            try:
                data = bytes(data).decode("utf-8")
            except UnicodeDecodeError as e:
                raise InvalidEnvelopeError(f"Envelope is not valid UTF-8: {e}")
        elif isinstance(data, str):
            Protocol._check_size(len(data.encode("utf-8", errors="surrogatepass")))

        if isinstance(data, str):
            try:
                parsed = json.loads(data)
            except json.JSONDecodeError:
                return Envelope.plaintext(data)
            if not isinstance(parsed, dict):
                return Envelope.plaintext(data)
        elif isinstance(data, dict):
            parsed = data
        else:
            raise InvalidEnvelopeError(
                f"Unsupported envelope type: {type(data).__name__}",
                {"type": type(data).__name__},
            )

        return Protocol._from_object(parsed)

    @staticmethod
    def _check_size(size: int) -> None:
        # Limit applies to the UTF-8 encoded size
        if size > Protocol.MAX_PAYLOAD_SIZE:
            raise InvalidEnvelopeError(
                f"Envelope too large: {size} bytes",
                {"size": size, "max_size": Protocol.MAX_PAYLOAD_SIZE},
                code=ErrorCode.E207_MESSAGE_TOO_LARGE,
            )

    @staticmethod
    def _from_object(obj: Dict[str, Any]) -> Envelope:
        kind_value = obj.get(ENVELOPE_TYPE_FIELD)

        if kind_value is None:
            if PLAINTEXT_TEXT_FIELD not in obj:
                raise InvalidEnvelopeError(
                    "Envelope has neither a type nor a text field", {"fields": sorted(obj)}
                )
            text = obj[PLAINTEXT_TEXT_FIELD]
            sender = obj.get(PLAINTEXT_SENDER_FIELD)
            if not isinstance(text, str):
                raise InvalidEnvelopeError("Plaintext message text must be a string")
            if sender is not None and not isinstance(sender, str):
                raise InvalidEnvelopeError("Plaintext message sender must be a string")
            envelope = Envelope.plaintext(text, sender)
        elif kind_value == ENVELOPE_KEY_EXCHANGE:
            envelope = Envelope.key_exchange(
                Protocol._byte_array(obj.get("publicKey"), "publicKey")
            )
        elif kind_value == ENVELOPE_KEY_EXCHANGE_COMPLETE:
            envelope = Envelope.key_exchange_complete()
        elif kind_value == ENVELOPE_ENCRYPTED_MESSAGE:
            envelope = Envelope.encrypted_message(Protocol._byte_array(obj.get("data"), "data"))
        else:
            raise InvalidEnvelopeError(
                f"Unknown envelope type: {kind_value!r}", {"type": str(kind_value)}
            )

        Protocol.validate_envelope(envelope)
        return envelope

    @staticmethod
    def _byte_array(value: Any, field: str) -> bytes:
        if not isinstance(value, list) or not value:
            raise InvalidEnvelopeError(
                f"Field {field!r} must be a non-empty byte array", {"field": field}
            )
        if not all(isinstance(b, int) and not isinstance(b, bool) and 0 <= b <= 255 for b in value):
            raise InvalidEnvelopeError(
                f"Field {field!r} contains values outside 0-255", {"field": field}
            )
        return bytes(value)

    @staticmethod
    def validate_envelope(envelope: Envelope) -> None:
        """
        Check that an envelope's payload matches its kind.

        Raises:
            InvalidEnvelopeError: If validation fails
        """
        kind = envelope.kind
        has = {
            "public_key": envelope.public_key is not None,
            "data": envelope.data is not None,
            "text": envelope.text is not None,
        }
        expected: List[str]
        if kind == EnvelopeKind.KEY_EXCHANGE:
            expected = ["public_key"]
        elif kind == EnvelopeKind.ENCRYPTED_MESSAGE:
            expected = ["data"]
        elif kind == EnvelopeKind.PLAINTEXT_MESSAGE:
            expected = ["text"]
        else:
            expected = []

        for field, present in has.items():
            if present != (field in expected):
                raise InvalidEnvelopeError(
                    f"Payload does not match envelope kind {kind.name}",
                    {"kind": kind.name, "field": field},
                )

        if kind == EnvelopeKind.KEY_EXCHANGE and not envelope.public_key:
            raise InvalidEnvelopeError("Key exchange carries an empty public key")

        if kind == EnvelopeKind.PLAINTEXT_MESSAGE and len(envelope.text) > MAX_TEXT_MESSAGE_SIZE:
            raise InvalidEnvelopeError(
                f"Text message too large: {len(envelope.text)} > {MAX_TEXT_MESSAGE_SIZE}",
                {"size": len(envelope.text), "max_size": MAX_TEXT_MESSAGE_SIZE},
                code=ErrorCode.E207_MESSAGE_TOO_LARGE,
            )
