"""
SecureChat - Chat messages and in-memory chat log.

Messages live only in process memory and disappear with the session.
The chat log keeps a bounded window of the most recent entries.
"""

import uuid
from collections import deque
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Deque, Dict, Iterator, List, Optional

from .constants import UI_MAX_MESSAGE_HISTORY


class MessageOrigin(Enum):
    """Who produced a chat log entry."""

    LOCAL = "local"
    REMOTE = "remote"
    SYSTEM = "system"


class ChatMessage:
    """Represents one entry in the chat log."""

    def __init__(
        self,
        origin: MessageOrigin,
        text: str,
        encrypted: bool = False,
        timestamp: Optional[str] = None,
        message_id: Optional[str] = None,
        sender_id: Optional[str] = None,
    ):
        self.message_id = message_id or str(uuid.uuid4())
        self.origin = origin
        self.text = text
        self.encrypted = encrypted
        self.timestamp = timestamp or datetime.now(timezone.utc).isoformat()
        self.sender_id = sender_id  # Discovery id claimed by plaintext senders

    @classmethod
    def local(cls, text: str, encrypted: bool, sender_id: Optional[str] = None) -> "ChatMessage":
        return cls(MessageOrigin.LOCAL, text, encrypted=encrypted, sender_id=sender_id)

    @classmethod
    def remote(cls, text: str, encrypted: bool, sender_id: Optional[str] = None) -> "ChatMessage":
        return cls(MessageOrigin.REMOTE, text, encrypted=encrypted, sender_id=sender_id)

    @classmethod
    def system(cls, text: str) -> "ChatMessage":
        return cls(MessageOrigin.SYSTEM, text)

    @property
    def is_system(self) -> bool:
        return self.origin == MessageOrigin.SYSTEM

    def to_dict(self) -> Dict[str, Any]:
        """Convert message to dictionary."""
        return {
            "message_id": self.message_id,
            "origin": self.origin.value,
            "text": self.text,
            "encrypted": self.encrypted,
            "timestamp": self.timestamp,
            "sender_id": self.sender_id,
        }

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> "ChatMessage":
        """Create message from dictionary."""
        return ChatMessage(
            origin=MessageOrigin(data["origin"]),
            text=data["text"],
            encrypted=data.get("encrypted", False),
            timestamp=data.get("timestamp"),
            message_id=data.get("message_id"),
            sender_id=data.get("sender_id"),
        )

    def __repr__(self) -> str:
        lock = " encrypted" if self.encrypted else ""
        return f"ChatMessage({self.origin.value}{lock}, {len(self.text)} chars)"


class ChatLog:
    """Bounded, in-order chat history."""

    def __init__(self, max_history: int = UI_MAX_MESSAGE_HISTORY):
        self.max_history = max_history
        self._messages: Deque[ChatMessage] = deque(maxlen=max_history)

    def append(self, message: ChatMessage) -> ChatMessage:
        self._messages.append(message)
        return message

    def system(self, text: str) -> ChatMessage:
        """Append a system notice."""
        return self.append(ChatMessage.system(text))

    @property
    def messages(self) -> List[ChatMessage]:
        return list(self._messages)

    def texts(self) -> List[str]:
        return [m.text for m in self._messages]

    def clear(self) -> None:
        self._messages.clear()

    def __len__(self) -> int:
        return len(self._messages)

    def __iter__(self) -> Iterator[ChatMessage]:
        return iter(list(self._messages))
