"""Conversation and message records."""

from __future__ import annotations

import enum
import uuid
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from collections.abc import Iterable

__all__ = [
    "PLACEHOLDER_TEXT",
    "TITLE_MAX_CHARS",
    "Conversation",
    "Message",
    "Sender",
    "derive_title",
    "new_id",
    "utc_now_iso",
]

PLACEHOLDER_TEXT = "..."
TITLE_MAX_CHARS = 30
TITLE_ELLIPSIS = "..."


def new_id() -> str:
    """Return a fresh unique token."""
    return uuid.uuid4().hex


def utc_now_iso() -> str:
    """Return a stable UTC timestamp string."""
    return datetime.now(UTC).replace(microsecond=0).isoformat()


def derive_title(text: str) -> str:
    """Conversation title from the opening message: first 30 chars plus ``...`` if cut."""
    if len(text) > TITLE_MAX_CHARS:
        return text[:TITLE_MAX_CHARS] + TITLE_ELLIPSIS
    return text


class Sender(str, enum.Enum):
    USER = "user"
    AI = "ai"


@dataclass(frozen=True)
class Message:
    """One turn in a conversation."""

    id: str
    text: str
    sender: Sender

    @classmethod
    def user(cls, text: str, *, message_id: str | None = None) -> Message:
        return cls(id=message_id or new_id(), text=text, sender=Sender.USER)

    @classmethod
    def placeholder(cls) -> Message:
        """An AI message standing in for a reply that has not arrived yet."""
        return cls(id=new_id(), text=PLACEHOLDER_TEXT, sender=Sender.AI)

    def with_text(self, text: str) -> Message:
        return replace(self, text=text)

    def to_dict(self) -> dict[str, str]:
        return {"id": self.id, "text": self.text, "sender": self.sender.value}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Message:
        return cls(
            id=str(data["id"]),
            text=str(data.get("text", "")),
            sender=Sender(data.get("sender", Sender.USER.value)),
        )


@dataclass(frozen=True)
class Conversation:
    """
    A titled, ordered sequence of messages.

    Records are immutable: every change produces a new ``Conversation`` via
    :meth:`with_messages`, so keeping an old list of conversations around is
    enough to restore it later.
    """

    id: str
    title: str
    messages: tuple[Message, ...] = ()
    created_at: str = field(default_factory=utc_now_iso)

    @classmethod
    def start(cls, first_text: str) -> Conversation:
        """Create an empty conversation titled after its first message."""
        return cls(id=new_id(), title=derive_title(first_text))

    def with_messages(self, messages: Iterable[Message]) -> Conversation:
        return replace(self, messages=tuple(messages))

    def index_of(self, message_id: str) -> int:
        """Position of ``message_id`` in the conversation, or ``-1``."""
        for index, message in enumerate(self.messages):
            if message.id == message_id:
                return index
        return -1

    def to_dict(self) -> dict[str, Any]:
        """Persistable record."""
        return {
            "id": self.id,
            "title": self.title,
            "messages": [message.to_dict() for message in self.messages],
            "created_at": self.created_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Conversation:
        messages = data.get("messages") or []
        return cls(
            id=str(data["id"]),
            title=str(data.get("title", "")),
            messages=tuple(Message.from_dict(item) for item in messages),
            created_at=str(data.get("created_at") or utc_now_iso()),
        )
