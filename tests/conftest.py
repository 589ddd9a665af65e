"""
Shared fixtures and mock factories for the branchchat test suite.

Reply gateways are mocked with ``AsyncMock`` so no test touches the network
or the Apple FM SDK. ``make_blocking_gateway`` returns a gateway whose reply
is held back until the test releases it, which lets tests inspect the
optimistic state while an exchange is in flight.
"""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from branchchat.edit_lock import EditLock
from branchchat.models import Conversation, Message, Sender
from branchchat.state import ConversationStateMachine
from branchchat.store import InMemoryConversationStore

# ---------------------------------------------------------------------------
# Mock factory functions
# ---------------------------------------------------------------------------


def make_gateway(reply="Hello from the assistant", side_effect=None):
    """
    Create a mock reply gateway.

    Args:
        reply: The text that gateway.send_reply() will return.
        side_effect: An exception, list, or callable to use as side_effect.
    """
    gateway = MagicMock()
    gateway.send_reply = AsyncMock()
    if side_effect is not None:
        gateway.send_reply.side_effect = side_effect
    else:
        gateway.send_reply.return_value = reply
    return gateway


class BlockingGateway:
    """Gateway that waits for :meth:`release` (or :meth:`fail`) before answering."""

    def __init__(self):
        self.calls: list[str] = []
        self._event = asyncio.Event()
        self._reply: str | None = None
        self._error: BaseException | None = None

    async def send_reply(self, text: str) -> str:
        self.calls.append(text)
        await self._event.wait()
        if self._error is not None:
            raise self._error
        return self._reply or ""

    def release(self, reply: str) -> None:
        self._reply = reply
        self._event.set()

    def fail(self, error: BaseException) -> None:
        self._error = error
        self._event.set()


def make_blocking_gateway():
    return BlockingGateway()


def make_conversation(*texts, title="Saved chat", conversation_id=None):
    """
    Build a conversation whose messages alternate User/AI, starting with User.

    ``make_conversation("q1", "a1", "q2", "a2")`` gives ``[U0, A0, U1, A1]``.
    """
    messages = [
        Message(
            id=f"m{index}",
            text=text,
            sender=Sender.USER if index % 2 == 0 else Sender.AI,
        )
        for index, text in enumerate(texts)
    ]
    return Conversation(
        id=conversation_id or f"conv-{title.lower().replace(' ', '-')}",
        title=title,
        messages=tuple(messages),
        created_at="2026-01-01T00:00:00+00:00",
    )


# ---------------------------------------------------------------------------
# Pytest fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def store():
    return InMemoryConversationStore()


@pytest.fixture
def gateway():
    return make_gateway()


@pytest.fixture
def machine(store, gateway):
    return ConversationStateMachine(store, gateway)


@pytest.fixture
def four_message_conversation():
    """``[U0, A0, U1, A1]`` with ids m0..m3."""
    return make_conversation("first question", "first answer", "second question", "second answer")


@pytest.fixture
def edit_lock():
    return EditLock()


@pytest.fixture
def mixed_reply():
    """An assistant reply mixing prose, a code fence, and a table."""
    return (
        "## Summary\n"
        "Here is **the** plan:\n"
        "- step one\n"
        "* step two\n"
        "\n"
        "```python\n"
        "def add(a, b):\n"
        "    return a + b\n"
        "```\n"
        "\n"
        "| Name | Score |\n"
        "|------|:-----:|\n"
        "| Ana  | 10    |\n"
        "| Bo   | 7     |\n"
        "\n"
        "Use `add` for sums."
    )
