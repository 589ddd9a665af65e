"""
Tests for branchchat.state -- the conversation state machine.

Covers:
  - Lazy conversation creation and title derivation on first send
  - Optimistic append while a reply is in flight, loading flag lifetime
  - Placeholder resolution keeping its id, persistence of the final record
  - Edit truncation, id reuse, and full rollback on gateway failure
  - Send failure: rollback (default) or unresolved placeholder
  - Selection, deletion, and rendering helpers
"""

from __future__ import annotations

import asyncio

import pytest

from branchchat.models import PLACEHOLDER_TEXT, Sender
from branchchat.segmenter import CodeBlock, TextBlock
from branchchat.state import (
    ConversationStateMachine,
    ExchangeOutcome,
    ExchangeState,
)
from branchchat.store import InMemoryConversationStore

from .conftest import make_blocking_gateway, make_conversation, make_gateway

# ========================================================================
# send()
# ========================================================================


class TestSend:
    @pytest.mark.asyncio
    async def test_first_send_creates_conversation_with_derived_title(self, machine):
        result = await machine.send("x" * 40)

        assert result.ok
        conversation = machine.active_conversation
        assert conversation is not None
        assert conversation.title == "x" * 30 + "..."
        assert len(conversation.title) == 33
        assert machine.conversations[0] is conversation

    @pytest.mark.asyncio
    async def test_send_resolves_placeholder_and_persists(self, store, gateway):
        machine = ConversationStateMachine(store, gateway)

        result = await machine.send("hello")

        gateway.send_reply.assert_awaited_once_with("hello")
        conversation = machine.active_conversation
        user, ai = conversation.messages
        assert (user.sender, user.text) == (Sender.USER, "hello")
        assert (ai.sender, ai.text) == (Sender.AI, "Hello from the assistant")
        assert result.reply == "Hello from the assistant"
        assert result.conversation_id == conversation.id
        assert store.get_conversations() == [conversation]
        assert machine.is_loading is False
        assert machine.state is ExchangeState.RESOLVED

    @pytest.mark.asyncio
    async def test_optimistic_messages_visible_while_awaiting(self, store):
        gateway = make_blocking_gateway()
        machine = ConversationStateMachine(store, gateway)

        task = asyncio.create_task(machine.send("hi"))
        await asyncio.sleep(0)

        assert machine.is_loading is True
        assert machine.state is ExchangeState.AWAITING_REPLY
        user, placeholder = machine.active_conversation.messages
        assert user.text == "hi"
        assert placeholder.text == PLACEHOLDER_TEXT
        assert machine.is_pending(placeholder)
        assert machine.content_for(placeholder) is None
        assert store.get_conversations() == []

        gateway.release("there")
        await task

        resolved = machine.active_conversation.messages[1]
        assert resolved.id == placeholder.id
        assert resolved.text == "there"
        assert not machine.is_pending(resolved)
        assert machine.is_loading is False

    @pytest.mark.asyncio
    async def test_send_appends_to_active_conversation(self, four_message_conversation):
        store = InMemoryConversationStore([four_message_conversation])
        machine = ConversationStateMachine(store, make_gateway("third answer"))
        machine.select_conversation(four_message_conversation.id)

        await machine.send("third question")

        messages = machine.active_conversation.messages
        assert len(messages) == 6
        assert [m.id for m in messages[:4]] == ["m0", "m1", "m2", "m3"]
        assert messages[-1].text == "third answer"
        assert machine.active_conversation.title == four_message_conversation.title

    @pytest.mark.asyncio
    async def test_failed_send_rolls_back_by_default(self, four_message_conversation):
        store = InMemoryConversationStore([four_message_conversation])
        machine = ConversationStateMachine(store, make_gateway(side_effect=RuntimeError("down")))
        before = list(machine.conversations)

        result = await machine.send("new chat")

        assert result.outcome is ExchangeOutcome.ROLLED_BACK
        assert isinstance(result.error, RuntimeError)
        assert machine.conversations == before
        assert machine.active_conversation_id is None
        assert machine.is_loading is False
        assert machine.state is ExchangeState.ROLLED_BACK
        assert store.get_conversations() == [four_message_conversation]

    @pytest.mark.asyncio
    async def test_failed_send_without_rollback_leaves_placeholder(self, store):
        machine = ConversationStateMachine(
            store, make_gateway(side_effect=RuntimeError("down")), rollback_failed_sends=False
        )

        result = await machine.send("hello")

        assert result.outcome is ExchangeOutcome.FAILED
        user, placeholder = machine.active_conversation.messages
        assert placeholder.text == PLACEHOLDER_TEXT
        assert machine.is_pending(placeholder)
        assert machine.is_loading is False
        assert store.get_conversations() == []

    @pytest.mark.asyncio
    async def test_resend_sends_the_same_text_again(self, machine, gateway):
        await machine.send("again")
        await machine.resend("again")

        assert gateway.send_reply.await_count == 2
        user_texts = [
            m.text for m in machine.active_conversation.messages if m.sender is Sender.USER
        ]
        assert user_texts == ["again", "again"]


# ========================================================================
# edit()
# ========================================================================


class TestEdit:
    @pytest.fixture
    def seeded(self, four_message_conversation):
        store = InMemoryConversationStore([four_message_conversation])
        other = make_conversation("other q", "other a", title="Other chat")
        store.save_conversation(other)
        return store, four_message_conversation, other

    @pytest.mark.asyncio
    async def test_edit_truncates_and_reuses_message_id(self, seeded):
        store, conversation, _ = seeded
        gateway = make_blocking_gateway()
        machine = ConversationStateMachine(store, gateway)
        machine.select_conversation(conversation.id)

        task = asyncio.create_task(machine.edit("m0", "rephrased question"))
        await asyncio.sleep(0)

        edited, placeholder = machine.active_conversation.messages
        assert edited.id == "m0"
        assert edited.text == "rephrased question"
        assert edited.sender is Sender.USER
        assert placeholder.text == PLACEHOLDER_TEXT
        assert machine.is_loading is True
        assert gateway.calls == ["rephrased question"]

        gateway.release("fresh answer")
        result = await task

        assert result.ok
        messages = machine.active_conversation.messages
        assert [m.text for m in messages] == ["rephrased question", "fresh answer"]
        assert messages[1].id == placeholder.id
        saved = next(c for c in store.get_conversations() if c.id == conversation.id)
        assert saved == machine.active_conversation
        assert machine.is_loading is False

    @pytest.mark.asyncio
    async def test_edit_middle_message_keeps_prefix(self, seeded):
        store, conversation, _ = seeded
        machine = ConversationStateMachine(store, make_gateway("new second answer"))
        machine.select_conversation(conversation.id)

        await machine.edit("m2", "new second question")

        messages = machine.active_conversation.messages
        assert [m.id for m in messages[:3]] == ["m0", "m1", "m2"]
        assert [m.text for m in messages] == [
            "first question",
            "first answer",
            "new second question",
            "new second answer",
        ]

    @pytest.mark.asyncio
    async def test_failed_edit_restores_every_conversation(self, seeded):
        store, conversation, other = seeded
        gateway = make_blocking_gateway()
        machine = ConversationStateMachine(store, gateway)
        machine.select_conversation(conversation.id)
        before = list(machine.conversations)

        task = asyncio.create_task(machine.edit("m0", "rephrased"))
        await asyncio.sleep(0)
        assert len(machine.active_conversation.messages) == 2
        machine.delete_conversation(other.id)
        assert other not in machine.conversations

        gateway.fail(ConnectionError("webhook unreachable"))
        result = await task

        assert result.outcome is ExchangeOutcome.ROLLED_BACK
        assert isinstance(result.error, ConnectionError)
        assert machine.conversations == before
        assert other in machine.conversations
        assert machine.active_conversation == conversation
        assert machine.is_loading is False
        assert machine.state is ExchangeState.ROLLED_BACK

    @pytest.mark.asyncio
    async def test_edit_unknown_message_is_aborted_without_changes(self, seeded, caplog):
        store, conversation, _ = seeded
        gateway = make_gateway()
        machine = ConversationStateMachine(store, gateway)
        machine.select_conversation(conversation.id)
        before = list(machine.conversations)

        with caplog.at_level("ERROR", logger="branchchat"):
            result = await machine.edit("nope", "text")

        assert result.outcome is ExchangeOutcome.ABORTED
        assert machine.conversations == before
        assert machine.is_loading is False
        gateway.send_reply.assert_not_awaited()
        assert "Could not find message nope" in caplog.text

    @pytest.mark.asyncio
    async def test_edit_without_active_conversation_is_aborted(self, machine, gateway):
        result = await machine.edit("m0", "text")

        assert result.outcome is ExchangeOutcome.ABORTED
        gateway.send_reply.assert_not_awaited()


# ========================================================================
# Navigation and deletion
# ========================================================================


class TestNavigation:
    def test_loads_conversations_from_store(self, four_message_conversation):
        store = InMemoryConversationStore([four_message_conversation])
        machine = ConversationStateMachine(store, make_gateway())
        assert machine.conversations == [four_message_conversation]
        assert machine.active_conversation is None

    def test_select_unknown_conversation_is_noop(self, four_message_conversation):
        store = InMemoryConversationStore([four_message_conversation])
        machine = ConversationStateMachine(store, make_gateway())
        machine.select_conversation(four_message_conversation.id)

        machine.select_conversation("unknown")

        assert machine.active_conversation_id == four_message_conversation.id

    def test_new_conversation_clears_pointer_without_creating_record(
        self, four_message_conversation
    ):
        store = InMemoryConversationStore([four_message_conversation])
        machine = ConversationStateMachine(store, make_gateway())
        machine.select_conversation(four_message_conversation.id)

        machine.new_conversation()

        assert machine.active_conversation_id is None
        assert machine.conversations == [four_message_conversation]

    def test_delete_active_conversation_clears_pointer(self, four_message_conversation):
        other = make_conversation("q", "a", title="Other chat")
        store = InMemoryConversationStore([four_message_conversation, other])
        machine = ConversationStateMachine(store, make_gateway())
        machine.select_conversation(four_message_conversation.id)

        machine.delete_conversation(four_message_conversation.id)

        assert machine.active_conversation_id is None
        assert machine.conversations == [other]
        assert store.get_conversations() == [other]

    def test_delete_other_conversation_keeps_pointer(self, four_message_conversation):
        other = make_conversation("q", "a", title="Other chat")
        store = InMemoryConversationStore([four_message_conversation, other])
        machine = ConversationStateMachine(store, make_gateway())
        machine.select_conversation(four_message_conversation.id)

        machine.delete_conversation(other.id)

        assert machine.active_conversation_id == four_message_conversation.id

    def test_delete_all(self, four_message_conversation):
        store = InMemoryConversationStore([four_message_conversation])
        machine = ConversationStateMachine(store, make_gateway())
        machine.select_conversation(four_message_conversation.id)

        machine.delete_all()

        assert machine.conversations == []
        assert machine.active_conversation_id is None
        assert store.get_conversations() == []


# ========================================================================
# Rendering helpers
# ========================================================================


class TestRenderingHelpers:
    @pytest.mark.asyncio
    async def test_content_for_segments_ai_replies_only(self, store):
        machine = ConversationStateMachine(store, make_gateway("Run:\n```sh\nmake\n```"))
        await machine.send("How do I build **it**?")

        user, ai = machine.active_conversation.messages
        assert machine.content_for(user) == "How do I build **it**?"
        assert machine.content_for(ai) == [TextBlock("Run:"), CodeBlock("sh", "make")]

    def test_can_submit(self, machine):
        assert machine.can_submit("hello")
        assert not machine.can_submit("   ")
        machine.is_loading = True
        assert not machine.can_submit("hello")

    def test_actions_visible_only_for_recent_messages(self):
        texts = [f"t{i}" for i in range(12)]
        conversation = make_conversation(*texts)
        machine = ConversationStateMachine(
            InMemoryConversationStore([conversation]), make_gateway()
        )
        assert not machine.actions_visible(0)
        machine.select_conversation(conversation.id)

        assert not machine.actions_visible(1)
        assert machine.actions_visible(2)
        assert machine.actions_visible(11)
