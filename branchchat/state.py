"""
Conversation state machine: send, receive, edit-and-branch, rollback, delete.

The machine owns the in-memory list of conversations and the active
conversation pointer. Every exchange appends optimistic messages first (the
user turn plus an AI placeholder), then awaits the reply gateway, then
either swaps the placeholder for the real reply and persists the whole
conversation, or restores the snapshot taken before the exchange began.

Editing a past user message truncates the conversation at that message,
re-appends it with the new text under its original id, and asks for a new
reply. The old branch is dropped. Only one branch per conversation exists.

The machine is single-threaded and cooperative: the only suspension point
is the gateway call. Callers gate concurrent sends with :attr:`is_loading`.
"""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING

from .models import Conversation, Message, Sender
from .protocols import get_gateway
from .segmenter import Block, segment

if TYPE_CHECKING:
    from .protocols import ConversationStore, ReplyGateway

logger = logging.getLogger("branchchat")

__all__ = [
    "ACTION_WINDOW",
    "ConversationStateMachine",
    "ExchangeOutcome",
    "ExchangeResult",
    "ExchangeState",
]

# Resend/edit affordances are offered only for the last N messages.
ACTION_WINDOW = 10


class ExchangeState(enum.Enum):
    IDLE = "idle"
    SENDING = "sending"
    EDITING_BRANCH = "editing_branch"
    AWAITING_REPLY = "awaiting_reply"
    RESOLVED = "resolved"
    ROLLED_BACK = "rolled_back"


class ExchangeOutcome(enum.Enum):
    RESOLVED = "resolved"
    ROLLED_BACK = "rolled_back"
    # Gateway failed and the placeholder was left in place.
    FAILED = "failed"
    # Nothing was sent; no state was touched.
    ABORTED = "aborted"


@dataclass(frozen=True)
class ExchangeResult:
    """What became of one send or edit."""

    outcome: ExchangeOutcome
    conversation_id: str | None = None
    reply: str | None = None
    error: BaseException | None = None

    @property
    def ok(self) -> bool:
        return self.outcome is ExchangeOutcome.RESOLVED


class ConversationStateMachine:
    """
    Orchestrates conversations against a store and a reply gateway.

    Parameters
    ----------
    store:
        A :class:`~branchchat.protocols.ConversationStore`. Conversations are
        loaded from it on construction.
    gateway:
        A :class:`~branchchat.protocols.ReplyGateway`. Defaults to the
        module-level gateway from :func:`branchchat.protocols.get_gateway`.
    rollback_failed_sends:
        When true (the default) a failed send restores the conversations as
        they were before the send, like a failed edit does. When false the
        unresolved placeholder stays in the conversation.
    """

    def __init__(
        self,
        store: ConversationStore,
        gateway: ReplyGateway | None = None,
        *,
        rollback_failed_sends: bool = True,
    ) -> None:
        self._store = store
        self._gateway = gateway if gateway is not None else get_gateway()
        self.rollback_failed_sends = rollback_failed_sends

        self.conversations: list[Conversation] = []
        self.active_conversation_id: str | None = None
        self.is_loading = False
        self.state = ExchangeState.IDLE
        self._pending_ids: set[str] = set()

        self.load()

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    @property
    def active_conversation(self) -> Conversation | None:
        return self._find(self.active_conversation_id)

    def is_pending(self, message: Message) -> bool:
        """True while ``message`` is a placeholder still waiting for its reply."""
        return message.sender is Sender.AI and message.id in self._pending_ids

    def content_for(self, message: Message) -> str | list[Block] | None:
        """
        What the presentation layer should render for ``message``.

        User text is returned raw. A pending placeholder returns ``None`` (show
        a loading indicator). A resolved AI reply is segmented into blocks.
        """
        if message.sender is Sender.USER:
            return message.text
        if self.is_pending(message):
            return None
        return segment(message.text)

    def can_submit(self, text: str) -> bool:
        """Whether the input box should accept ``text`` right now."""
        return bool(text.strip()) and not self.is_loading

    def actions_visible(self, index: int) -> bool:
        """Whether resend/edit affordances are offered for the message at ``index``."""
        conversation = self.active_conversation
        if conversation is None:
            return False
        return len(conversation.messages) - index <= ACTION_WINDOW

    # ------------------------------------------------------------------
    # Navigation
    # ------------------------------------------------------------------

    def load(self) -> None:
        """(Re)load conversations from the store."""
        self.conversations = list(self._store.get_conversations())
        if self._find(self.active_conversation_id) is None:
            self.active_conversation_id = None

    def new_conversation(self) -> None:
        """Start a fresh chat. The record is created lazily by the first send."""
        self.active_conversation_id = None

    def select_conversation(self, conversation_id: str) -> None:
        if self._find(conversation_id) is None:
            logger.debug(
                "[branchchat] Ignoring selection of unknown conversation %s", conversation_id
            )
            return
        self.active_conversation_id = conversation_id

    # ------------------------------------------------------------------
    # Exchanges
    # ------------------------------------------------------------------

    async def send(self, text: str) -> ExchangeResult:
        """
        Send ``text`` in the active conversation, creating one if needed.

        The user message and an AI placeholder appear immediately. When the
        gateway answers, the placeholder's text is replaced (its id is kept)
        and the conversation is persisted.
        """
        snapshot = list(self.conversations)
        previous_active_id = self.active_conversation_id

        self._set_state(ExchangeState.SENDING)
        self.is_loading = True

        conversation = self.active_conversation
        is_new = conversation is None
        if conversation is None:
            conversation = Conversation.start(text)
            self.active_conversation_id = conversation.id

        placeholder = Message.placeholder()
        conversation = conversation.with_messages(
            (*conversation.messages, Message.user(text), placeholder)
        )
        if is_new:
            self.conversations.insert(0, conversation)
        else:
            self._replace(conversation)

        result = await self._await_reply(
            conversation.id,
            placeholder,
            text,
            snapshot=snapshot if self.rollback_failed_sends else None,
            previous_active_id=previous_active_id,
        )
        if result.outcome is ExchangeOutcome.FAILED:
            logger.warning(
                "[branchchat] Reply for conversation %s failed; placeholder left unresolved: %s",
                conversation.id,
                result.error,
            )
        elif result.outcome is ExchangeOutcome.ROLLED_BACK:
            logger.warning(
                "[branchchat] Reply for conversation %s failed; send rolled back: %s",
                conversation.id,
                result.error,
            )
        return result

    async def resend(self, text: str) -> ExchangeResult:
        """Send ``text`` again as a new turn at the end of the active conversation."""
        return await self.send(text)

    async def edit(self, message_id: str, new_text: str) -> ExchangeResult:
        """
        Replace a past user message and regenerate the conversation from there.

        Everything from ``message_id`` onward is dropped. The message comes
        back under its original id with ``new_text``, followed by a new
        placeholder. If the gateway fails, every conversation is restored to
        its state before the edit.
        """
        conversation = self.active_conversation
        if conversation is None:
            logger.error("[branchchat] Cannot edit message %s: no active conversation", message_id)
            return ExchangeResult(ExchangeOutcome.ABORTED)

        index = conversation.index_of(message_id)
        if index == -1:
            logger.error(
                "[branchchat] Could not find message %s to edit in conversation %s",
                message_id,
                conversation.id,
            )
            return ExchangeResult(ExchangeOutcome.ABORTED, conversation_id=conversation.id)

        placeholder = Message.placeholder()
        branch = (
            *conversation.messages[:index],
            Message.user(new_text, message_id=message_id),
            placeholder,
        )
        snapshot = list(self.conversations)

        self._set_state(ExchangeState.EDITING_BRANCH)
        self._replace(conversation.with_messages(branch))
        self.is_loading = True

        result = await self._await_reply(
            conversation.id,
            placeholder,
            new_text,
            snapshot=snapshot,
            previous_active_id=self.active_conversation_id,
        )
        if result.outcome is ExchangeOutcome.ROLLED_BACK:
            logger.error(
                "[branchchat] Failed to get reply after editing message %s: %s",
                message_id,
                result.error,
            )
        return result

    async def _await_reply(
        self,
        conversation_id: str,
        placeholder: Message,
        text: str,
        *,
        snapshot: list[Conversation] | None,
        previous_active_id: str | None,
    ) -> ExchangeResult:
        """Call the gateway, then resolve the placeholder or roll back."""
        self._pending_ids.add(placeholder.id)
        self._set_state(ExchangeState.AWAITING_REPLY)
        keep_pending = False
        try:
            reply = await self._gateway.send_reply(text)
        except Exception as exc:
            if snapshot is None:
                # The placeholder never resolves, so it keeps rendering as loading.
                keep_pending = True
                self._set_state(ExchangeState.IDLE)
                return ExchangeResult(ExchangeOutcome.FAILED, conversation_id, error=exc)
            self.conversations = snapshot
            self.active_conversation_id = previous_active_id
            self._set_state(ExchangeState.ROLLED_BACK)
            return ExchangeResult(ExchangeOutcome.ROLLED_BACK, conversation_id, error=exc)
        else:
            self._resolve(conversation_id, placeholder.id, reply)
            self._set_state(ExchangeState.RESOLVED)
            return ExchangeResult(ExchangeOutcome.RESOLVED, conversation_id, reply=reply)
        finally:
            if not keep_pending:
                self._pending_ids.discard(placeholder.id)
            self.is_loading = False

    def _resolve(self, conversation_id: str, placeholder_id: str, reply: str) -> None:
        conversation = self._find(conversation_id)
        if conversation is None:
            logger.warning(
                "[branchchat] Conversation %s disappeared before its reply arrived", conversation_id
            )
            return
        resolved = conversation.with_messages(
            message.with_text(reply) if message.id == placeholder_id else message
            for message in conversation.messages
        )
        self._replace(resolved)
        self._store.save_conversation(resolved)

    # ------------------------------------------------------------------
    # Deletion
    # ------------------------------------------------------------------

    def delete_conversation(self, conversation_id: str) -> None:
        self._store.delete_conversation(conversation_id)
        self.conversations = [c for c in self.conversations if c.id != conversation_id]
        if self.active_conversation_id == conversation_id:
            self.active_conversation_id = None

    def delete_all(self) -> None:
        self._store.delete_all_conversations()
        self.conversations = []
        self.active_conversation_id = None

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _find(self, conversation_id: str | None) -> Conversation | None:
        if conversation_id is None:
            return None
        return next((c for c in self.conversations if c.id == conversation_id), None)

    def _replace(self, conversation: Conversation) -> None:
        self.conversations = [
            conversation if c.id == conversation.id else c for c in self.conversations
        ]

    def _set_state(self, state: ExchangeState) -> None:
        logger.debug("[branchchat] Exchange state %s -> %s", self.state.value, state.value)
        self.state = state
