"""
branchchat public API.

Segment assistant replies into text, code and table blocks, and run
conversations whose past user turns can be edited to start a new branch.
"""

from __future__ import annotations

from .edit_lock import EditLock, MessageEditor, get_edit_lock, set_edit_lock
from .exceptions import BranchChatError, GatewaySetupError, ReplyGatewayError
from .models import Conversation, Message, Sender, derive_title
from .protocols import (
    AppleFMReplyGateway,
    CallableReplyGateway,
    ConversationStore,
    ReplyGateway,
    WebhookReplyGateway,
    get_gateway,
    set_gateway,
)
from .segmenter import CodeBlock, TableBlock, TextBlock, blocks_to_text, segment
from .state import ConversationStateMachine, ExchangeOutcome, ExchangeResult, ExchangeState
from .store import InMemoryConversationStore, SQLiteConversationStore

__all__ = [
    "AppleFMReplyGateway",
    "BranchChatError",
    "CallableReplyGateway",
    "CodeBlock",
    "Conversation",
    "ConversationStateMachine",
    "ConversationStore",
    "EditLock",
    "ExchangeOutcome",
    "ExchangeResult",
    "ExchangeState",
    "GatewaySetupError",
    "InMemoryConversationStore",
    "Message",
    "MessageEditor",
    "ReplyGateway",
    "ReplyGatewayError",
    "SQLiteConversationStore",
    "Sender",
    "TableBlock",
    "TextBlock",
    "WebhookReplyGateway",
    "blocks_to_text",
    "derive_title",
    "get_edit_lock",
    "get_gateway",
    "segment",
    "set_edit_lock",
    "set_gateway",
]
