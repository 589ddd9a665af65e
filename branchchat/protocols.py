"""
Pluggable collaborator protocols for branchchat.

The conversation state machine talks to two outside services: a reply
gateway that turns user text into assistant text, and a store that keeps
conversation records. Both are defined here as structural
``typing.Protocol`` interfaces, so anything with the right methods works.

Usage:
    from branchchat.protocols import WebhookReplyGateway, set_gateway, get_gateway

    # Default: AppleFMReplyGateway wrapping apple_fm_sdk
    gateway = get_gateway()

    # Swap in another gateway for tests or a remote service:
    set_gateway(WebhookReplyGateway("https://example.test/webhook/chat"))
"""

from __future__ import annotations

import importlib
import logging
from functools import lru_cache
from typing import TYPE_CHECKING, Any, Protocol, cast, runtime_checkable

import httpx

from .exceptions import GatewaySetupError, ReplyGatewayError

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable, Sequence

    from .models import Conversation

logger = logging.getLogger("branchchat")

__all__ = [
    "DEFAULT_INSTRUCTIONS",
    "DEFAULT_WEBHOOK_TIMEOUT_SECONDS",
    "AppleFMReplyGateway",
    "CallableReplyGateway",
    "ConversationStore",
    "ReplyGateway",
    "WebhookReplyGateway",
    "get_gateway",
    "set_gateway",
]

DEFAULT_INSTRUCTIONS = (
    "You are a helpful assistant. Use fenced code blocks for code and "
    "pipe-delimited markdown tables for tabular data."
)
DEFAULT_WEBHOOK_TIMEOUT_SECONDS = 60.0
_REPLY_FIELDS = ("output", "reply", "text", "message")


# ---------------------------------------------------------------------------
# Protocols
# ---------------------------------------------------------------------------


@runtime_checkable
class ReplyGateway(Protocol):
    """Structural interface for the outbound call that produces assistant text."""

    def send_reply(self, text: str) -> Awaitable[str]:
        """Send user text and return the assistant's reply."""
        ...


@runtime_checkable
class ConversationStore(Protocol):
    """Structural interface for whole-record conversation persistence."""

    def get_conversations(self) -> Sequence[Conversation]: ...

    def save_conversation(self, conversation: Conversation) -> None: ...

    def delete_conversation(self, conversation_id: str) -> None: ...

    def delete_all_conversations(self) -> None: ...


# ---------------------------------------------------------------------------
# Concrete gateways
# ---------------------------------------------------------------------------


class CallableReplyGateway:
    """Adapts a plain ``async def reply(text) -> str`` function to :class:`ReplyGateway`."""

    def __init__(self, func: Callable[[str], Awaitable[str]]) -> None:
        self._func = func

    async def send_reply(self, text: str) -> str:
        return await self._func(text)


class WebhookReplyGateway:
    """
    Posts each message to an HTTP webhook and returns the reply text.

    The request body is ``{"message": text}`` (plus ``extra_payload``). The
    reply is taken from the first of ``output``, ``reply``, ``text`` or
    ``message`` in a JSON response (the first item is used when the webhook
    answers with a list). A non-JSON body is returned as-is.

    Pass ``client`` to reuse an existing :class:`httpx.AsyncClient`; otherwise
    a short-lived client is opened per request.
    """

    def __init__(
        self,
        url: str,
        *,
        timeout: float = DEFAULT_WEBHOOK_TIMEOUT_SECONDS,
        headers: dict[str, str] | None = None,
        extra_payload: dict[str, Any] | None = None,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        if not url:
            raise ValueError("url must be a non-empty string")
        self.url = url
        self.timeout = timeout
        self.headers = dict(headers or {})
        self.extra_payload = dict(extra_payload or {})
        self._client = client

    async def send_reply(self, text: str) -> str:
        payload = {**self.extra_payload, "message": text}
        try:
            if self._client is not None:
                response = await self._client.post(self.url, json=payload, headers=self.headers)
            else:
                async with httpx.AsyncClient(timeout=self.timeout) as client:
                    response = await client.post(self.url, json=payload, headers=self.headers)
        except httpx.TimeoutException as exc:
            raise ReplyGatewayError(f"Timeout while calling webhook {self.url}") from exc
        except httpx.HTTPError as exc:
            raise ReplyGatewayError(f"HTTP error calling webhook {self.url}: {exc}") from exc

        if response.status_code >= 400:
            raise ReplyGatewayError(
                f"Webhook {self.url} returned HTTP {response.status_code}"
            )
        return self._extract_reply(response)

    @staticmethod
    def _extract_reply(response: httpx.Response) -> str:
        content_type = response.headers.get("content-type", "").lower()
        if "application/json" not in content_type:
            return response.text

        try:
            data = response.json()
        except ValueError:
            return response.text

        if isinstance(data, list):
            data = data[0] if data else {}
        if isinstance(data, str):
            return data
        if isinstance(data, dict):
            for key in _REPLY_FIELDS:
                value = data.get(key)
                if value is not None:
                    return str(value)
        raise ReplyGatewayError(
            f"Webhook response has none of the fields {', '.join(_REPLY_FIELDS)}"
        )


@lru_cache(maxsize=1)
def _import_apple_fm_sdk() -> Any:
    """Import ``apple_fm_sdk`` lazily so importing branchchat does not hard-require it."""
    return importlib.import_module("apple_fm_sdk")


class AppleFMReplyGateway:
    """
    On-device gateway backed by ``apple_fm_sdk``.

    The model is created and checked on first use. Each reply gets a fresh
    ``LanguageModelSession``, since the state machine sends one message at a
    time and keeps its own history.
    """

    def __init__(self, instructions: str = DEFAULT_INSTRUCTIONS) -> None:
        self.instructions = instructions
        self._model: Any = None

    def _ensure_model(self) -> Any:
        if self._model is not None:
            return self._model
        try:
            model = _import_apple_fm_sdk().SystemLanguageModel()
            available, reason = model.is_available()
        except Exception as exc:
            raise GatewaySetupError(type(self).__name__, f"{type(exc).__name__}: {exc}") from exc
        if not available:
            raise GatewaySetupError(
                type(self).__name__, f"Foundation Model is not available: {reason}"
            )
        self._model = model
        return model

    async def send_reply(self, text: str) -> str:
        model = self._ensure_model()
        fm_sdk = _import_apple_fm_sdk()
        session = fm_sdk.LanguageModelSession(model=model, instructions=self.instructions)
        result = await session.respond(text)
        return str(result)


# ---------------------------------------------------------------------------
# Module-level gateway registry
# ---------------------------------------------------------------------------

_gateway: Any = AppleFMReplyGateway()


def set_gateway(gateway: Any) -> None:
    """Replace the active reply gateway (module-level singleton)."""
    global _gateway
    if not callable(getattr(gateway, "send_reply", None)):
        raise TypeError(f"Reply gateway must provide send_reply(); got {type(gateway).__name__}")
    _gateway = gateway
    logger.info("[branchchat] Reply gateway set to %s", type(gateway).__name__)


def get_gateway() -> ReplyGateway:
    """Return the currently active reply gateway."""
    return cast("ReplyGateway", _gateway)
