"""
Single-edit coordination across message bubbles.

:class:`EditLock` holds the id of the message currently being edited (or
``None``) and broadcasts every change to its observers. A
:class:`MessageEditor` subscribes while it is open. When another message
starts editing, it leaves edit mode and throws away its draft.

The lock only notifies. It never refuses a request, so the last caller
wins. Front ends use :attr:`EditLock.is_active` (or
:attr:`MessageEditor.can_start_edit`) to disable the edit affordance while
an edit is in progress.

Usage::

    lock = EditLock()
    with MessageEditor(message, lock=lock, on_save=machine.edit) as editor:
        editor.start_editing()
        editor.draft = "new wording"
        await editor.save()
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from collections.abc import Callable

    from .models import Message

logger = logging.getLogger("branchchat")

__all__ = ["EditLock", "MessageEditor", "get_edit_lock", "set_edit_lock"]


class EditLock:
    """Observable holder of the one message id allowed in edit mode."""

    def __init__(self) -> None:
        self._active_id: str | None = None
        self._observers: list[Callable[[str | None], None]] = []

    @property
    def active_id(self) -> str | None:
        return self._active_id

    @property
    def is_active(self) -> bool:
        return self._active_id is not None

    def subscribe(self, observer: Callable[[str | None], None]) -> Callable[[], None]:
        """Register ``observer``; returns a callable that unsubscribes it."""
        self._observers.append(observer)
        return lambda: self.unsubscribe(observer)

    def unsubscribe(self, observer: Callable[[str | None], None]) -> None:
        if observer in self._observers:
            self._observers.remove(observer)

    def begin_edit(self, message_id: str) -> None:
        self._broadcast(message_id)

    def end_edit(self) -> None:
        self._broadcast(None)

    def _broadcast(self, message_id: str | None) -> None:
        self._active_id = message_id
        errors: list[Exception] = []
        # Snapshot: observers may unsubscribe while being notified.
        for observer in list(self._observers):
            try:
                observer(message_id)
            except Exception as exc:
                logger.exception("[branchchat] Edit observer %r failed", observer)
                errors.append(exc)
        if errors:
            raise errors[0]


_edit_lock = EditLock()


def get_edit_lock() -> EditLock:
    """Return the process-wide edit lock."""
    return _edit_lock


def set_edit_lock(lock: EditLock) -> None:
    """Replace the process-wide edit lock (module-level singleton)."""
    global _edit_lock
    _edit_lock = lock


class MessageEditor:
    """
    Local edit state for one message bubble.

    Parameters
    ----------
    message:
        The message shown in the bubble.
    lock:
        The shared :class:`EditLock`. Defaults to :func:`get_edit_lock`.
    on_save:
        Called as ``on_save(message_id, new_text)`` when a non-blank draft is
        saved. Typically :meth:`ConversationStateMachine.edit`.
    """

    def __init__(
        self,
        message: Message,
        *,
        lock: EditLock | None = None,
        on_save: Callable[[str, str], Any] | None = None,
    ) -> None:
        self.message = message
        self.lock = lock if lock is not None else get_edit_lock()
        self.on_save = on_save
        self.draft = message.text
        self.is_editing = False
        self.lock_active_id = self.lock.active_id
        self._unsubscribe: Callable[[], None] | None = None

    # -- lifetime ------------------------------------------------------------

    def open(self) -> None:
        """Start observing the lock (bubble mounted)."""
        if self._unsubscribe is None:
            self._unsubscribe = self.lock.subscribe(self._on_lock_change)
            self.lock_active_id = self.lock.active_id

    def close(self) -> None:
        """Stop observing the lock (bubble unmounted)."""
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None

    def __enter__(self) -> MessageEditor:
        self.open()
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    # -- state ---------------------------------------------------------------

    @property
    def can_start_edit(self) -> bool:
        """False while any bubble, this one included, is being edited."""
        return self.lock_active_id is None

    def refresh(self, message: Message) -> None:
        """Show a new version of the message; the draft follows its text."""
        self.message = message
        self.draft = message.text

    def start_editing(self) -> None:
        # Set before broadcasting: an observer may raise.
        self.is_editing = True
        self.lock.begin_edit(self.message.id)

    def cancel(self) -> None:
        self._stop_editing(reset=True)

    def save(self) -> Any:
        """
        Hand the trimmed draft to ``on_save`` and leave edit mode.

        Blank drafts are not saved. Returns whatever ``on_save`` returns, so
        an async callback's coroutine can be awaited by the caller.
        """
        result = None
        new_text = self.draft.strip()
        if self.on_save is not None and new_text:
            result = self.on_save(self.message.id, new_text)
        self._stop_editing(reset=False)
        return result

    def _stop_editing(self, *, reset: bool) -> None:
        self.is_editing = False
        if reset:
            self.draft = self.message.text
        self.lock.end_edit()

    def _on_lock_change(self, active_id: str | None) -> None:
        self.lock_active_id = active_id
        if active_id != self.message.id and self.is_editing:
            self.is_editing = False
            self.draft = self.message.text
