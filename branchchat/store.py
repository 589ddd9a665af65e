"""
Conversation stores.

Both stores keep whole conversation records. A save replaces the stored
record wholesale, and the last writer wins.

Usage:
    from branchchat.store import SQLiteConversationStore

    with SQLiteConversationStore() as store:     # default ~/.cache path
        for conversation in store.get_conversations():
            print(conversation.title)
"""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
from pathlib import Path
from typing import Union

from .models import Conversation, utc_now_iso

logger = logging.getLogger("branchchat")

__all__ = ["InMemoryConversationStore", "SQLiteConversationStore"]

_DEFAULT_DB_DIR = Path.home() / ".cache" / "branchchat"
_DEFAULT_DB_PATH = _DEFAULT_DB_DIR / "conversations.db"


class InMemoryConversationStore:
    """Process-local store; most recently saved conversations come first."""

    def __init__(self, conversations: list[Conversation] | None = None) -> None:
        self._records: dict[str, Conversation] = {}
        for conversation in reversed(conversations or []):
            self.save_conversation(conversation)

    def get_conversations(self) -> list[Conversation]:
        return list(reversed(self._records.values()))

    def save_conversation(self, conversation: Conversation) -> None:
        # Re-inserting moves the record to the end, i.e. to the front of listings.
        self._records.pop(conversation.id, None)
        self._records[conversation.id] = conversation

    def delete_conversation(self, conversation_id: str) -> None:
        self._records.pop(conversation_id, None)

    def delete_all_conversations(self) -> None:
        self._records.clear()


class SQLiteConversationStore:
    """
    A thread-safe sqlite3 store holding one JSON record per conversation.

    Parameters
    ----------
    db_path:
        Path to the sqlite3 database file.  Parent directories are created
        automatically.
    """

    def __init__(self, db_path: Union[str, Path, None] = None) -> None:
        self._db_path = Path(db_path) if db_path is not None else _DEFAULT_DB_PATH
        self._lock = threading.Lock()

        self._db_path.parent.mkdir(parents=True, exist_ok=True)

        self._conn = sqlite3.connect(str(self._db_path), check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._tune_pragmas()
        self._init_schema()

    @property
    def path(self) -> Path:
        return self._db_path

    def _tune_pragmas(self) -> None:
        """Tune sqlite for local low-latency usage."""
        self._conn.execute("PRAGMA journal_mode = WAL")
        self._conn.execute("PRAGMA synchronous = NORMAL")
        self._conn.execute("PRAGMA temp_store = MEMORY")

    def _init_schema(self) -> None:
        self._conn.executescript(
            """
            CREATE TABLE IF NOT EXISTS conversations (
                id          TEXT PRIMARY KEY,
                title       TEXT NOT NULL,
                created_at  TEXT NOT NULL,
                updated_at  TEXT NOT NULL,
                record_json TEXT NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_conversations_updated
            ON conversations(updated_at);
            """
        )
        self._conn.commit()

    # -- public API ----------------------------------------------------------

    def get_conversations(self) -> list[Conversation]:
        """Load every conversation, most recently saved first."""
        with self._lock:
            rows = self._conn.execute(
                """
                SELECT id, record_json
                FROM conversations
                ORDER BY updated_at DESC, rowid DESC
                """
            ).fetchall()

        conversations: list[Conversation] = []
        for row in rows:
            try:
                conversations.append(Conversation.from_dict(json.loads(row["record_json"])))
            except (json.JSONDecodeError, KeyError, TypeError, ValueError) as exc:
                logger.warning(
                    "[branchchat] Skipping unreadable conversation %s: %s", row["id"], exc
                )
        return conversations

    def save_conversation(self, conversation: Conversation) -> None:
        """Insert or replace the whole conversation record."""
        record_json = json.dumps(conversation.to_dict(), ensure_ascii=False)
        with self._lock:
            # Delete first so the new row gets a fresh rowid for ordering ties.
            self._conn.execute("DELETE FROM conversations WHERE id = ?", (conversation.id,))
            self._conn.execute(
                """
                INSERT INTO conversations (id, title, created_at, updated_at, record_json)
                VALUES (?, ?, ?, ?, ?)
                """,
                (
                    conversation.id,
                    conversation.title,
                    conversation.created_at,
                    utc_now_iso(),
                    record_json,
                ),
            )
            self._conn.commit()

    def delete_conversation(self, conversation_id: str) -> None:
        with self._lock:
            self._conn.execute("DELETE FROM conversations WHERE id = ?", (conversation_id,))
            self._conn.commit()

    def delete_all_conversations(self) -> None:
        with self._lock:
            self._conn.execute("DELETE FROM conversations")
            self._conn.commit()

    def close(self) -> None:
        """Close the underlying database connection."""
        with self._lock:
            self._conn.close()

    def __enter__(self) -> SQLiteConversationStore:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()
