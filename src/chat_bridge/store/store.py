from __future__ import annotations

import sqlite3
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

_UNIQUE_ERROR_NAMES = {"SQLITE_CONSTRAINT_PRIMARYKEY", "SQLITE_CONSTRAINT_UNIQUE"}


def utc_now() -> str:
    return datetime.now(UTC).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def is_unique_violation(ex: sqlite3.Error) -> bool:
    """True for PRIMARY KEY and UNIQUE failures, as opposed to NOT NULL or CHECK ones."""
    if getattr(ex, "sqlite_errorname", "") in _UNIQUE_ERROR_NAMES:
        return True
    return str(ex).startswith("UNIQUE constraint failed")


class ChatStore:
    """One SQLite connection shared by the repositories.

    Repository calls are offloaded to worker threads, so every statement runs
    under a re-entrant lock and writes go through ``transaction()``.
    """

    def __init__(self, db_path: str):
        if db_path != ":memory:":
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA foreign_keys = ON")
        self._lock = threading.RLock()
        self._initialize_schema()

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    def fetchone(self, query: str, params: tuple[Any, ...] = ()) -> sqlite3.Row | None:
        with self._lock:
            return self._conn.execute(query, params).fetchone()

    def fetchall(self, query: str, params: tuple[Any, ...] = ()) -> list[sqlite3.Row]:
        with self._lock:
            return self._conn.execute(query, params).fetchall()

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        with self._lock:
            try:
                yield self._conn
            except BaseException:
                self._conn.rollback()
                raise
            else:
                self._conn.commit()

    def _initialize_schema(self) -> None:
        # messages.conversation_id carries no foreign key: the user message and
        # its new conversation are written concurrently, in either order.
        self._conn.executescript(
            """
            CREATE TABLE IF NOT EXISTS conversations (
                id TEXT PRIMARY KEY,
                user_id TEXT NOT NULL,
                title TEXT NOT NULL DEFAULT 'New Chat',
                endpoint TEXT NULL,
                model TEXT NULL,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                is_archived INTEGER NOT NULL DEFAULT 0 CHECK (is_archived IN (0, 1)),
                settings_json TEXT NOT NULL DEFAULT '{}',
                tags_json TEXT NOT NULL DEFAULT '[]',
                metadata_json TEXT NOT NULL DEFAULT '{}'
            );

            CREATE TABLE IF NOT EXISTS messages (
                id TEXT PRIMARY KEY,
                conversation_id TEXT NOT NULL,
                parent_message_id TEXT NULL,
                user_id TEXT NOT NULL,
                sender TEXT NOT NULL,
                text TEXT NOT NULL,
                is_created_by_user INTEGER NOT NULL CHECK (is_created_by_user IN (0, 1)),
                model TEXT NULL,
                error INTEGER NOT NULL DEFAULT 0 CHECK (error IN (0, 1)),
                finish_reason TEXT NULL,
                token_count INTEGER NULL,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                metadata_json TEXT NOT NULL DEFAULT '{}'
            );

            CREATE TABLE IF NOT EXISTS message_files (
                message_id TEXT NOT NULL REFERENCES messages(id) ON DELETE CASCADE,
                file_id TEXT NOT NULL,
                position INTEGER NOT NULL,
                created_at TEXT NOT NULL,
                PRIMARY KEY (message_id, file_id)
            );

            CREATE TABLE IF NOT EXISTS model_specs (
                spec TEXT PRIMARY KEY,
                label TEXT NOT NULL,
                provider TEXT NOT NULL CHECK (provider IN ('anthropic', 'openai')),
                model_id TEXT NOT NULL,
                system_message TEXT NULL,
                temperature REAL NULL,
                top_p REAL NULL,
                top_k INTEGER NULL,
                frequency_penalty REAL NULL,
                presence_penalty REAL NULL,
                max_tokens INTEGER NULL,
                stop_sequences_json TEXT NOT NULL DEFAULT '[]',
                icon_url TEXT NULL,
                is_default INTEGER NOT NULL DEFAULT 0 CHECK (is_default IN (0, 1)),
                sort_order INTEGER NOT NULL DEFAULT 0,
                is_active INTEGER NOT NULL DEFAULT 1 CHECK (is_active IN (0, 1)),
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_conversations_user_updated
                ON conversations(user_id, updated_at);
            CREATE INDEX IF NOT EXISTS idx_messages_conversation_created
                ON messages(conversation_id, created_at);
            CREATE INDEX IF NOT EXISTS idx_messages_parent
                ON messages(parent_message_id);
            CREATE INDEX IF NOT EXISTS idx_model_specs_active_order
                ON model_specs(is_active, sort_order);
            """
        )
        self._conn.commit()
