from __future__ import annotations

import json
import sqlite3
from dataclasses import replace

from chat_bridge.errors import ConflictError, PersistenceError
from chat_bridge.store.models import ConversationPatch, ConversationRecord
from chat_bridge.store.store import ChatStore, is_unique_violation, utc_now


class ConversationRepository:
    def __init__(self, store: ChatStore):
        self._store = store

    def create(self, conversation: ConversationRecord) -> ConversationRecord:
        now = utc_now()
        try:
            with self._store.transaction() as conn:
                conn.execute(
                    """
                    INSERT INTO conversations (
                        id, user_id, title, endpoint, model, created_at, updated_at,
                        is_archived, settings_json, tags_json, metadata_json
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        conversation.id,
                        conversation.user_id,
                        conversation.title or "New Chat",
                        conversation.endpoint,
                        conversation.model,
                        now,
                        now,
                        1 if conversation.is_archived else 0,
                        json.dumps(conversation.settings, ensure_ascii=True),
                        json.dumps(list(conversation.tags), ensure_ascii=True),
                        json.dumps(conversation.metadata, ensure_ascii=True),
                    ),
                )
        except sqlite3.Error as ex:
            if is_unique_violation(ex):
                raise ConflictError(f"Conversation already exists: {conversation.id}") from ex
            raise PersistenceError(f"Failed to save conversation {conversation.id}: {ex}") from ex
        return replace(conversation, title=conversation.title or "New Chat", created_at=now, updated_at=now)

    def find_by_id_and_user(self, conversation_id: str, user_id: str) -> ConversationRecord | None:
        row = self._store.fetchone(
            "SELECT * FROM conversations WHERE id = ? AND user_id = ? LIMIT 1",
            (conversation_id, user_id),
        )
        return self._row_to_conversation(row) if row is not None else None

    def list_by_user(
        self,
        user_id: str,
        *,
        archived: bool = False,
        limit: int = 25,
    ) -> list[ConversationRecord]:
        rows = self._store.fetchall(
            """
            SELECT * FROM conversations
            WHERE user_id = ? AND is_archived = ?
            ORDER BY updated_at DESC, created_at DESC
            LIMIT ?
            """,
            (user_id, 1 if archived else 0, max(1, limit)),
        )
        return [self._row_to_conversation(row) for row in rows]

    def update(
        self,
        conversation_id: str,
        user_id: str,
        patch: ConversationPatch,
    ) -> ConversationRecord | None:
        assignments: list[str] = []
        params: list = []
        if patch.title is not None:
            assignments.append("title = ?")
            params.append(patch.title)
        if patch.endpoint is not None:
            assignments.append("endpoint = ?")
            params.append(patch.endpoint)
        if patch.model is not None:
            assignments.append("model = ?")
            params.append(patch.model)
        if patch.is_archived is not None:
            assignments.append("is_archived = ?")
            params.append(1 if patch.is_archived else 0)
        if patch.tags is not None:
            assignments.append("tags_json = ?")
            params.append(json.dumps(list(patch.tags), ensure_ascii=True))
        if patch.settings is not None:
            assignments.append("settings_json = ?")
            params.append(json.dumps(patch.settings, ensure_ascii=True))
        if patch.metadata is not None:
            assignments.append("metadata_json = ?")
            params.append(json.dumps(patch.metadata, ensure_ascii=True))

        if assignments:
            assignments.append("updated_at = ?")
            params.append(utc_now())
            try:
                with self._store.transaction() as conn:
                    conn.execute(
                        f"UPDATE conversations SET {', '.join(assignments)} WHERE id = ? AND user_id = ?",
                        (*params, conversation_id, user_id),
                    )
            except sqlite3.Error as ex:
                raise PersistenceError(f"Failed to update conversation {conversation_id}: {ex}") from ex
        return self.find_by_id_and_user(conversation_id, user_id)

    def touch(self, conversation_id: str, user_id: str) -> None:
        try:
            with self._store.transaction() as conn:
                conn.execute(
                    "UPDATE conversations SET updated_at = ? WHERE id = ? AND user_id = ?",
                    (utc_now(), conversation_id, user_id),
                )
        except sqlite3.Error as ex:
            raise PersistenceError(f"Failed to touch conversation {conversation_id}: {ex}") from ex

    def delete(self, conversation_id: str, user_id: str) -> bool:
        """Delete a conversation and, with it, all of its messages."""
        with self._store.transaction() as conn:
            cursor = conn.execute(
                "DELETE FROM conversations WHERE id = ? AND user_id = ?",
                (conversation_id, user_id),
            )
            if cursor.rowcount > 0:
                conn.execute(
                    "DELETE FROM messages WHERE conversation_id = ? AND user_id = ?",
                    (conversation_id, user_id),
                )
        return cursor.rowcount > 0

    def _row_to_conversation(self, row: sqlite3.Row) -> ConversationRecord:
        return ConversationRecord(
            id=row["id"],
            user_id=row["user_id"],
            title=row["title"],
            endpoint=row["endpoint"],
            model=row["model"],
            is_archived=bool(row["is_archived"]),
            settings=_parse_json(row["settings_json"], {}),
            metadata=_parse_json(row["metadata_json"], {}),
            tags=_parse_json(row["tags_json"], []),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )


def _parse_json(raw: str | None, fallback):
    if not raw:
        return fallback
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError:
        return fallback
    return parsed if isinstance(parsed, type(fallback)) else fallback
