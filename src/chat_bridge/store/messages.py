from __future__ import annotations

import json
import sqlite3
from dataclasses import replace

from loguru import logger

from chat_bridge.errors import ConflictError, NotFoundError, PersistenceError
from chat_bridge.store.models import (
    NO_PARENT,
    ByFieldAlias,
    ByResponseId,
    EditClassification,
    EditTarget,
    HistoryChain,
    MessagePatch,
    MessageRecord,
)
from chat_bridge.store.store import ChatStore, is_unique_violation, utc_now


class MessageRepository:
    """Messages as a forest: one row per message with a nullable parent column."""

    def __init__(self, store: ChatStore):
        self._store = store

    def create(self, message: MessageRecord) -> MessageRecord:
        now = utc_now()
        parent_id = message.parent_message_id if message.parent_message_id != NO_PARENT else None
        try:
            with self._store.transaction() as conn:
                conn.execute(
                    """
                    INSERT INTO messages (
                        id, conversation_id, parent_message_id, user_id, sender, text,
                        is_created_by_user, model, error, finish_reason, token_count,
                        created_at, updated_at, metadata_json
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        message.id,
                        message.conversation_id,
                        parent_id,
                        message.user_id,
                        message.sender,
                        message.text,
                        1 if message.is_created_by_user else 0,
                        message.model,
                        1 if message.error else 0,
                        message.finish_reason,
                        message.token_count,
                        now,
                        now,
                        json.dumps(message.metadata, ensure_ascii=True),
                    ),
                )
                self._insert_files(conn, message.id, message.file_ids, now)
        except sqlite3.Error as ex:
            if is_unique_violation(ex):
                raise ConflictError(f"Message already exists: {message.id}") from ex
            raise PersistenceError(f"Failed to save message {message.id}: {ex}") from ex

        return replace(message, parent_message_id=parent_id, created_at=now, updated_at=now)

    def find_by_id(self, message_id: str) -> MessageRecord | None:
        row = self._store.fetchone("SELECT * FROM messages WHERE id = ? LIMIT 1", (message_id,))
        return self._row_to_message(row) if row is not None else None

    def find_by_id_and_user(self, message_id: str, user_id: str) -> MessageRecord | None:
        row = self._store.fetchone(
            "SELECT * FROM messages WHERE id = ? AND user_id = ? LIMIT 1",
            (message_id, user_id),
        )
        return self._row_to_message(row) if row is not None else None

    def find_by_conversation(self, conversation_id: str, user_id: str) -> list[MessageRecord]:
        rows = self._store.fetchall(
            """
            SELECT * FROM messages
            WHERE conversation_id = ? AND user_id = ?
            ORDER BY created_at ASC, id ASC
            """,
            (conversation_id, user_id),
        )
        return [self._row_to_message(row) for row in rows]

    def update(self, message_id: str, user_id: str, patch: MessagePatch) -> MessageRecord | None:
        assignments: list[str] = []
        params: list = []
        if patch.text is not None:
            assignments.append("text = ?")
            params.append(patch.text)
        if patch.error is not None:
            assignments.append("error = ?")
            params.append(1 if patch.error else 0)
        if patch.finish_reason is not None:
            assignments.append("finish_reason = ?")
            params.append(patch.finish_reason)
        if patch.token_count is not None:
            assignments.append("token_count = ?")
            params.append(patch.token_count)
        if patch.metadata is not None:
            assignments.append("metadata_json = ?")
            params.append(json.dumps(patch.metadata, ensure_ascii=True))

        if assignments:
            assignments.append("updated_at = ?")
            params.append(utc_now())
            try:
                with self._store.transaction() as conn:
                    conn.execute(
                        f"UPDATE messages SET {', '.join(assignments)} WHERE id = ? AND user_id = ?",
                        (*params, message_id, user_id),
                    )
            except sqlite3.Error as ex:
                raise PersistenceError(f"Failed to update message {message_id}: {ex}") from ex
        return self.find_by_id_and_user(message_id, user_id)

    def delete(self, message_id: str, user_id: str) -> bool:
        with self._store.transaction() as conn:
            cursor = conn.execute(
                "DELETE FROM messages WHERE id = ? AND user_id = ?",
                (message_id, user_id),
            )
        return cursor.rowcount > 0

    def delete_by_conversation(self, conversation_id: str, user_id: str) -> int:
        with self._store.transaction() as conn:
            cursor = conn.execute(
                "DELETE FROM messages WHERE conversation_id = ? AND user_id = ?",
                (conversation_id, user_id),
            )
        return cursor.rowcount

    def find_history_chain(
        self,
        conversation_id: str,
        user_id: str,
        starting_message_id: str,
    ) -> HistoryChain:
        """Walk parent pointers from ``starting_message_id`` up to a root.

        Returns the chain root-to-leaf. A missing parent or a loop ends the walk
        early and marks the chain as truncated.
        """
        if self.find_in_conversation(conversation_id, user_id, starting_message_id) is None:
            raise NotFoundError(f"Message not found in conversation: {starting_message_id}")

        count_row = self._store.fetchone(
            "SELECT COUNT(*) AS c FROM messages WHERE conversation_id = ? AND user_id = ?",
            (conversation_id, user_id),
        )
        max_steps = int(count_row["c"]) if count_row is not None else 0

        rows = self._store.fetchall(
            """
            WITH RECURSIVE chain(id, parent_message_id, depth) AS (
                SELECT id, parent_message_id, 0
                FROM messages
                WHERE id = ? AND conversation_id = ? AND user_id = ?
                UNION ALL
                SELECT m.id, m.parent_message_id, chain.depth + 1
                FROM messages m
                JOIN chain ON m.id = chain.parent_message_id
                WHERE m.conversation_id = ? AND m.user_id = ? AND chain.depth < ?
            )
            SELECT m.*, chain.depth AS depth
            FROM chain JOIN messages m ON m.id = chain.id
            ORDER BY chain.depth ASC
            """,
            (starting_message_id, conversation_id, user_id, conversation_id, user_id, max_steps),
        )

        leaf_to_root: list[MessageRecord] = []
        seen: set[str] = set()
        truncated = False
        for row in rows:
            if row["id"] in seen:
                logger.warning(
                    f"Circular reference in message chain: conversation={conversation_id}, "
                    f"message={row['id']}"
                )
                truncated = True
                break
            seen.add(row["id"])
            leaf_to_root.append(self._row_to_message(row))

        if leaf_to_root and not truncated:
            oldest_parent = leaf_to_root[-1].parent_message_id
            if oldest_parent and oldest_parent != NO_PARENT:
                logger.warning(
                    f"Message not found in chain: conversation={conversation_id}, "
                    f"message={oldest_parent}"
                )
                truncated = True

        leaf_to_root.reverse()
        logger.debug(
            f"Built history chain: conversation={conversation_id}, start={starting_message_id}, "
            f"length={len(leaf_to_root)}, truncated={truncated}"
        )
        return HistoryChain(messages=leaf_to_root, truncated=truncated)

    def find_in_conversation(
        self,
        conversation_id: str,
        user_id: str,
        message_id: str,
    ) -> MessageRecord | None:
        row = self._store.fetchone(
            "SELECT * FROM messages WHERE id = ? AND conversation_id = ? AND user_id = ? LIMIT 1",
            (message_id, conversation_id, user_id),
        )
        return self._row_to_message(row) if row is not None else None

    def find_first_response(
        self,
        conversation_id: str,
        user_id: str,
        parent_message_id: str,
    ) -> MessageRecord | None:
        row = self._store.fetchone(
            """
            SELECT * FROM messages
            WHERE conversation_id = ? AND user_id = ? AND parent_message_id = ?
              AND is_created_by_user = 0
            ORDER BY created_at ASC, id ASC
            LIMIT 1
            """,
            (conversation_id, user_id, parent_message_id),
        )
        return self._row_to_message(row) if row is not None else None

    def classify_edit_target(
        self,
        conversation_id: str,
        user_id: str,
        target: EditTarget,
    ) -> EditClassification:
        """Resolve an edit request into the message to edit and the reply to update.

        ``assistant_message`` is ``None`` when the edited message has no reply
        yet: the edit then starts a new branch.
        """
        if isinstance(target, ByResponseId):
            assistant = self.find_in_conversation(conversation_id, user_id, target.response_message_id)
            if assistant is None:
                raise NotFoundError("Assistant message to update not found")
            user_message = (
                self.find_in_conversation(conversation_id, user_id, assistant.parent_message_id)
                if assistant.parent_message_id
                else None
            )
            if user_message is None:
                raise NotFoundError("User message to edit not found")
            return EditClassification(user_message=user_message, assistant_message=assistant)

        if isinstance(target, ByFieldAlias):
            user_message = self.find_in_conversation(conversation_id, user_id, target.aliased_message_id)
            if user_message is None:
                raise NotFoundError("Message to edit not found")
            assistant = self.find_first_response(conversation_id, user_id, user_message.id)
            return EditClassification(user_message=user_message, assistant_message=assistant)

        raise TypeError(f"Unsupported edit target: {target!r}")

    def associate_files(self, message_id: str, file_ids: list[str]) -> None:
        if not file_ids:
            return
        with self._store.transaction() as conn:
            self._insert_files(conn, message_id, tuple(file_ids), utc_now())

    def get_associated_file_ids(self, message_id: str) -> list[str]:
        rows = self._store.fetchall(
            "SELECT file_id FROM message_files WHERE message_id = ? ORDER BY position ASC",
            (message_id,),
        )
        return [str(row["file_id"]) for row in rows]

    def _insert_files(
        self,
        conn: sqlite3.Connection,
        message_id: str,
        file_ids: tuple[str, ...],
        now: str,
    ) -> None:
        if not file_ids:
            return
        row = conn.execute(
            "SELECT COALESCE(MAX(position), -1) AS p FROM message_files WHERE message_id = ?",
            (message_id,),
        ).fetchone()
        start = int(row["p"]) + 1
        conn.executemany(
            """
            INSERT OR IGNORE INTO message_files (message_id, file_id, position, created_at)
            VALUES (?, ?, ?, ?)
            """,
            [(message_id, file_id, start + i, now) for i, file_id in enumerate(file_ids)],
        )

    def _row_to_message(self, row: sqlite3.Row) -> MessageRecord:
        return MessageRecord(
            id=row["id"],
            conversation_id=row["conversation_id"],
            parent_message_id=row["parent_message_id"],
            user_id=row["user_id"],
            sender=row["sender"],
            text=row["text"],
            is_created_by_user=bool(row["is_created_by_user"]),
            model=row["model"],
            error=bool(row["error"]),
            finish_reason=row["finish_reason"],
            token_count=row["token_count"],
            metadata=_parse_json(row["metadata_json"], {}),
            file_ids=tuple(self.get_associated_file_ids(row["id"])),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )


def _parse_json(raw: str | None, fallback):
    if not raw:
        return fallback
    try:
        return json.loads(raw)
    except json.JSONDecodeError:
        return fallback
