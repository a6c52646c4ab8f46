import shutil
import unittest
from pathlib import Path
from uuid import uuid4

from chat_bridge.store import ChatStore, ConversationRepository, MessageRepository, ModelSpecRepository
from chat_bridge.store.models import ConversationRecord, MessageRecord


PROJECT_ROOT = Path(__file__).resolve().parents[2]


class ChatStoreTestCase(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp_dir = PROJECT_ROOT / ".test-artifacts" / f"{self.__class__.__name__.lower()}-{uuid4().hex}"
        self._tmp_dir.mkdir(parents=True, exist_ok=True)
        self._store = ChatStore(str(self._tmp_dir / "chat.db"))
        self._messages = MessageRepository(self._store)
        self._conversations = ConversationRepository(self._store)
        self._model_specs = ModelSpecRepository(self._store)

    def tearDown(self) -> None:
        self._store.close()
        shutil.rmtree(self._tmp_dir, ignore_errors=True)

    def _conversation(self, conversation_id: str = "c1", user_id: str = "u1") -> ConversationRecord:
        return self._conversations.create(ConversationRecord(id=conversation_id, user_id=user_id))

    def _message(
        self,
        message_id: str,
        parent_id: str | None,
        *,
        by_user: bool = True,
        text: str | None = None,
        conversation_id: str = "c1",
        user_id: str = "u1",
    ) -> MessageRecord:
        return self._messages.create(
            MessageRecord(
                id=message_id,
                conversation_id=conversation_id,
                parent_message_id=parent_id,
                user_id=user_id,
                sender="User" if by_user else "assistant",
                text=text if text is not None else f"text of {message_id}",
                is_created_by_user=by_user,
                model="m",
            )
        )
