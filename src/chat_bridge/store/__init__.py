from chat_bridge.store.cache import InMemoryCache, KeyValueCache
from chat_bridge.store.conversations import ConversationRepository
from chat_bridge.store.messages import MessageRepository
from chat_bridge.store.model_specs import ModelSpecRepository
from chat_bridge.store.store import ChatStore

__all__ = [
    "ChatStore",
    "ConversationRepository",
    "InMemoryCache",
    "KeyValueCache",
    "MessageRepository",
    "ModelSpecRepository",
]
