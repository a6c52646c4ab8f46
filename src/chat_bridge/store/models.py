from __future__ import annotations

from dataclasses import dataclass, field
from typing import Union

# Zero UUID the chat client sends and expects for "no parent".
NO_PARENT = "00000000-0000-0000-0000-000000000000"


def normalize_parent_id(parent_message_id: str | None) -> str | None:
    if not parent_message_id or parent_message_id == NO_PARENT:
        return None
    return parent_message_id


@dataclass(frozen=True)
class ConversationRecord:
    id: str
    user_id: str
    title: str = "New Chat"
    endpoint: str | None = None
    model: str | None = None
    is_archived: bool = False
    settings: dict = field(default_factory=dict)
    metadata: dict = field(default_factory=dict)
    tags: list[str] = field(default_factory=list)
    created_at: str = ""
    updated_at: str = ""

    def to_wire(self) -> dict:
        wire = {
            "conversationId": self.id,
            "user": self.user_id,
            "title": self.title,
            "endpoint": self.endpoint,
            "model": self.model,
            "isArchived": self.is_archived,
            "tags": list(self.tags),
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
        }
        # Settings and metadata are flattened onto the conversation object.
        wire.update({k: v for k, v in self.settings.items() if v is not None})
        wire.update({k: v for k, v in self.metadata.items() if v is not None})
        return wire


@dataclass(frozen=True)
class ConversationPatch:
    title: str | None = None
    endpoint: str | None = None
    model: str | None = None
    is_archived: bool | None = None
    tags: list[str] | None = None
    settings: dict | None = None
    metadata: dict | None = None


@dataclass(frozen=True)
class MessageRecord:
    id: str
    conversation_id: str
    parent_message_id: str | None
    user_id: str
    sender: str
    text: str
    is_created_by_user: bool
    model: str | None = None
    error: bool = False
    finish_reason: str | None = None
    token_count: int | None = None
    metadata: dict = field(default_factory=dict)
    file_ids: tuple[str, ...] = ()
    created_at: str = ""
    updated_at: str = ""

    @property
    def role(self) -> str:
        return "user" if self.is_created_by_user else "assistant"

    def to_wire(self) -> dict:
        return {
            "messageId": self.id,
            "conversationId": self.conversation_id,
            "parentMessageId": self.parent_message_id or NO_PARENT,
            "user": self.user_id,
            "sender": self.sender,
            "text": self.text,
            "isCreatedByUser": self.is_created_by_user,
            "model": self.model,
            "error": self.error,
            "finish_reason": self.finish_reason,
            "tokenCount": self.token_count,
            "files": [{"file_id": file_id} for file_id in self.file_ids],
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
        }


@dataclass(frozen=True)
class MessagePatch:
    text: str | None = None
    error: bool | None = None
    finish_reason: str | None = None
    token_count: int | None = None
    metadata: dict | None = None


@dataclass(frozen=True)
class HistoryChain:
    """Root-to-leaf messages. ``truncated`` means a parent was missing or looped."""

    messages: list[MessageRecord]
    truncated: bool = False


@dataclass(frozen=True)
class EditClassification:
    user_message: MessageRecord
    assistant_message: MessageRecord | None

    @property
    def is_new_branch(self) -> bool:
        return self.assistant_message is None


@dataclass(frozen=True)
class ModelSpec:
    spec: str
    label: str
    provider: str
    model_id: str
    system_message: str | None = None
    temperature: float | None = None
    top_p: float | None = None
    top_k: int | None = None
    frequency_penalty: float | None = None
    presence_penalty: float | None = None
    max_tokens: int | None = None
    stop_sequences: list[str] = field(default_factory=list)
    icon_url: str | None = None
    is_default: bool = False
    sort_order: int = 0
    is_active: bool = True

    @classmethod
    def from_config(cls, raw: dict) -> "ModelSpec":
        """Build a spec from a ``ModelSpecs`` entry in config.json (camelCase keys)."""

        def _opt(key: str, cast):
            value = raw.get(key)
            return cast(value) if value is not None else None

        return cls(
            spec=str(raw["spec"]),
            label=str(raw.get("label") or raw["spec"]),
            provider=str(raw["provider"]).strip().lower(),
            model_id=str(raw["modelId"]),
            system_message=raw.get("systemMessage"),
            temperature=_opt("temperature", float),
            top_p=_opt("topP", float),
            top_k=_opt("topK", int),
            frequency_penalty=_opt("frequencyPenalty", float),
            presence_penalty=_opt("presencePenalty", float),
            max_tokens=_opt("maxTokens", int),
            stop_sequences=[str(s) for s in raw.get("stopSequences") or []],
            icon_url=raw.get("iconURL"),
            is_default=bool(raw.get("default", False)),
            sort_order=int(raw.get("order", 0)),
            is_active=bool(raw.get("active", True)),
        )


@dataclass(frozen=True)
class ByResponseId:
    """The assistant message to regenerate; its parent is the message being edited."""

    response_message_id: str


@dataclass(frozen=True)
class ByFieldAlias:
    """The id of the message being edited, carried in the wire's parent field."""

    aliased_message_id: str


EditTarget = Union[ByResponseId, ByFieldAlias]
