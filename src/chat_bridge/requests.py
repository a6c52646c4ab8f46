"""Request bodies for the ask and edit routes.

Field names follow the chat client's camelCase wire shape. The overloaded
``parentMessageId`` of an edit request is translated here into an
``EditTarget`` so nothing past this module reads it as "message to edit".
"""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError

from chat_bridge.errors import ValidationError
from chat_bridge.store.models import ByFieldAlias, ByResponseId, EditTarget, normalize_parent_id


class FileRef(BaseModel):
    model_config = ConfigDict(extra="ignore")

    file_id: str


class _ChatRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    text: str = ""
    conversation_id: str | None = Field(default=None, alias="conversationId")
    parent_message_id: str | None = Field(default=None, alias="parentMessageId")
    message_id: str | None = Field(default=None, alias="messageId")
    endpoint: str | None = None
    model: str | None = None
    spec: str | None = None
    files: list[FileRef] = Field(default_factory=list)

    @property
    def file_ids(self) -> list[str]:
        return [f.file_id for f in self.files]


class AskRequest(_ChatRequest):
    pass


class EditRequest(_ChatRequest):
    response_message_id: str | None = Field(default=None, alias="responseMessageId")
    override_parent_message_id: str | None = Field(default=None, alias="overrideParentMessageId")

    def edit_target(self) -> EditTarget:
        return edit_target_from_fields(
            self.parent_message_id,
            self.response_message_id,
            self.override_parent_message_id,
        )


def edit_target_from_fields(
    parent_message_id: str | None,
    response_message_id: str | None,
    override_parent_message_id: str | None,
) -> EditTarget:
    """Resolve the wire's edit fields into an unambiguous target.

    An explicit ``responseMessageId`` wins. Otherwise the override id, then the
    parent id, names the message being edited.
    """
    if response_message_id:
        return ByResponseId(response_message_id=response_message_id)
    aliased = normalize_parent_id(override_parent_message_id) or normalize_parent_id(parent_message_id)
    if not aliased:
        raise ValidationError("Could not identify message to edit")
    return ByFieldAlias(aliased_message_id=aliased)


def parse_request(model_cls: type[_ChatRequest], payload: object) -> _ChatRequest:
    """Validate a raw JSON body, mapping pydantic errors to ``ValidationError``."""
    if not isinstance(payload, dict):
        raise ValidationError("Request body must be a JSON object")
    try:
        return model_cls.model_validate(payload)
    except PydanticValidationError as ex:
        first = ex.errors()[0] if ex.errors() else {}
        location = ".".join(str(part) for part in first.get("loc", ()))
        detail = first.get("msg", "invalid request")
        raise ValidationError(f"Invalid request field {location}: {detail}" if location else detail) from ex
