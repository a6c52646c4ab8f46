from __future__ import annotations

from dataclasses import dataclass, field
from typing import Union

from chat_bridge.errors import ProviderError, ProviderErrorKind


@dataclass(frozen=True)
class TextDelta:
    text: str


@dataclass(frozen=True)
class StreamDone:
    token_count: int = 0
    prompt_tokens: int = 0
    finish_reason: str = "stop"


@dataclass(frozen=True)
class StreamFailure:
    kind: ProviderErrorKind
    message: str
    error: ProviderError | None = field(default=None, compare=False)

    @classmethod
    def from_error(cls, error: ProviderError) -> StreamFailure:
        return cls(kind=error.kind, message=error.message, error=error)


StreamEvent = Union[TextDelta, StreamDone, StreamFailure]


@dataclass
class StreamOptions:
    """Everything an adapter needs for one provider call.

    ``messages`` uses the neutral internal shape: ``{"role", "content"}`` where
    content is a string or a list of ``{"type": "text"}`` /
    ``{"type": "image", "media_type", "data"}`` blocks.
    """

    model: str
    messages: list[dict]
    system_prompt: str | None = None
    max_tokens: int = 4000
    temperature: float | None = None
    top_p: float | None = None
    top_k: int | None = None
    frequency_penalty: float | None = None
    presence_penalty: float | None = None
    stop_sequences: list[str] = field(default_factory=list)
    extra: dict = field(default_factory=dict)
