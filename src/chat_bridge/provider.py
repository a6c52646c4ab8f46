from collections.abc import AsyncIterator
from enum import Enum
from typing import Protocol, runtime_checkable

from chat_bridge.stream_events import StreamEvent, StreamOptions


class ProviderKind(str, Enum):
    ANTHROPIC = "anthropic"
    OPENAI = "openai"

    @property
    def endpoint(self) -> str:
        """Endpoint name the chat client uses for this provider."""
        return "openAI" if self is ProviderKind.OPENAI else "anthropic"

    @classmethod
    def from_name(cls, name: str) -> "ProviderKind":
        lowered = name.strip().lower()
        for kind in cls:
            if kind.value == lowered:
                return kind
        raise ValueError(f"Unknown provider: {name!r}. Supported: 'anthropic', 'openai'")


@runtime_checkable
class LLMProvider(Protocol):
    def stream_response(self, options: StreamOptions) -> AsyncIterator[StreamEvent]:
        """Stream one response as normalized events.

        Yields ``TextDelta`` zero or more times, then exactly one ``StreamDone``,
        or a single ``StreamFailure`` that ends the sequence early. Provider
        exceptions never escape.
        """
        ...

    async def create_message(
        self,
        model: str,
        max_tokens: int,
        temperature: float,
        system_prompt: str,
        messages: list[dict],
    ) -> str:
        """Non-streaming message creation (used for title generation)."""
        ...


def create_provider(kind: ProviderKind, api_key: str) -> LLMProvider:
    """Factory: create an LLMProvider for a provider kind."""
    if kind is ProviderKind.ANTHROPIC:
        from chat_bridge.providers.anthropic_provider import AnthropicProvider
        return AnthropicProvider(api_key)
    if kind is ProviderKind.OPENAI:
        from chat_bridge.providers.openai_provider import OpenAIProvider
        return OpenAIProvider(api_key)
    raise ValueError(f"Unknown provider: {kind!r}. Supported: 'anthropic', 'openai'")
