from collections.abc import AsyncIterator

import anthropic
from loguru import logger
from tenacity import AsyncRetrying, retry

from chat_bridge.errors import ProviderErrorKind
from chat_bridge.providers.common import (
    client_timeout,
    default_retry_kwargs,
    has_content,
    merge_consecutive_roles,
    to_provider_error,
)
from chat_bridge.stream_events import StreamDone, StreamEvent, StreamFailure, StreamOptions, TextDelta

_RETRYABLE = (
    anthropic.RateLimitError,
    anthropic.APIConnectionError,
    anthropic.APITimeoutError,
)

_ERROR_TABLE = [
    ((anthropic.AuthenticationError, anthropic.PermissionDeniedError), ProviderErrorKind.AUTHENTICATION),
    ((anthropic.RateLimitError,), ProviderErrorKind.RATE_LIMIT),
    (
        (anthropic.BadRequestError, anthropic.NotFoundError, anthropic.UnprocessableEntityError),
        ProviderErrorKind.BAD_REQUEST,
    ),
    ((anthropic.APIConnectionError,), ProviderErrorKind.NETWORK),
]

# Map Anthropic stop reasons to the finish reasons the chat client expects.
_FINISH_REASON_MAP = {
    "end_turn": "stop",
    "stop_sequence": "stop",
    "max_tokens": "length",
}


def _to_anthropic_content(content: str | list[dict]) -> str | list[dict]:
    if isinstance(content, str):
        return content
    blocks: list[dict] = []
    for block in content:
        if block.get("type") == "image":
            blocks.append({
                "type": "image",
                "source": {
                    "type": "base64",
                    "media_type": block["media_type"],
                    "data": block["data"],
                },
            })
        elif block.get("type") == "text":
            blocks.append({"type": "text", "text": block["text"]})
    return blocks


def _to_anthropic_messages(messages: list[dict]) -> list[dict]:
    """Convert neutral messages to Anthropic's alternating user/assistant shape."""
    usable = [m for m in messages if m["role"] in ("user", "assistant") and has_content(m["content"])]
    return [
        {"role": m["role"], "content": _to_anthropic_content(m["content"])}
        for m in merge_consecutive_roles(usable)
    ]


class AnthropicProvider:
    def __init__(self, api_key: str):
        self._client = anthropic.AsyncAnthropic(api_key=api_key, timeout=client_timeout())
        self._retry_kwargs = default_retry_kwargs(_RETRYABLE)

    def _build_request(self, options: StreamOptions) -> dict:
        kwargs: dict = dict(
            model=options.model,
            max_tokens=options.max_tokens,
            messages=_to_anthropic_messages(options.messages),
            stream=True,
        )
        if options.system_prompt:
            kwargs["system"] = options.system_prompt
        if options.temperature is not None:
            kwargs["temperature"] = options.temperature
        if options.top_p is not None:
            kwargs["top_p"] = options.top_p
        if options.top_k is not None:
            kwargs["top_k"] = options.top_k
        if options.stop_sequences:
            kwargs["stop_sequences"] = list(options.stop_sequences)
        kwargs.update(options.extra)
        return kwargs

    async def _open_stream(self, kwargs: dict):
        async for attempt in AsyncRetrying(**self._retry_kwargs):
            with attempt:
                return await self._client.messages.create(**kwargs)

    async def stream_response(self, options: StreamOptions) -> AsyncIterator[StreamEvent]:
        kwargs = self._build_request(options)
        logger.debug(
            f"API request: provider=anthropic, model={options.model}, "
            f"max_tokens={options.max_tokens}, messages={len(kwargs['messages'])}"
        )

        try:
            stream = await self._open_stream(kwargs)
        except Exception as ex:
            error = to_provider_error(ex, _ERROR_TABLE, "Anthropic")
            logger.error(f"Anthropic stream failed to open: kind={error.kind.value}, error={ex}")
            yield StreamFailure.from_error(error)
            return

        prompt_tokens = 0
        output_tokens = 0
        stop_reason: str | None = None
        try:
            async for event in stream:
                if event.type == "message_start":
                    usage = getattr(event.message, "usage", None)
                    if usage is not None:
                        prompt_tokens = usage.input_tokens or 0
                elif event.type == "content_block_delta":
                    if event.delta.type == "text_delta" and event.delta.text:
                        yield TextDelta(event.delta.text)
                elif event.type == "message_delta":
                    usage = getattr(event, "usage", None)
                    if usage is not None:
                        output_tokens = usage.output_tokens or 0
                    stop_reason = getattr(event.delta, "stop_reason", None) or stop_reason
        except Exception as ex:
            error = to_provider_error(ex, _ERROR_TABLE, "Anthropic")
            logger.error(f"Anthropic stream interrupted: kind={error.kind.value}, error={ex}")
            yield StreamFailure.from_error(error)
            return
        finally:
            await stream.close()

        logger.debug(
            f"API response: stop_reason={stop_reason}, "
            f"input_tokens={prompt_tokens}, output_tokens={output_tokens}"
        )
        yield StreamDone(
            token_count=output_tokens,
            prompt_tokens=prompt_tokens,
            finish_reason=_FINISH_REASON_MAP.get(stop_reason or "end_turn", "stop"),
        )

    @retry(**default_retry_kwargs(_RETRYABLE))
    async def create_message(
        self,
        model: str,
        max_tokens: int,
        temperature: float,
        system_prompt: str,
        messages: list[dict],
    ) -> str:
        """Non-streaming message creation (used for title generation)."""
        logger.debug(f"Title API request: model={model}, messages={len(messages)}")
        response = await self._client.messages.create(
            model=model,
            max_tokens=max_tokens,
            temperature=temperature,
            system=system_prompt,
            messages=_to_anthropic_messages(messages),
        )
        block = response.content[0] if response.content else None
        if block is None or block.type != "text":
            logger.warning(f"Unexpected title response block: {getattr(block, 'type', None)}")
            return ""
        return block.text
