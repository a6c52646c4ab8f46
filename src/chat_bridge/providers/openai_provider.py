from collections.abc import AsyncIterator

import openai
from loguru import logger
from tenacity import AsyncRetrying, retry

from chat_bridge.errors import ProviderErrorKind
from chat_bridge.providers.common import client_timeout, default_retry_kwargs, has_content, to_provider_error
from chat_bridge.stream_events import StreamDone, StreamEvent, StreamFailure, StreamOptions, TextDelta

_RETRYABLE = (
    openai.RateLimitError,
    openai.APIConnectionError,
    openai.APITimeoutError,
)

_ERROR_TABLE = [
    ((openai.AuthenticationError, openai.PermissionDeniedError), ProviderErrorKind.AUTHENTICATION),
    ((openai.RateLimitError,), ProviderErrorKind.RATE_LIMIT),
    (
        (openai.BadRequestError, openai.NotFoundError, openai.UnprocessableEntityError),
        ProviderErrorKind.BAD_REQUEST,
    ),
    ((openai.APIConnectionError,), ProviderErrorKind.NETWORK),
]


def _to_openai_content(content: str | list[dict]) -> str | list[dict]:
    if isinstance(content, str):
        return content

    has_image = any(block.get("type") == "image" for block in content)
    if not has_image:
        return "\n".join(block["text"] for block in content if block.get("type") == "text")

    # Vision requests: text parts first, then images.
    parts: list[dict] = [
        {"type": "text", "text": block["text"]}
        for block in content
        if block.get("type") == "text"
    ]
    for block in content:
        if block.get("type") == "image":
            parts.append({
                "type": "image_url",
                "image_url": {
                    "url": f"data:{block['media_type']};base64,{block['data']}",
                    "detail": block.get("detail", "auto"),
                },
            })
    return parts


def _to_openai_messages(system_prompt: str | None, messages: list[dict]) -> list[dict]:
    """Convert neutral messages to OpenAI chat format."""
    out: list[dict] = []

    if system_prompt:
        out.append({"role": "system", "content": system_prompt})

    for msg in messages:
        if not has_content(msg["content"]):
            continue
        out.append({"role": msg["role"], "content": _to_openai_content(msg["content"])})

    return out


class OpenAIProvider:
    def __init__(self, api_key: str):
        self._client = openai.AsyncOpenAI(api_key=api_key, timeout=client_timeout())
        self._retry_kwargs = default_retry_kwargs(_RETRYABLE)

    def _build_request(self, options: StreamOptions) -> dict:
        kwargs: dict = dict(
            model=options.model,
            max_tokens=options.max_tokens,
            messages=_to_openai_messages(options.system_prompt, options.messages),
            stream=True,
            stream_options={"include_usage": True},
        )
        if options.temperature is not None:
            kwargs["temperature"] = options.temperature
        if options.top_p is not None:
            kwargs["top_p"] = options.top_p
        if options.frequency_penalty is not None:
            kwargs["frequency_penalty"] = options.frequency_penalty
        if options.presence_penalty is not None:
            kwargs["presence_penalty"] = options.presence_penalty
        if options.stop_sequences:
            kwargs["stop"] = list(options.stop_sequences)
        kwargs.update(options.extra)
        return kwargs

    async def _open_stream(self, kwargs: dict):
        async for attempt in AsyncRetrying(**self._retry_kwargs):
            with attempt:
                return await self._client.chat.completions.create(**kwargs)

    async def stream_response(self, options: StreamOptions) -> AsyncIterator[StreamEvent]:
        kwargs = self._build_request(options)
        logger.debug(
            f"API request: provider=openai, model={options.model}, "
            f"max_tokens={options.max_tokens}, messages={len(kwargs['messages'])}, "
            f"vision={any(isinstance(m['content'], list) for m in kwargs['messages'])}"
        )

        try:
            stream = await self._open_stream(kwargs)
        except Exception as ex:
            error = to_provider_error(ex, _ERROR_TABLE, "OpenAI")
            logger.error(f"OpenAI stream failed to open: kind={error.kind.value}, error={ex}")
            yield StreamFailure.from_error(error)
            return

        prompt_tokens = 0
        completion_tokens = 0
        finish_reason: str | None = None
        try:
            async for chunk in stream:
                # Usage arrives on a final chunk with no choices.
                if chunk.usage is not None:
                    completion_tokens = chunk.usage.completion_tokens or 0
                    prompt_tokens = chunk.usage.prompt_tokens or 0

                choice = chunk.choices[0] if chunk.choices else None
                if choice is None:
                    continue
                if choice.finish_reason:
                    finish_reason = choice.finish_reason
                if choice.delta is not None and choice.delta.content:
                    yield TextDelta(choice.delta.content)
        except Exception as ex:
            error = to_provider_error(ex, _ERROR_TABLE, "OpenAI")
            logger.error(f"OpenAI stream interrupted: kind={error.kind.value}, error={ex}")
            yield StreamFailure.from_error(error)
            return
        finally:
            await stream.close()

        logger.debug(
            f"API response: finish_reason={finish_reason}, "
            f"prompt_tokens={prompt_tokens}, completion_tokens={completion_tokens}"
        )
        yield StreamDone(
            token_count=completion_tokens,
            prompt_tokens=prompt_tokens,
            finish_reason=finish_reason or "stop",
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
        oai_messages = _to_openai_messages(system_prompt, messages)
        logger.debug(f"Title API request: model={model}, messages={len(oai_messages)}")
        response = await self._client.chat.completions.create(
            model=model,
            max_tokens=max_tokens,
            temperature=temperature,
            messages=oai_messages,
        )
        text = response.choices[0].message.content or ""
        logger.debug(f"Title API response: len={len(text)}")
        return text
