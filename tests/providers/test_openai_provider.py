import asyncio
import unittest
from types import SimpleNamespace

import httpx
import openai
from tenacity import wait_none

from chat_bridge.errors import ProviderError, ProviderErrorKind
from chat_bridge.providers.common import default_retry_kwargs
from chat_bridge.providers.openai_provider import _RETRYABLE, OpenAIProvider, _to_openai_messages
from chat_bridge.stream_events import StreamDone, StreamFailure, StreamOptions, TextDelta

_REQUEST = httpx.Request("POST", "https://api.openai.com/v1/chat/completions")


class _FakeStream:
    def __init__(self, chunks: list[object]):
        self._chunks = chunks
        self.closed = False

    def __aiter__(self):
        self._iter = iter(self._chunks)
        return self

    async def __anext__(self):
        try:
            return next(self._iter)
        except StopIteration:
            raise StopAsyncIteration

    async def close(self):
        self.closed = True


class _FakeCompletions:
    def __init__(self, outcomes: list[object]):
        self._outcomes = list(outcomes)
        self.calls: list[dict] = []

    async def create(self, **kwargs):
        self.calls.append(kwargs)
        outcome = self._outcomes.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


def _chunk(content: str | None = None, finish_reason: str | None = None):
    return SimpleNamespace(
        usage=None,
        choices=[SimpleNamespace(delta=SimpleNamespace(content=content), finish_reason=finish_reason)],
    )


def _usage_chunk(prompt: int, completion: int):
    return SimpleNamespace(
        usage=SimpleNamespace(prompt_tokens=prompt, completion_tokens=completion),
        choices=[],
    )


async def _collect(stream) -> list[object]:
    return [event async for event in stream]


class OpenAIProviderTests(unittest.TestCase):
    def _make_provider(self, *outcomes: object) -> OpenAIProvider:
        provider = OpenAIProvider.__new__(OpenAIProvider)
        provider._client = SimpleNamespace(
            chat=SimpleNamespace(completions=_FakeCompletions(list(outcomes)))
        )
        provider._retry_kwargs = {**default_retry_kwargs(_RETRYABLE), "wait": wait_none()}
        return provider

    def _options(self, **overrides) -> StreamOptions:
        values = {"model": "gpt-test", "messages": [{"role": "user", "content": "hi"}]}
        values.update(overrides)
        return StreamOptions(**values)

    def test_stream_text_then_done_with_usage(self) -> None:
        stream = _FakeStream([_chunk("Hel"), _chunk("lo"), _chunk(None, "length"), _usage_chunk(7, 2)])
        provider = self._make_provider(stream)

        events = asyncio.run(_collect(provider.stream_response(self._options())))

        self.assertEqual(
            [
                TextDelta("Hel"),
                TextDelta("lo"),
                StreamDone(token_count=2, prompt_tokens=7, finish_reason="length"),
            ],
            events,
        )
        self.assertTrue(stream.closed)

    def test_request_drops_top_k_and_prepends_system(self) -> None:
        provider = self._make_provider(_FakeStream([_chunk("x", "stop")]))
        options = self._options(system_prompt="Be brief.", top_k=20, presence_penalty=0.1, stop_sequences=["END"])

        asyncio.run(_collect(provider.stream_response(options)))

        call = provider._client.chat.completions.calls[0]
        self.assertNotIn("top_k", call)
        self.assertEqual(0.1, call["presence_penalty"])
        self.assertEqual(["END"], call["stop"])
        self.assertEqual({"include_usage": True}, call["stream_options"])
        self.assertEqual({"role": "system", "content": "Be brief."}, call["messages"][0])

    def test_bad_request_maps_to_taxonomy(self) -> None:
        error = openai.BadRequestError("bad", response=httpx.Response(400, request=_REQUEST), body=None)
        provider = self._make_provider(error)

        events = asyncio.run(_collect(provider.stream_response(self._options())))

        self.assertEqual(1, len(events))
        self.assertIsInstance(events[0], StreamFailure)
        self.assertEqual(ProviderErrorKind.BAD_REQUEST, events[0].kind)
        self.assertIn("OpenAI API error", events[0].message)
        self.assertIsInstance(events[0].error, ProviderError)
        self.assertEqual(502, events[0].error.status_code)
        self.assertIs(error, events[0].error.__cause__)

    def test_connection_error_retried_then_reported(self) -> None:
        provider = self._make_provider(*[openai.APIConnectionError(request=_REQUEST) for _ in range(3)])

        events = asyncio.run(_collect(provider.stream_response(self._options())))

        self.assertEqual(3, len(provider._client.chat.completions.calls))
        self.assertEqual(ProviderErrorKind.NETWORK, events[0].kind)

    def test_vision_content_uses_data_urls(self) -> None:
        converted = _to_openai_messages(None, [
            {"role": "user", "content": [
                {"type": "text", "text": "what is this"},
                {"type": "image", "media_type": "image/jpeg", "data": "BBBB"},
            ]},
        ])

        parts = converted[0]["content"]
        self.assertEqual({"type": "text", "text": "what is this"}, parts[0])
        self.assertEqual("data:image/jpeg;base64,BBBB", parts[1]["image_url"]["url"])
        self.assertEqual("auto", parts[1]["image_url"]["detail"])

    def test_text_blocks_collapse_to_string(self) -> None:
        converted = _to_openai_messages(None, [
            {"role": "user", "content": [{"type": "text", "text": "a"}, {"type": "text", "text": "b"}]},
        ])
        self.assertEqual("a\nb", converted[0]["content"])

    def test_create_message(self) -> None:
        response = SimpleNamespace(choices=[SimpleNamespace(message=SimpleNamespace(content="Weekend Plans"))])
        provider = self._make_provider(response)

        result = asyncio.run(
            provider.create_message("nano", 32, 0.3, "sys", [{"role": "user", "content": "title?"}])
        )

        self.assertEqual("Weekend Plans", result)


if __name__ == "__main__":
    unittest.main()
