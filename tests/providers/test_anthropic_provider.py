import asyncio
import unittest
from types import SimpleNamespace

import anthropic
import httpx
from tenacity import wait_none

from chat_bridge.errors import ProviderError, ProviderErrorKind
from chat_bridge.providers.anthropic_provider import (
    _RETRYABLE,
    AnthropicProvider,
    _to_anthropic_messages,
)
from chat_bridge.providers.common import default_retry_kwargs
from chat_bridge.stream_events import StreamDone, StreamFailure, StreamOptions, TextDelta

_REQUEST = httpx.Request("POST", "https://api.anthropic.com/v1/messages")


def _status_error(cls, status: int):
    return cls(f"status {status}", response=httpx.Response(status, request=_REQUEST), body=None)


class _FakeStream:
    def __init__(self, events: list[object], fail_after: Exception | None = None):
        self._events = events
        self._fail_after = fail_after
        self.closed = False

    def __aiter__(self):
        self._iter = iter(self._events)
        return self

    async def __anext__(self):
        try:
            return next(self._iter)
        except StopIteration:
            if self._fail_after is not None:
                raise self._fail_after
            raise StopAsyncIteration

    async def close(self):
        self.closed = True


class _FakeMessages:
    def __init__(self, outcomes: list[object]):
        self._outcomes = list(outcomes)
        self.calls: list[dict] = []

    async def create(self, **kwargs):
        self.calls.append(kwargs)
        outcome = self._outcomes.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


def _text_events(*chunks: str) -> list[object]:
    events: list[object] = [
        SimpleNamespace(type="message_start", message=SimpleNamespace(usage=SimpleNamespace(input_tokens=10))),
    ]
    for chunk in chunks:
        events.append(
            SimpleNamespace(type="content_block_delta", delta=SimpleNamespace(type="text_delta", text=chunk))
        )
    events.append(
        SimpleNamespace(
            type="message_delta",
            delta=SimpleNamespace(stop_reason="end_turn"),
            usage=SimpleNamespace(output_tokens=5),
        )
    )
    return events


async def _collect(stream) -> list[object]:
    return [event async for event in stream]


class AnthropicProviderTests(unittest.TestCase):
    def _make_provider(self, *outcomes: object) -> AnthropicProvider:
        provider = AnthropicProvider.__new__(AnthropicProvider)
        provider._client = SimpleNamespace(messages=_FakeMessages(list(outcomes)))
        provider._retry_kwargs = {**default_retry_kwargs(_RETRYABLE), "wait": wait_none()}
        return provider

    def _options(self, **overrides) -> StreamOptions:
        values = {"model": "claude-test", "messages": [{"role": "user", "content": "hi"}]}
        values.update(overrides)
        return StreamOptions(**values)

    def test_stream_text_then_done(self) -> None:
        stream = _FakeStream(_text_events("Hel", "lo"))
        provider = self._make_provider(stream)

        events = asyncio.run(_collect(provider.stream_response(self._options())))

        self.assertEqual([TextDelta("Hel"), TextDelta("lo")], events[:2])
        self.assertEqual(StreamDone(token_count=5, prompt_tokens=10, finish_reason="stop"), events[2])
        self.assertEqual(3, len(events))
        self.assertTrue(stream.closed)

    def test_request_drops_penalties_and_keeps_top_k(self) -> None:
        provider = self._make_provider(_FakeStream(_text_events("x")))
        options = self._options(
            system_prompt="Be brief.",
            temperature=0.4,
            top_k=20,
            frequency_penalty=0.5,
            presence_penalty=0.5,
            stop_sequences=["END"],
        )

        asyncio.run(_collect(provider.stream_response(options)))

        call = provider._client.messages.calls[0]
        self.assertEqual("Be brief.", call["system"])
        self.assertEqual(20, call["top_k"])
        self.assertEqual(["END"], call["stop_sequences"])
        self.assertTrue(call["stream"])
        self.assertNotIn("frequency_penalty", call)
        self.assertNotIn("presence_penalty", call)

    def test_authentication_failure_becomes_single_failure_event(self) -> None:
        provider = self._make_provider(_status_error(anthropic.AuthenticationError, 401))

        events = asyncio.run(_collect(provider.stream_response(self._options())))

        self.assertEqual(1, len(events))
        self.assertIsInstance(events[0], StreamFailure)
        self.assertEqual(ProviderErrorKind.AUTHENTICATION, events[0].kind)
        self.assertIsInstance(events[0].error, ProviderError)
        self.assertEqual(ProviderErrorKind.AUTHENTICATION, events[0].error.kind)
        self.assertIsInstance(events[0].error.__cause__, anthropic.AuthenticationError)

    def test_rate_limit_on_open_is_retried(self) -> None:
        provider = self._make_provider(
            _status_error(anthropic.RateLimitError, 429),
            _FakeStream(_text_events("ok")),
        )

        events = asyncio.run(_collect(provider.stream_response(self._options())))

        self.assertEqual(2, len(provider._client.messages.calls))
        self.assertIsInstance(events[-1], StreamDone)

    def test_failure_mid_stream_is_not_retried(self) -> None:
        stream = _FakeStream(
            _text_events("partial")[:2],
            fail_after=anthropic.APIConnectionError(request=_REQUEST),
        )
        provider = self._make_provider(stream)

        events = asyncio.run(_collect(provider.stream_response(self._options())))

        self.assertEqual(TextDelta("partial"), events[0])
        self.assertIsInstance(events[1], StreamFailure)
        self.assertEqual(ProviderErrorKind.NETWORK, events[1].kind)
        self.assertEqual(1, len(provider._client.messages.calls))
        self.assertTrue(stream.closed)

    def test_message_conversion_merges_roles_and_renders_images(self) -> None:
        messages = [
            {"role": "user", "content": "first"},
            {"role": "user", "content": [
                {"type": "text", "text": "look"},
                {"type": "image", "media_type": "image/png", "data": "AAAA"},
            ]},
            {"role": "assistant", "content": "   "},
            {"role": "system", "content": "ignored"},
        ]

        converted = _to_anthropic_messages(messages)

        self.assertEqual(1, len(converted))
        blocks = converted[0]["content"]
        self.assertEqual("first", blocks[0]["text"])
        self.assertEqual(
            {"type": "image", "source": {"type": "base64", "media_type": "image/png", "data": "AAAA"}},
            blocks[2],
        )

    def test_create_message(self) -> None:
        response = SimpleNamespace(content=[SimpleNamespace(type="text", text="Trip Planning")])
        provider = self._make_provider(response)

        result = asyncio.run(
            provider.create_message("haiku", 32, 0.3, "sys", [{"role": "user", "content": "title?"}])
        )

        self.assertEqual("Trip Planning", result)
        self.assertEqual(32, provider._client.messages.calls[0]["max_tokens"])


if __name__ == "__main__":
    unittest.main()
