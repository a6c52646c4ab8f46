"""Client-facing wire protocol: SSE envelopes in the shape the chat client expects.

The emitter only translates. It never persists anything and never reorders:
each input event maps to its envelopes in arrival order, and once a terminal
envelope (``final`` or ``error``) has gone out nothing else is emitted.
"""

from __future__ import annotations

import json
from collections.abc import AsyncIterator, Awaitable, Callable
from dataclasses import dataclass
from typing import Any
from uuid import uuid4

from chat_bridge.errors import ProviderErrorKind
from chat_bridge.store.models import NO_PARENT
from chat_bridge.stream_events import StreamDone, StreamEvent, StreamFailure, TextDelta


@dataclass(frozen=True)
class Envelope:
    event: str
    data: dict

    def to_sse(self) -> str:
        return f"event: {self.event}\ndata: {json.dumps(self.data, ensure_ascii=False)}\n\n"


@dataclass(frozen=True)
class FinalPayload:
    conversation: dict
    title: str
    request_message: dict
    response_message: dict


def new_step_id() -> str:
    return f"step_{uuid4().hex[:24]}"


class StreamTerminatedError(RuntimeError):
    pass


class ProtocolEmitter:
    def __init__(
        self,
        *,
        response_message_id: str,
        conversation_id: str,
        step_id: str | None = None,
    ):
        self.response_message_id = response_message_id
        self.conversation_id = conversation_id
        self.step_id = step_id or new_step_id()
        self._run_step_sent = False
        self._terminated = False

    @property
    def terminated(self) -> bool:
        return self._terminated

    def created(self, user_message: dict) -> Envelope:
        self._ensure_open()
        return Envelope(
            "message",
            {
                "message": {
                    "messageId": user_message["messageId"],
                    "parentMessageId": user_message.get("parentMessageId") or NO_PARENT,
                    "conversationId": user_message["conversationId"],
                    "sender": user_message["sender"],
                    "text": user_message["text"],
                    "isCreatedByUser": user_message["isCreatedByUser"],
                },
                "created": True,
            },
        )

    def run_step(self) -> Envelope:
        self._ensure_open()
        self._run_step_sent = True
        return Envelope(
            "message",
            {
                "event": "on_run_step",
                "data": {
                    "id": self.step_id,
                    "runId": str(uuid4()),
                    "type": "message_creation",
                    "index": 0,
                    "stepDetails": {
                        "type": "message_creation",
                        "message_creation": {"message_id": self.response_message_id},
                    },
                },
            },
        )

    def delta(self, text: str) -> Envelope:
        self._ensure_open()
        return Envelope(
            "message",
            {
                "event": "on_message_delta",
                "data": {
                    "id": self.step_id,
                    "delta": {"content": [{"type": "text", "text": text}]},
                },
            },
        )

    def final(self, payload: FinalPayload) -> Envelope:
        self._ensure_open()
        self._terminated = True
        return Envelope(
            "message",
            {
                "final": True,
                "conversation": payload.conversation,
                "title": payload.title,
                "requestMessage": payload.request_message,
                "responseMessage": payload.response_message,
            },
        )

    def error(self, text: str) -> Envelope:
        self._ensure_open()
        self._terminated = True
        return Envelope(
            "error",
            {
                "error": True,
                "text": text,
                "messageId": self.response_message_id,
                "conversationId": self.conversation_id,
            },
        )

    async def translate(
        self,
        events: AsyncIterator[StreamEvent],
        *,
        on_done: Callable[[StreamDone], Awaitable[FinalPayload]],
        on_failure: Callable[[StreamFailure], Awaitable[Any]] | None = None,
    ) -> AsyncIterator[Envelope]:
        """Translate normalized events into envelopes.

        ``on_done`` runs once the terminal ``StreamDone`` arrives and supplies
        the final envelope's content; ``on_failure`` runs before the error
        envelope goes out.
        """
        async for event in events:
            if isinstance(event, TextDelta):
                if not self._run_step_sent:
                    yield self.run_step()
                yield self.delta(event.text)
            elif isinstance(event, StreamDone):
                payload = await on_done(event)
                yield self.final(payload)
                return
            elif isinstance(event, StreamFailure):
                if on_failure is not None:
                    await on_failure(event)
                yield self.error(event.message)
                return

        failure = StreamFailure(kind=ProviderErrorKind.UNKNOWN, message="Stream ended unexpectedly")
        if on_failure is not None:
            await on_failure(failure)
        yield self.error(failure.message)

    def _ensure_open(self) -> None:
        if self._terminated:
            raise StreamTerminatedError("stream already terminated")
