import asyncio
import json
import re
import unittest

from chat_bridge.errors import ProviderErrorKind
from chat_bridge.protocol import Envelope, FinalPayload, ProtocolEmitter, StreamTerminatedError
from chat_bridge.store.models import NO_PARENT
from chat_bridge.stream_events import StreamDone, StreamFailure, TextDelta


async def _events(*items):
    for item in items:
        yield item


def _user_wire() -> dict:
    return {
        "messageId": "m1",
        "parentMessageId": NO_PARENT,
        "conversationId": "c1",
        "sender": "User",
        "text": "Hello",
        "isCreatedByUser": True,
        "model": "x",
    }


def _final_payload() -> FinalPayload:
    return FinalPayload(
        conversation={"conversationId": "c1"},
        title="New Chat",
        request_message=_user_wire(),
        response_message={"messageId": "r1", "isCreatedByUser": False},
    )


class ProtocolEmitterTests(unittest.TestCase):
    def _emitter(self) -> ProtocolEmitter:
        return ProtocolEmitter(response_message_id="r1", conversation_id="c1")

    def _translate(self, emitter: ProtocolEmitter, *events, on_failure=None) -> list[Envelope]:
        async def on_done(done):
            return _final_payload()

        async def scenario():
            return [
                envelope
                async for envelope in emitter.translate(_events(*events), on_done=on_done, on_failure=on_failure)
            ]

        return asyncio.run(scenario())

    def test_step_id_format(self) -> None:
        self.assertRegex(self._emitter().step_id, re.compile(r"^step_[0-9a-f]{24}$"))

    def test_created_envelope_shape(self) -> None:
        envelope = self._emitter().created(_user_wire())

        self.assertEqual("message", envelope.event)
        self.assertTrue(envelope.data["created"])
        self.assertEqual(NO_PARENT, envelope.data["message"]["parentMessageId"])
        self.assertNotIn("model", envelope.data["message"])

    def test_success_sequence(self) -> None:
        emitter = self._emitter()

        envelopes = self._translate(emitter, TextDelta("Hel"), TextDelta("lo"), StreamDone(token_count=2))

        self.assertEqual("on_run_step", envelopes[0].data["event"])
        deltas = [e for e in envelopes if e.data.get("event") == "on_message_delta"]
        self.assertEqual(["Hel", "lo"], [d.data["data"]["delta"]["content"][0]["text"] for d in deltas])
        self.assertTrue(all(d.data["data"]["id"] == emitter.step_id for d in deltas))
        self.assertTrue(envelopes[-1].data["final"])
        self.assertEqual("New Chat", envelopes[-1].data["title"])
        self.assertEqual(4, len(envelopes))

    def test_failure_emits_single_error_and_nothing_after(self) -> None:
        emitter = self._emitter()
        failures = []

        async def on_failure(failure):
            failures.append(failure)

        envelopes = self._translate(
            emitter,
            TextDelta("partial"),
            StreamFailure(ProviderErrorKind.AUTHENTICATION, "bad key"),
            TextDelta("late"),
            StreamDone(),
            on_failure=on_failure,
        )

        self.assertEqual("error", envelopes[-1].event)
        self.assertEqual(
            {"error": True, "text": "bad key", "messageId": "r1", "conversationId": "c1"},
            envelopes[-1].data,
        )
        self.assertEqual(1, sum(1 for e in envelopes if e.event == "error"))
        self.assertFalse(any(e.data.get("final") for e in envelopes))
        self.assertEqual(1, len(failures))
        with self.assertRaises(StreamTerminatedError):
            emitter.delta("more")
        with self.assertRaises(StreamTerminatedError):
            emitter.final(_final_payload())

    def test_stream_ending_without_terminal_event_is_an_error(self) -> None:
        envelopes = self._translate(self._emitter(), TextDelta("x"))
        self.assertEqual("error", envelopes[-1].event)

    def test_no_run_step_without_deltas(self) -> None:
        envelopes = self._translate(self._emitter(), StreamDone())
        self.assertEqual(1, len(envelopes))
        self.assertTrue(envelopes[0].data["final"])

    def test_sse_framing(self) -> None:
        frame = self._emitter().delta("héllo").to_sse()

        self.assertTrue(frame.startswith("event: message\ndata: "))
        self.assertTrue(frame.endswith("\n\n"))
        payload = json.loads(frame.split("data: ", 1)[1])
        self.assertEqual("héllo", payload["data"]["delta"]["content"][0]["text"])


if __name__ == "__main__":
    unittest.main()
