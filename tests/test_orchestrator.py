#
# Copyright (c) 2024–2025, Daily
#
# SPDX-License-Identifier: BSD 2-Clause License
#

import asyncio
import unittest

from turnscribe.conversation.orchestrator import (
    ConversationOrchestrator,
    ConversationStatus,
    build_session_update,
)
from turnscribe.conversation.params import ConversationParams
from turnscribe.tests.utils import RecordingSink, VirtualClock, VirtualScheduler
from turnscribe.transcript.text import NOT_TRANSCRIBED_TEXT


def speech_started(item_id):
    return {"type": "input_audio_buffer.speech_started", "item_id": item_id}


def speech_stopped(item_id):
    return {"type": "input_audio_buffer.speech_stopped", "item_id": item_id}


def committed(item_id):
    return {"type": "input_audio_buffer.committed", "item_id": item_id}


def completed(item_id, transcript):
    return {
        "type": "conversation.item.input_audio_transcription.completed",
        "item_id": item_id,
        "transcript": transcript,
    }


def audio_delta(item_id, delta):
    return {"type": "response.output_audio_transcript.delta", "item_id": item_id, "delta": delta}


def audio_done(item_id, transcript):
    return {
        "type": "response.output_audio_transcript.done",
        "item_id": item_id,
        "transcript": transcript,
    }


def response_done(item_id, transcript):
    return {
        "type": "response.done",
        "response": {
            "id": "resp_1",
            "output": [
                {
                    "id": item_id,
                    "role": "assistant",
                    "content": [{"type": "output_audio", "transcript": transcript}],
                }
            ],
        },
    }


class TestConversationOrchestrator(unittest.TestCase):
    def setUp(self):
        self.clock = VirtualClock(start=1000)
        self.scheduler = VirtualScheduler(self.clock)
        self.sink = RecordingSink()
        self.orchestrator = ConversationOrchestrator(
            params=ConversationParams(session_id="sess_1"),
            sink=self.sink,
            clock=self.clock,
            scheduler=self.scheduler,
        )
        self.events = []
        self.orchestrator.subscribe(self.events.append)

    def transcript_events(self):
        return [
            (e["type"], e["role"], e["text"]) for e in self.events if e["type"] in ("partial", "final")
        ]

    def run_late_transcription_turn(self):
        o = self.orchestrator
        o.process_event(speech_started("u1"))
        self.clock.advance(500)
        o.process_event(speech_stopped("u1"))
        o.process_event(committed("u1"))
        self.clock.advance(100)
        o.process_event({"type": "response.created", "response": {"id": "resp_1"}})
        o.process_event(audio_delta("a1", "Under"))
        self.clock.advance(200)
        o.process_event(completed("u1", "I think the patient has asthma"))
        o.process_event(audio_done("a1", "Understood."))
        o.process_event(response_done("a1", "Understood."))
        o.process_event(audio_done("a1", "Understood."))

    def test_late_user_transcription_keeps_order(self):
        """The user turn is ordered before an assistant reply that started first."""
        self.run_late_transcription_turn()

        self.assertEqual(
            self.transcript_events(),
            [
                ("final", "user", "I think the patient has asthma"),
                ("partial", "assistant", "Under"),
                ("final", "assistant", "Understood."),
            ],
        )
        messages = self.orchestrator.messages
        self.assertEqual([(m.role, m.sequence_id) for m in messages], [("user", 1), ("assistant", 2)])
        self.assertFalse(any(m.pending for m in messages))

        self.assertEqual(
            [(c.session_id, c.role, c.item_id) for c in self.sink.calls],
            [("sess_1", "user", "u1"), ("sess_1", "assistant", "a1")],
        )

    def test_response_before_transcript_without_item_ids(self):
        """Deltas without an item id and a completion with one give a single final."""
        o = self.orchestrator
        o.process_event({"kind": "speech_stopped"})
        o.process_event({"kind": "response_created", "response_id": "r1"})
        o.process_event({"kind": "audio_committed"})
        o.process_event({"kind": "transcription_delta", "delta": "Hello"})
        o.process_event({"kind": "transcription_delta", "delta": " there"})
        o.process_event(
            {"kind": "transcription_completed", "item_id": "a1", "transcript": "Hello there"}
        )

        finals = [(e["role"], e["text"], e["sequence_id"]) for e in self.events if e["type"] == "final"]
        self.assertEqual(finals, [("user", "Hello there", 1)])
        self.assertEqual([(m.role, m.text, m.sequence_id) for m in o.messages], [("user", "Hello there", 1)])
        self.assertEqual([(c.role, c.item_id) for c in self.sink.calls], [("user", "a1")])
        self.assertEqual(self.scheduler.pending, 0)

    def test_conversation_turn_without_user_item_ids(self):
        """A user turn named only by its completion is ordered and relayed once."""
        o = self.orchestrator
        o.process_event({"kind": "speech_started"})
        self.clock.advance(400)
        o.process_event({"kind": "speech_stopped"})
        o.process_event({"kind": "transcription_delta", "delta": "I think"})
        o.process_event({"kind": "transcription_delta", "delta": " the patient has asthma"})
        self.clock.advance(100)
        o.process_event({"kind": "response_created", "response_id": "r1"})
        o.process_event({"kind": "response_delta", "item_id": "resp_item_1", "delta": "Understood."})
        o.process_event(
            {
                "kind": "transcription_completed",
                "item_id": "a1",
                "transcript": "I think the patient has asthma",
            }
        )
        o.process_event({"kind": "response_done", "item_id": "resp_item_1", "text": "Understood."})

        finals = [(e["role"], e["text"], e["sequence_id"]) for e in self.events if e["type"] == "final"]
        self.assertEqual(
            finals,
            [("user", "I think the patient has asthma", 1), ("assistant", "Understood.", 2)],
        )
        self.assertEqual(
            [(m.role, m.text, m.sequence_id) for m in o.messages],
            [("user", "I think the patient has asthma", 1), ("assistant", "Understood.", 2)],
        )
        self.assertEqual(len([c for c in self.sink.calls if c.item_id == "a1"]), 1)
        self.assertEqual(
            [(c.role, c.item_id, c.timestamp) for c in self.sink.calls],
            [("user", "a1", 1000), ("assistant", "resp_item_1", 1500)],
        )

    def test_duplicate_completion_after_next_turn_relayed_once(self):
        o = self.orchestrator
        o.process_event(speech_started("u1"))
        o.process_event(completed("u1", "Hi"))
        o.process_event(speech_started("u2"))
        o.process_event(completed("u1", "Hi"))

        self.assertEqual([(c.role, c.item_id) for c in self.sink.calls], [("user", "u1")])
        self.assertEqual([m.text for m in o.messages if m.role == "user"], ["Hi"])

    def test_silence_threshold_update(self):
        """A finalized user turn produces a silence threshold recommendation."""
        thresholds = []

        @self.orchestrator.event_handler("on_silence_threshold_update")
        def on_silence_threshold_update(orchestrator, silence_ms):
            thresholds.append(silence_ms)

        self.run_late_transcription_turn()
        self.assertEqual(thresholds, [900])
        self.assertEqual(self.orchestrator.snapshot().silence_threshold_ms, 900)
        self.assertEqual(
            build_session_update(900),
            {
                "type": "session.update",
                "session": {"turn_detection": {"type": "server_vad", "silence_duration_ms": 900}},
            },
        )

    def test_adaptive_patience_disabled(self):
        orchestrator = ConversationOrchestrator(
            params=ConversationParams(adaptive_patience_enabled=False),
            clock=self.clock,
            scheduler=self.scheduler,
        )
        thresholds = []

        @orchestrator.event_handler("on_silence_threshold_update")
        def on_silence_threshold_update(orchestrator, silence_ms):
            thresholds.append(silence_ms)

        orchestrator.process_event(speech_started("u1"))
        orchestrator.process_event(completed("u1", "Hello."))
        self.assertEqual(thresholds, [])

    def test_snapshot(self):
        o = self.orchestrator
        o.process_event({"type": "session.created", "session": {"id": "rt_1"}})
        o.process_event(speech_started("u1"))
        o.process_event(
            {
                "type": "conversation.item.input_audio_transcription.delta",
                "item_id": "u1",
                "delta": "I need",
            }
        )

        snapshot = o.snapshot()
        self.assertEqual(snapshot.status, ConversationStatus.CONNECTED)
        self.assertEqual(snapshot.session_id, "sess_1")
        self.assertEqual(snapshot.realtime_session_id, "rt_1")
        self.assertEqual(snapshot.user_partial, "I need")
        self.assertEqual(snapshot.assistant_partial, "")
        self.assertEqual(snapshot.message_count, 1)
        self.assertEqual([e for e in self.events if e["type"] == "status"], [{"type": "status", "status": "connected"}])

    def test_transcription_failure_reported(self):
        o = self.orchestrator
        o.process_event(speech_started("u1"))
        o.process_event(speech_stopped("u1"))
        o.process_event(
            {
                "type": "conversation.item.input_audio_transcription.failed",
                "item_id": "u1",
                "error": {"message": "audio could not be decoded"},
            }
        )
        self.assertEqual(self.transcript_events(), [("final", "user", NOT_TRANSCRIBED_TEXT)])
        errors = [e for e in self.events if e["type"] == "error"]
        self.assertEqual(len(errors), 1)
        self.assertEqual(errors[0]["error"], "audio could not be decoded")
        self.assertEqual(errors[0]["source"], "transcription")
        self.assertEqual(self.sink.calls, [])

    def test_session_expired(self):
        o = self.orchestrator
        o.process_event(speech_started("u1"))
        o.process_event(committed("u1"))
        o.process_event({"type": "session.expired", "error": {"message": "Session timed out"}})

        snapshot = o.snapshot()
        self.assertEqual(snapshot.status, ConversationStatus.EXPIRED)
        self.assertEqual(snapshot.error, "Session timed out")
        self.assertEqual(self.scheduler.pending, 0)
        self.assertIn({"type": "status", "status": "expired"}, self.events)

    def test_ignored_events(self):
        self.assertIsNone(self.orchestrator.process_event({"type": "rate_limits.updated"}))
        self.assertIsNone(self.orchestrator.process_event("not json"))
        self.assertEqual(self.events, [])

    def test_unsubscribe(self):
        received = []
        unsubscribe = self.orchestrator.subscribe(received.append)
        unsubscribe()
        self.orchestrator.process_event({"type": "session.created", "session": {"id": "rt_1"}})
        self.assertEqual(received, [])

    def test_failing_observer_isolated(self):
        def broken(event):
            raise RuntimeError("observer bug")

        self.orchestrator.subscribe(broken)
        self.orchestrator.process_event(speech_started("u1"))
        self.orchestrator.process_event(completed("u1", "Hi."))
        self.assertEqual(self.transcript_events(), [("final", "user", "Hi.")])

    def test_event_from_observer_is_queued(self):
        """An event submitted by an observer runs after the current event completes."""
        o = self.orchestrator

        def on_event(event):
            if event["type"] == "final" and event["role"] == "user":
                o.process_event(speech_started("u2"))

        o.subscribe(on_event)
        o.process_event(speech_started("u1"))
        o.process_event(speech_stopped("u1"))
        o.process_event({"type": "response.created", "response": {"id": "resp_1"}})
        o.process_event(audio_delta("a1", "Under"))
        o.process_event(completed("u1", "Hello."))

        self.assertIn(("partial", "assistant", "Under"), self.transcript_events())
        self.assertEqual(o.engine.user.item_id, "u2")
        self.assertTrue(o.engine.user.is_active)

    def test_diagnostics_replayed_when_enabled(self):
        """Diagnostics recorded while disabled are delivered once enabled."""
        received = []
        self.orchestrator.add_diagnostics_listener(received.append)
        self.orchestrator.process_event(speech_started("u1"))
        self.assertEqual(received, [])

        self.orchestrator.enable_diagnostics(True)
        kinds = [(d.kind, d.msg) for d in received]
        self.assertIn(("event", "speech_started"), kinds)
        self.assertIn(("info", "user.turn.started"), kinds)

        count = len(received)
        self.orchestrator.process_event(speech_stopped("u1"))
        self.assertGreater(len(received), count)

    def test_reset(self):
        self.run_late_transcription_turn()
        self.orchestrator.reset()
        snapshot = self.orchestrator.snapshot()
        self.assertEqual(snapshot.message_count, 0)
        self.assertIsNone(snapshot.silence_threshold_ms)
        self.assertEqual(self.orchestrator.messages, [])

        # The relay record was dropped too.
        self.orchestrator.process_event(speech_started("u1"))
        self.orchestrator.process_event(completed("u1", "Again."))
        self.assertEqual(self.sink.texts("user"), ["I think the patient has asthma", "Again."])


class TestConversationOrchestratorAsync(unittest.IsolatedAsyncioTestCase):
    async def test_fallback_with_asyncio_scheduler(self):
        """With the default scheduler the fallback timer runs on the event loop."""
        orchestrator = ConversationOrchestrator(
            params=ConversationParams(session_id="sess_1", stt_fallback_ms=300)
        )
        finals = []
        thresholds = []
        orchestrator.subscribe(lambda e: e["type"] == "final" and finals.append(e["text"]))

        @orchestrator.event_handler("on_silence_threshold_update")
        async def on_silence_threshold_update(orchestrator, silence_ms):
            thresholds.append(silence_ms)

        orchestrator.process_event(speech_started("u1"))
        orchestrator.process_event(
            {
                "type": "conversation.item.input_audio_transcription.delta",
                "item_id": "u1",
                "delta": "are you there",
            }
        )
        orchestrator.process_event(speech_stopped("u1"))
        orchestrator.process_event(committed("u1"))

        await asyncio.sleep(0.5)
        await orchestrator.cleanup()

        self.assertEqual(finals, ["are you there"])
        self.assertEqual(len(thresholds), 1)


if __name__ == "__main__":
    unittest.main()
