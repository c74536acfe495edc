#
# Copyright (c) 2024–2025, Daily
#
# SPDX-License-Identifier: BSD 2-Clause License
#

import unittest

from turnscribe.tests.utils import VirtualClock
from turnscribe.transcript.text import NOT_TRANSCRIBED_TEXT
from turnscribe.turns.turn_state import FinalizationTrigger, TurnPhase, TurnStateMachine
from turnscribe.utils.exceptions import TranscriptEngineError


class TestTurnStateMachine(unittest.TestCase):
    def setUp(self):
        self.clock = VirtualClock(start=1000)
        self.turn = TurnStateMachine("user", clock=self.clock)

    def test_start_and_continue(self):
        """Starting inside an active turn continues it."""
        self.assertEqual(self.turn.phase, TurnPhase.IDLE)
        self.assertTrue(self.turn.start())
        turn_id = self.turn.state.turn_id
        self.assertEqual(self.turn.state.started_at, 1000)

        self.assertFalse(self.turn.start("u1"))
        self.assertEqual(self.turn.state.turn_id, turn_id)
        self.assertEqual(self.turn.item_id, "u1")

    def test_item_id_is_not_replaced(self):
        self.turn.start("u1")
        self.assertFalse(self.turn.adopt_item_id("u2"))
        self.assertEqual(self.turn.item_id, "u1")

    def test_speech_stopped_makes_turn_pending(self):
        self.turn.start("u1")
        self.turn.mark_speech_stopped("u1")
        self.assertEqual(self.turn.phase, TurnPhase.PENDING_TRANSCRIPTION)
        self.assertTrue(self.turn.pending)

    def test_deltas_accumulate(self):
        self.turn.start()
        self.assertTrue(self.turn.apply_delta("Hello"))
        self.assertTrue(self.turn.apply_delta(" world"))
        self.assertFalse(self.turn.apply_delta(" world"))
        self.assertEqual(self.turn.text, "Hello world")
        self.assertEqual(self.turn.delta_count, 3)

    def test_empty_completion_keeps_turn_pending(self):
        """An empty completion never finalizes."""
        self.turn.start("u1")
        self.turn.mark_speech_stopped()
        self.assertIsNone(self.turn.resolve_finalization(FinalizationTrigger.COMPLETION, "  "))
        self.assertFalse(self.turn.finalized)
        self.assertTrue(self.turn.pending)

    def test_completion_finalizes_once(self):
        """Once finalized, later triggers are ignored."""
        self.turn.start("u1")
        self.turn.apply_delta("helo")
        text = self.turn.resolve_finalization(FinalizationTrigger.COMPLETION, "Hello.")
        self.assertEqual(text, "Hello.")
        self.assertTrue(self.turn.finalized)
        self.assertFalse(self.turn.pending)
        self.assertEqual(self.turn.phase, TurnPhase.FINALIZED)
        self.assertEqual(self.turn.state.trigger, FinalizationTrigger.COMPLETION)

        self.assertIsNone(self.turn.resolve_finalization(FinalizationTrigger.COMPLETION, "Other"))
        self.assertIsNone(self.turn.resolve_finalization(FinalizationTrigger.FALLBACK_TIMEOUT))
        self.assertEqual(self.turn.text, "Hello.")
        self.assertFalse(self.turn.apply_delta("more"))

    def test_other_role_needs_deltas(self):
        """The other role starting only finalizes a turn that has deltas."""
        self.turn.start()
        self.assertIsNone(self.turn.resolve_finalization(FinalizationTrigger.OTHER_ROLE_STARTED))
        self.turn.apply_delta("so I was")
        self.assertEqual(
            self.turn.resolve_finalization(FinalizationTrigger.OTHER_ROLE_STARTED), "so I was"
        )

    def test_fallback_without_text_is_unresolved(self):
        """A timeout without text finalizes unresolved, a late completion resolves it."""
        self.turn.start("u1")
        self.turn.mark_speech_stopped()
        self.assertEqual(self.turn.resolve_finalization(FinalizationTrigger.FALLBACK_TIMEOUT), "")
        self.assertTrue(self.turn.state.unresolved)

        self.assertEqual(
            self.turn.resolve_finalization(FinalizationTrigger.COMPLETION, "late words"), "late words"
        )
        self.assertFalse(self.turn.state.unresolved)
        self.assertIsNone(self.turn.resolve_finalization(FinalizationTrigger.COMPLETION, "again"))

    def test_fallback_with_deltas(self):
        self.turn.start()
        self.turn.apply_delta("partial words")
        self.assertEqual(
            self.turn.resolve_finalization(FinalizationTrigger.FALLBACK_TIMEOUT), "partial words"
        )
        self.assertFalse(self.turn.state.unresolved)

    def test_failure_uses_placeholder(self):
        self.turn.start()
        text = self.turn.resolve_finalization(FinalizationTrigger.FAILURE, NOT_TRANSCRIBED_TEXT)
        self.assertEqual(text, NOT_TRANSCRIBED_TEXT)
        self.assertTrue(self.turn.state.failed)

    def test_commit_requires_finalizing(self):
        self.turn.start()
        with self.assertRaises(TranscriptEngineError):
            self.turn.commit("text", FinalizationTrigger.COMPLETION)

    def test_reset(self):
        self.turn.start("u1")
        self.turn.apply_delta("hi")
        self.turn.reset()
        self.assertEqual(self.turn.phase, TurnPhase.IDLE)
        self.assertIsNone(self.turn.item_id)
        self.assertEqual(self.turn.text, "")


if __name__ == "__main__":
    unittest.main()
