#
# Copyright (c) 2024–2025, Daily
#
# SPDX-License-Identifier: BSD 2-Clause License
#

import itertools
import unittest

from turnscribe.transcript.sequencer import MessageSequencer, sort_messages


class TestMessageSequencer(unittest.TestCase):
    def test_updates_of_a_turn_share_the_stamp(self):
        """Partial and final updates keep the key assigned to the turn."""
        sequencer = MessageSequencer()
        partial = sequencer.stamp("t1", "user", "Hel", 1000, pending=True)
        final = sequencer.stamp("t1", "user", "Hello", 1500, pending=False)
        self.assertEqual(partial.sequence_id, 1)
        self.assertEqual(final.sort_key, (1000, 1))
        self.assertFalse(final.pending)
        self.assertEqual(final.channel, "voice")

    def test_refinalized_turn_keeps_stamp(self):
        """A turn finalized again, e.g. by a late completion, keeps its key."""
        sequencer = MessageSequencer()
        first = sequencer.stamp("t1", "user", "", 1000, pending=False)
        sequencer.stamp("t2", "assistant", "Hi", 1200, pending=True)
        again = sequencer.stamp("t1", "user", "Sorry, I was muted.", 1000, pending=False)
        self.assertEqual(again.sort_key, first.sort_key)

    def test_keys_are_unique(self):
        """Turns starting at the same time are ordered by sequence id."""
        sequencer = MessageSequencer()
        first = sequencer.stamp("t1", "user", "a", 1000, pending=False)
        second = sequencer.stamp("t2", "assistant", "b", 1000, pending=False)
        third = sequencer.stamp("t3", "user", "c", 900, pending=False)

        keys = {m.sort_key for m in (first, second, third)}
        self.assertEqual(len(keys), 3)
        self.assertEqual([m.text for m in sort_messages([second, first, third])], ["c", "a", "b"])

    def test_injected_counter(self):
        sequencer = MessageSequencer(counter=itertools.count(100))
        self.assertEqual(sequencer.stamp("t1", "user", "x", 0, pending=True).sequence_id, 100)
        self.assertEqual(sequencer.stamp("t2", "user", "y", 0, pending=True).sequence_id, 101)

    def test_reset_keeps_counting(self):
        sequencer = MessageSequencer()
        sequencer.stamp("t1", "user", "x", 0, pending=True)
        sequencer.reset()
        message = sequencer.stamp("t1", "user", "x", 50, pending=True)
        self.assertEqual(message.sort_key, (50, 2))


if __name__ == "__main__":
    unittest.main()
