#
# Copyright (c) 2024–2025, Daily
#
# SPDX-License-Identifier: BSD 2-Clause License
#

import os
import unittest
from unittest.mock import patch

from pydantic import ValidationError

from turnscribe.conversation.params import ConversationParams
from turnscribe.utils.env import InvalidEnvVarValueError, env_int, env_truthy


class TestEnvHelpers(unittest.TestCase):
    def test_env_truthy(self):
        with patch.dict(os.environ, {"TS_FLAG": " Yes "}):
            self.assertTrue(env_truthy("TS_FLAG"))
        with patch.dict(os.environ, {"TS_FLAG": "off"}):
            self.assertFalse(env_truthy("TS_FLAG", True))
        with patch.dict(os.environ, {"TS_FLAG": "maybe"}):
            with self.assertRaises(InvalidEnvVarValueError):
                env_truthy("TS_FLAG")

    def test_env_int(self):
        with patch.dict(os.environ, {"TS_NUM": "42"}):
            self.assertEqual(env_int("TS_NUM", 1), 42)
            self.assertEqual(env_int("TS_NUM", 1, maximum=10), 10)
        with patch.dict(os.environ, {"TS_NUM": "  "}):
            self.assertEqual(env_int("TS_NUM", 7), 7)
        with patch.dict(os.environ, {"TS_NUM": "fast"}):
            with self.assertRaises(InvalidEnvVarValueError):
                env_int("TS_NUM", 1)


class TestConversationParams(unittest.TestCase):
    def test_defaults(self):
        params = ConversationParams()
        self.assertFalse(params.barge_in_enabled)
        self.assertTrue(params.adaptive_patience_enabled)
        self.assertEqual(params.stt_fallback_ms, 1200)
        self.assertEqual(params.stt_extended_ms, 2500)
        self.assertEqual(params.patience.base_silence_ms, 700)

    def test_timer_bounds(self):
        with self.assertRaises(ValidationError):
            ConversationParams(stt_fallback_ms=100)

    def test_from_env(self):
        env = {
            "TURNSCRIBE_BARGE_IN": "true",
            "TURNSCRIBE_DIAGNOSTICS": "1",
            "TURNSCRIBE_STT_FALLBACK_MS": "50",
            "TURNSCRIBE_STT_EXTENDED_MS": "3000",
        }
        with patch.dict(os.environ, env):
            params = ConversationParams.from_env(session_id="sess_1")
        self.assertTrue(params.barge_in_enabled)
        self.assertTrue(params.diagnostics_enabled)
        self.assertEqual(params.stt_fallback_ms, 300)
        self.assertEqual(params.stt_extended_ms, 3000)
        self.assertEqual(params.session_id, "sess_1")


if __name__ == "__main__":
    unittest.main()
