#
# Copyright (c) 2024–2025, Daily
#
# SPDX-License-Identifier: BSD 2-Clause License
#

import unittest

from turnscribe.utils.base_object import BaseObject


class EventSource(BaseObject):
    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        self._register_event_handler("on_ping")

    def ping(self, value):
        self._call_event_handler("on_ping", value)


class TestBaseObject(unittest.IsolatedAsyncioTestCase):
    async def test_names(self):
        self.assertEqual(str(EventSource(name="source")), "source")
        self.assertTrue(EventSource().name.startswith("EventSource#"))

    async def test_sync_handlers_run_in_order(self):
        """Sync handlers run before the call returns, in registration order."""
        source = EventSource()
        calls = []

        @source.event_handler("on_ping")
        def first(source, value):
            calls.append(("first", value))

        @source.event_handler("on_ping")
        def second(source, value):
            calls.append(("second", value))

        source.ping(1)
        self.assertEqual(calls, [("first", 1), ("second", 1)])

    async def test_failing_handler_isolated(self):
        source = EventSource()
        calls = []

        @source.event_handler("on_ping")
        def broken(source, value):
            raise RuntimeError("boom")

        @source.event_handler("on_ping")
        def working(source, value):
            calls.append(value)

        source.ping(2)
        self.assertEqual(calls, [2])

    async def test_async_handler_awaited_on_cleanup(self):
        source = EventSource()
        calls = []

        @source.event_handler("on_ping")
        async def on_ping(source, value):
            calls.append(value)

        source.ping(3)
        await source.cleanup()
        self.assertEqual(calls, [3])

    async def test_unknown_event_ignored(self):
        source = EventSource()
        source.add_event_handler("on_unknown", lambda *args: None)
        source._call_event_handler("on_unknown")


if __name__ == "__main__":
    unittest.main()
