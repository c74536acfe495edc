#
# Copyright (c) 2024–2025, Daily
#
# SPDX-License-Identifier: BSD 2-Clause License
#

"""System clock implementation for turnscribe."""

import time

from turnscribe.clocks.base_clock import BaseClock


class SystemClock(BaseClock):
    """Wall-clock milliseconds that never run backwards.

    Transcript timestamps are shared with other clients, so they are based on
    the Unix epoch. Elapsed time is measured with the monotonic clock to
    survive system clock adjustments while the session is running.
    """

    def __init__(self):
        """Initialize the system clock. It starts lazily on first use."""
        self._epoch_ms = 0
        self._monotonic_ns = 0

    def get_time(self) -> int:
        """Get the current time.

        Returns:
            Milliseconds since the Unix epoch, monotonic since start().
        """
        if not self._monotonic_ns:
            self.start()
        elapsed_ms = (time.monotonic_ns() - self._monotonic_ns) // 1_000_000
        return self._epoch_ms + elapsed_ms

    def start(self):
        """Anchor the monotonic clock to the current wall-clock time."""
        self._epoch_ms = time.time_ns() // 1_000_000
        self._monotonic_ns = time.monotonic_ns()
