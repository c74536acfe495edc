#
# Copyright (c) 2024–2025, Daily
#
# SPDX-License-Identifier: BSD 2-Clause License
#

"""Testing utilities for turnscribe components.

``VirtualClock`` and ``VirtualScheduler`` replace wall time so timer driven
behavior (transcription fallbacks, debounced threshold updates) can be tested
deterministically. ``RecordingSink`` captures relays.
"""

import heapq
from dataclasses import dataclass
from typing import List, Optional, Tuple

from turnscribe.clocks.base_clock import BaseClock
from turnscribe.events.events import Role
from turnscribe.scheduling.scheduler import BaseScheduler, TimerCallback, TimerHandle


class VirtualClock(BaseClock):
    """A clock that only moves when told to."""

    def __init__(self, start: int = 0):
        """Initialize the clock.

        Args:
            start: Initial time in milliseconds.
        """
        self._now = start

    def get_time(self) -> int:
        """Get the current virtual time in milliseconds."""
        return self._now

    def start(self):
        """Nothing to do, virtual time is always started."""
        pass

    def advance(self, ms: int) -> int:
        """Move time forward by ``ms`` milliseconds."""
        self._now += ms
        return self._now

    def set(self, now: int):
        """Jump to ``now``."""
        self._now = now


class VirtualScheduler(BaseScheduler):
    """Scheduler driven by a ``VirtualClock``.

    Timers only fire from ``advance()``, in due-time order, with the clock set
    to each timer's due time.

    Example::

        clock = VirtualClock()
        scheduler = VirtualScheduler(clock)
        engine = TranscriptEngine(clock=clock, scheduler=scheduler)
        ...
        scheduler.advance(1200)
    """

    def __init__(self, clock: VirtualClock):
        """Initialize the scheduler.

        Args:
            clock: The virtual clock timers are measured against.
        """
        self._clock = clock
        self._timers: List[Tuple[int, int, TimerHandle]] = []

    @property
    def pending(self) -> int:
        """Number of timers that will still fire."""
        return sum(1 for _, _, handle in self._timers if handle.active)

    def start(self, delay_ms: int, callback: TimerCallback) -> TimerHandle:
        """Schedule a one-shot timer in virtual time."""
        delay_ms = max(0, delay_ms)
        handle = TimerHandle(delay_ms=delay_ms, callback=callback)
        heapq.heappush(self._timers, (self._clock.get_time() + delay_ms, handle.id, handle))
        return handle

    def cancel(self, handle: Optional[TimerHandle]):
        """Cancel a timer. Idempotent."""
        if handle and handle.active:
            handle.cancelled = True

    def advance(self, ms: int):
        """Move virtual time forward, firing every timer that becomes due.

        Timers started by a firing callback fire in the same call if they are
        due before the target time.
        """
        target = self._clock.get_time() + ms
        while self._timers and self._timers[0][0] <= target:
            due, _, handle = heapq.heappop(self._timers)
            if not handle.active:
                continue
            self._clock.set(max(due, self._clock.get_time()))
            self._fire(handle)
        self._clock.set(target)


@dataclass
class RelayCall:
    """A relay received by ``RecordingSink``."""

    session_id: str
    role: Role
    text: str
    is_final: bool
    timestamp: int
    item_id: Optional[str]


class RecordingSink:
    """Broadcast sink that records every relay.

    Args:
        fail: Raise on every relay, to exercise error handling.
    """

    def __init__(self, fail: bool = False):
        self.calls: List[RelayCall] = []
        self.fail = fail

    def relay(
        self,
        session_id: str,
        role: Role,
        text: str,
        is_final: bool,
        timestamp: int,
        item_id: Optional[str],
    ):
        """Record the relay."""
        if self.fail:
            raise RuntimeError("broadcast unavailable")
        self.calls.append(RelayCall(session_id, role, text, is_final, timestamp, item_id))

    def texts(self, role: Optional[Role] = None) -> List[str]:
        """Texts relayed, optionally for one role."""
        return [c.text for c in self.calls if role is None or c.role == role]
