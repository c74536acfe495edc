#
# Copyright (c) 2024–2025, Daily
#
# SPDX-License-Identifier: BSD 2-Clause License
#

"""Timer scheduling for the transcript engine.

The engine never sleeps. Fallback finalization and debounced threshold updates
are expressed as one-shot timers started and canceled through a
``BaseScheduler``. Production code uses ``AsyncioScheduler``; tests use the
virtual-time scheduler from ``turnscribe.tests.utils``.
"""

import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

from loguru import logger

from turnscribe.utils.utils import obj_id

TimerCallback = Callable[[], None]


@dataclass(eq=False)
class TimerHandle:
    """Handle returned by ``BaseScheduler.start()``.

    Parameters:
        id: Unique timer identifier.
        delay_ms: Requested delay in milliseconds.
        callback: Function invoked when the timer fires.
        cancelled: Whether the timer was canceled before firing.
        fired: Whether the timer already fired.
    """

    id: int = field(default_factory=obj_id)
    delay_ms: int = 0
    callback: Optional[TimerCallback] = None
    cancelled: bool = False
    fired: bool = False
    native: Any = None

    @property
    def active(self) -> bool:
        """Whether the timer will still fire."""
        return not (self.cancelled or self.fired)


class BaseScheduler(ABC):
    """Abstract one-shot timer scheduler."""

    @abstractmethod
    def start(self, delay_ms: int, callback: TimerCallback) -> TimerHandle:
        """Schedule ``callback`` to run once after ``delay_ms`` milliseconds.

        Args:
            delay_ms: Delay in milliseconds. Negative values are treated as 0.
            callback: Function to call when the timer fires.

        Returns:
            A handle that can be passed to ``cancel()``.
        """
        pass

    @abstractmethod
    def cancel(self, handle: Optional[TimerHandle]):
        """Cancel a timer.

        Canceling ``None``, an already fired or an already canceled timer is a
        no-op.
        """
        pass

    def _fire(self, handle: TimerHandle):
        if not handle.active:
            return
        handle.fired = True
        try:
            handle.callback()
        except Exception as e:
            logger.exception(f"{self.__class__.__name__}: exception in timer callback: {e}")


class AsyncioScheduler(BaseScheduler):
    """Scheduler backed by ``loop.call_later()``.

    Must be used from the thread running the event loop.
    """

    def __init__(self, loop: Optional[asyncio.AbstractEventLoop] = None):
        """Initialize the scheduler.

        Args:
            loop: Event loop to schedule on. Defaults to the running loop at
                the time the first timer is started.
        """
        self._loop = loop

    def start(self, delay_ms: int, callback: TimerCallback) -> TimerHandle:
        """Schedule a one-shot timer on the event loop."""
        if not self._loop:
            self._loop = asyncio.get_running_loop()
        delay_ms = max(0, delay_ms)
        handle = TimerHandle(delay_ms=delay_ms, callback=callback)
        handle.native = self._loop.call_later(delay_ms / 1000, self._fire, handle)
        return handle

    def cancel(self, handle: Optional[TimerHandle]):
        """Cancel a timer. Idempotent."""
        if not handle or not handle.active:
            return
        handle.cancelled = True
        if handle.native:
            handle.native.cancel()
