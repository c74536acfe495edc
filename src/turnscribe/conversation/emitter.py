#
# Copyright (c) 2024–2025, Daily
#
# SPDX-License-Identifier: BSD 2-Clause License
#

"""Observer and diagnostics fan-out for a conversation."""

from collections import deque
from dataclasses import dataclass, field
from typing import Any, Callable, Deque, Dict, List

from loguru import logger

ObserverCallback = Callable[[Dict[str, Any]], None]
DiagnosticsCallback = Callable[["DiagnosticEvent"], None]


@dataclass
class DiagnosticEvent:
    """An entry of the diagnostics stream.

    Parameters:
        t: When it happened, in milliseconds.
        kind: ``event`` for classified inbound events, otherwise ``info``,
            ``warning`` or ``error``.
        src: What produced it.
        msg: Short description, or the event kind.
        data: Extra details.
    """

    t: int
    kind: str
    src: str
    msg: str
    data: Dict[str, Any] = field(default_factory=dict)


class ConversationEventEmitter:
    """Delivers conversation events to observers and diagnostics listeners.

    Diagnostics are always recorded in a bounded backlog. They are delivered
    only while diagnostics are enabled; listeners added later, or enabling
    diagnostics later, replay what they missed.
    """

    def __init__(self, *, diagnostics_enabled: bool = False, max_backlog: int = 500):
        """Initialize the emitter.

        Args:
            diagnostics_enabled: Whether diagnostics are delivered right away.
            max_backlog: Number of diagnostics kept for replay.
        """
        self._observers: List[ObserverCallback] = []
        self._diagnostics_listeners: List[DiagnosticsCallback] = []
        self._backlog: Deque[DiagnosticEvent] = deque(maxlen=max_backlog)
        self._undelivered = 0
        self._diagnostics_enabled = diagnostics_enabled

    @property
    def diagnostics_enabled(self) -> bool:
        """Whether diagnostics are delivered as they happen."""
        return self._diagnostics_enabled

    @property
    def backlog(self) -> List[DiagnosticEvent]:
        """A copy of the diagnostics backlog, oldest first."""
        return list(self._backlog)

    def subscribe(self, callback: ObserverCallback) -> Callable[[], None]:
        """Add an observer.

        Returns:
            A function that removes the observer. Calling it twice is safe.
        """
        self._observers.append(callback)
        return lambda: self._remove(self._observers, callback)

    def add_diagnostics_listener(self, callback: DiagnosticsCallback) -> Callable[[], None]:
        """Add a diagnostics listener, replaying the backlog if diagnostics are enabled.

        Returns:
            A function that removes the listener.
        """
        self._diagnostics_listeners.append(callback)
        if self._diagnostics_enabled:
            for event in list(self._backlog):
                if not self._deliver(callback, event):
                    break
        return lambda: self._remove(self._diagnostics_listeners, callback)

    def emit(self, event: Dict[str, Any]):
        """Deliver an event to every observer.

        An observer that raises is logged and the others still get the event.
        """
        for callback in list(self._observers):
            try:
                callback(event)
            except Exception as e:
                logger.exception(f"Error in conversation observer: {e}")

    def emit_diagnostic(self, event: DiagnosticEvent):
        """Record a diagnostic and deliver it if diagnostics are enabled."""
        self._backlog.append(event)
        if not self._diagnostics_enabled:
            self._undelivered = min(self._undelivered + 1, len(self._backlog))
            return
        for callback in list(self._diagnostics_listeners):
            self._deliver(callback, event)
        self._undelivered = 0

    def enable_diagnostics(self, enabled: bool):
        """Turn diagnostics delivery on or off.

        Turning it on delivers the diagnostics recorded while it was off.
        """
        if enabled == self._diagnostics_enabled:
            return
        self._diagnostics_enabled = enabled
        if not enabled:
            return

        missed = list(self._backlog)[len(self._backlog) - self._undelivered :]
        self._undelivered = 0
        for callback in list(self._diagnostics_listeners):
            for event in missed:
                if not self._deliver(callback, event):
                    break

    def clear(self):
        """Drop all observers, listeners and the backlog."""
        self._observers.clear()
        self._diagnostics_listeners.clear()
        self._backlog.clear()
        self._undelivered = 0

    def _deliver(self, callback: DiagnosticsCallback, event: DiagnosticEvent) -> bool:
        try:
            callback(event)
            return True
        except Exception as e:
            logger.exception(f"Error in diagnostics listener: {e}")
            return False

    @staticmethod
    def _remove(callbacks: list, callback):
        if callback in callbacks:
            callbacks.remove(callback)
