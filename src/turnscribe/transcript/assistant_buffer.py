#
# Copyright (c) 2024–2025, Daily
#
# SPDX-License-Identifier: BSD 2-Clause License
#

"""FIFO holding assistant events while the user turn is being transcribed."""

import itertools
from collections import deque
from dataclasses import dataclass
from typing import Deque, List, Union

from turnscribe.events.events import ResponseDeltaEvent, ResponseDoneEvent

AssistantStreamEvent = Union[ResponseDeltaEvent, ResponseDoneEvent]


@dataclass(frozen=True)
class BufferedAssistantEvent:
    """An assistant event waiting to be replayed.

    Parameters:
        sequence: Position in arrival order.
        event: The buffered event.
    """

    sequence: int
    event: AssistantStreamEvent


class AssistantEventBuffer:
    """Arrival-ordered queue of assistant stream events."""

    def __init__(self):
        """Initialize an empty buffer."""
        self._events: Deque[BufferedAssistantEvent] = deque()
        self._sequence = itertools.count(1)

    def __len__(self) -> int:
        return len(self._events)

    def push(self, event: AssistantStreamEvent) -> BufferedAssistantEvent:
        """Append an event, tagging it with the next sequence number."""
        buffered = BufferedAssistantEvent(sequence=next(self._sequence), event=event)
        self._events.append(buffered)
        return buffered

    def drain(self) -> List[BufferedAssistantEvent]:
        """Remove and return all events in arrival order."""
        events = list(self._events)
        self._events.clear()
        return events

    def clear(self, reset_sequence: bool = False) -> int:
        """Drop all events.

        Returns:
            The number of events dropped.
        """
        dropped = len(self._events)
        self._events.clear()
        if reset_sequence:
            self._sequence = itertools.count(1)
        return dropped
