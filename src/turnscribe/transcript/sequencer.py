#
# Copyright (c) 2024–2025, Daily
#
# SPDX-License-Identifier: BSD 2-Clause License
#

"""Total ordering of observer-facing transcript messages.

Messages are keyed by ``(timestamp, sequence_id)``: the timestamp is the start
of the turn, so all updates of a multi-delta turn stay together, and the
sequence id breaks ties. Sequence ids come from a counter owned by the
sequencer, so every message it produces has a distinct key.
"""

import itertools
from collections import OrderedDict
from dataclasses import dataclass
from typing import Dict, Iterable, Iterator, List, Optional, Tuple

from turnscribe.events.events import Role

# Finished turns whose stamp is kept for late updates (e.g. a late completion).
MAX_FINISHED_TURNS = 32


@dataclass(frozen=True)
class Message:
    """A transcript message as seen by observers.

    Parameters:
        id: Stable identifier shared by all updates of a turn.
        role: Who is speaking.
        text: Current text of the turn.
        channel: Where the message came from.
        timestamp: Turn start time, in milliseconds.
        sequence_id: Tie breaker assigned when the turn was first seen.
        pending: Whether the text may still change.
        item_id: Upstream correlation id, if known.
        interrupted: Assistant turn cut short by the user.
        unresolved: Finalized by timeout without a completion.
    """

    id: str
    role: Role
    text: str
    channel: str
    timestamp: int
    sequence_id: int
    pending: bool
    item_id: Optional[str] = None
    interrupted: bool = False
    unresolved: bool = False

    @property
    def sort_key(self) -> Tuple[int, int]:
        """The ordering key of the message."""
        return (self.timestamp, self.sequence_id)


def sort_messages(messages: Iterable[Message]) -> List[Message]:
    """Sort messages ascending by ``(timestamp, sequence_id)``."""
    return sorted(messages, key=lambda m: m.sort_key)


class MessageSequencer:
    """Stamps transcript updates with ordering keys.

    The first update of a turn fixes its ``timestamp`` and ``sequence_id``;
    later updates of the same turn reuse them. Stamps of the most recent
    finished turns are remembered so a turn finalized again keeps its place.
    """

    def __init__(self, *, counter: Optional[Iterator[int]] = None):
        """Initialize the sequencer.

        Args:
            counter: Source of sequence ids. Defaults to 1, 2, 3, ...
        """
        self._counter = counter or itertools.count(1)
        self._stamps: Dict[str, Tuple[int, int]] = {}
        self._finished: "OrderedDict[str, Tuple[int, int]]" = OrderedDict()

    def stamp(
        self,
        turn_id: str,
        role: Role,
        text: str,
        started_at: int,
        *,
        pending: bool,
        channel: str = "voice",
        item_id: Optional[str] = None,
        interrupted: bool = False,
        unresolved: bool = False,
    ) -> Message:
        """Build the message for an update of a turn.

        A final update (``pending=False``) moves the turn to the finished turns.
        """
        if turn_id in self._stamps:
            timestamp, sequence_id = self._stamps[turn_id]
        elif turn_id in self._finished:
            timestamp, sequence_id = self._finished.pop(turn_id)
            self._stamps[turn_id] = (timestamp, sequence_id)
        else:
            timestamp, sequence_id = started_at, next(self._counter)
            self._stamps[turn_id] = (timestamp, sequence_id)

        if not pending:
            self._finished[turn_id] = self._stamps.pop(turn_id)
            while len(self._finished) > MAX_FINISHED_TURNS:
                self._finished.popitem(last=False)

        return Message(
            id=turn_id,
            role=role,
            text=text,
            channel=channel,
            timestamp=timestamp,
            sequence_id=sequence_id,
            pending=pending,
            item_id=item_id,
            interrupted=interrupted,
            unresolved=unresolved,
        )

    def reset(self):
        """Forget all turns. Sequence ids keep increasing."""
        self._stamps.clear()
        self._finished.clear()
