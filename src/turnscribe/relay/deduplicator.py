#
# Copyright (c) 2024–2025, Daily
#
# SPDX-License-Identifier: BSD 2-Clause License
#

"""Exactly-once forwarding of finalized turns to the broadcast boundary."""

import asyncio
import inspect
from dataclasses import dataclass
from typing import Dict, Optional, Protocol

from loguru import logger

from turnscribe.clocks.base_clock import BaseClock
from turnscribe.events.events import Role


class BroadcastSink(Protocol):
    """Fan-out collaborator receiving finalized turns.

    Implementations deliver to every subscriber of the session and must be
    idempotent on ``(item_id, role)``. They may be sync or async.
    """

    def relay(
        self,
        session_id: str,
        role: Role,
        text: str,
        is_final: bool,
        timestamp: int,
        item_id: Optional[str],
    ): ...


@dataclass
class RelayRecord:
    """The last item relayed for a role.

    Parameters:
        role: Who spoke.
        item_id: Correlation id that was relayed.
        relayed_at: When it was relayed, in milliseconds.
    """

    role: Role
    item_id: str
    relayed_at: int


class RelayDeduplicator:
    """Forwards each correlation id at most once per role.

    One record is kept per role and cleared when that role starts its next
    turn, so memory stays constant for the whole session.
    """

    def __init__(self, *, sink: Optional[BroadcastSink], session_id: str, clock: BaseClock):
        """Initialize the deduplicator.

        Args:
            sink: Broadcast collaborator. Without one, relays are only recorded.
            session_id: Session the relays belong to.
            clock: Clock used to stamp relay records.
        """
        self._sink = sink
        self._session_id = session_id
        self._clock = clock
        self._records: Dict[Role, RelayRecord] = {}
        self._relayed_count = 0
        self._skipped_count = 0
        self._failed_count = 0

    @property
    def relayed_count(self) -> int:
        """Number of relays forwarded to the sink."""
        return self._relayed_count

    @property
    def skipped_count(self) -> int:
        """Number of relays skipped as duplicates or for lack of an id."""
        return self._skipped_count

    @property
    def failed_count(self) -> int:
        """Number of relays the sink failed to deliver."""
        return self._failed_count

    def record(self, role: Role) -> Optional[RelayRecord]:
        """The live relay record of ``role``, if any."""
        return self._records.get(role)

    def relay(
        self,
        role: Role,
        item_id: Optional[str],
        text: str,
        is_final: bool,
        timestamp: int,
    ) -> bool:
        """Forward a finalized turn unless it was already forwarded.

        Delivery errors are logged and don't propagate. The item is recorded
        even when delivery fails; retrying is up to the sink.

        Returns:
            True if the turn was handed to the sink.
        """
        if not item_id:
            self._skipped_count += 1
            logger.error(f"Missing item_id for {role} transcript, not relaying: {text[:50]!r}")
            return False

        record = self._records.get(role)
        if record and record.item_id == item_id:
            self._skipped_count += 1
            logger.debug(f"Skipping relay, {role} item {item_id} already relayed")
            return False

        self._records[role] = RelayRecord(role=role, item_id=item_id, relayed_at=self._clock.get_time())
        if not self._sink:
            return False

        logger.debug(f"Relaying {role} transcript {item_id}: {text[:50]!r}")
        try:
            result = self._sink.relay(self._session_id, role, text, is_final, timestamp, item_id)
            if inspect.isawaitable(result):
                task = asyncio.ensure_future(result)
                task.add_done_callback(lambda t: self._relay_task_finished(t, role, item_id))
        except Exception as e:
            self._failed_count += 1
            logger.exception(f"Failed to relay {role} transcript {item_id}: {e}")
            return False

        self._relayed_count += 1
        return True

    def clear(self, role: Role):
        """Forget the relay record of ``role``."""
        self._records.pop(role, None)

    def reset(self):
        """Forget all relay records."""
        self._records.clear()

    def _relay_task_finished(self, task: asyncio.Future, role: Role, item_id: str):
        if task.cancelled():
            return
        e = task.exception()
        if e:
            self._failed_count += 1
            logger.opt(exception=e).error(f"Failed to relay {role} transcript {item_id}: {e}")
