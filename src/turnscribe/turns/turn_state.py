#
# Copyright (c) 2024–2025, Daily
#
# SPDX-License-Identifier: BSD 2-Clause License
#

"""Per-role turn lifecycle.

A ``TurnStateMachine`` owns the single live turn of one role and moves it
through ``IDLE -> LISTENING -> PENDING_TRANSCRIPTION -> FINALIZING ->
FINALIZED``. Assistant turns skip the pending phase: they stream while
``LISTENING`` and finalize on response completion.

The machine enforces the finalization guards. Deciding *when* to finalize
(timers, the other role starting) belongs to the transcript engine.
"""

import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

from loguru import logger

from turnscribe.clocks.base_clock import BaseClock
from turnscribe.events.events import Role
from turnscribe.transcript.text import merge_delta, normalize_text
from turnscribe.utils.exceptions import TranscriptEngineError


class TurnPhase(Enum):
    """Lifecycle phases of a turn."""

    IDLE = "idle"
    LISTENING = "listening"
    PENDING_TRANSCRIPTION = "pending_transcription"
    FINALIZING = "finalizing"
    FINALIZED = "finalized"


class FinalizationTrigger(Enum):
    """What caused a turn to finalize, in priority order for user turns."""

    COMPLETION = "completion"
    OTHER_ROLE_STARTED = "other_role_started"
    FALLBACK_TIMEOUT = "fallback_timeout"
    FAILURE = "failure"
    INTERRUPTED = "interrupted"
    RESPONSE_DONE = "response_done"


@dataclass
class TurnState:
    """State of one turn.

    Parameters:
        role: Who is speaking.
        turn_id: Local identifier of the turn.
        item_id: Upstream correlation id, once known.
        text: Accumulated text.
        finalized: Whether the text is committed.
        pending: Speech ended and the transcription isn't resolved yet.
        delta_count: Number of deltas applied.
        started_at: When the turn started, in milliseconds.
        phase: Current lifecycle phase.
        unresolved: Finalized by timeout without any transcription.
        interrupted: Assistant turn cut short by the user.
        failed: Transcription failed upstream.
        trigger: What finalized the turn.
    """

    role: Role
    turn_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    item_id: Optional[str] = None
    text: str = ""
    finalized: bool = False
    pending: bool = False
    delta_count: int = 0
    started_at: int = 0
    phase: TurnPhase = TurnPhase.IDLE
    unresolved: bool = False
    interrupted: bool = False
    failed: bool = False
    trigger: Optional[FinalizationTrigger] = None


class TurnStateMachine:
    """Owns the live turn of one role."""

    def __init__(self, role: Role, *, clock: BaseClock):
        """Initialize the state machine.

        Args:
            role: The role whose turns are tracked.
            clock: Clock used to stamp turn start times.
        """
        self._role = role
        self._clock = clock
        self._state = TurnState(role=role)

    def __str__(self):
        """Return a short name used in log lines."""
        return f"{self._role.capitalize()}Turn"

    @property
    def role(self) -> Role:
        """The role whose turns are tracked."""
        return self._role

    @property
    def state(self) -> TurnState:
        """The live turn state."""
        return self._state

    @property
    def phase(self) -> TurnPhase:
        """Current lifecycle phase."""
        return self._state.phase

    @property
    def text(self) -> str:
        """Text accumulated so far."""
        return self._state.text

    @property
    def item_id(self) -> Optional[str]:
        """Upstream correlation id of the turn, if known."""
        return self._state.item_id

    @property
    def pending(self) -> bool:
        """Whether speech ended and transcription is unresolved."""
        return self._state.pending

    @property
    def finalized(self) -> bool:
        """Whether the turn text is committed."""
        return self._state.finalized

    @property
    def delta_count(self) -> int:
        """Number of deltas applied to the turn."""
        return self._state.delta_count

    @property
    def is_active(self) -> bool:
        """Whether a turn is in progress and not finalized."""
        return self._state.phase in (
            TurnPhase.LISTENING,
            TurnPhase.PENDING_TRANSCRIPTION,
            TurnPhase.FINALIZING,
        )

    def start(self, item_id: Optional[str] = None, now: Optional[int] = None) -> bool:
        """Start a new turn unless one is already active.

        Starting discards the previous finalized turn, including its
        correlation id.

        Returns:
            True if a new turn started, False if the active turn continues.
        """
        if self.is_active:
            self.adopt_item_id(item_id)
            return False

        self._state = TurnState(
            role=self._role,
            item_id=item_id,
            started_at=self._clock.get_time() if now is None else now,
            phase=TurnPhase.LISTENING,
        )
        logger.debug(f"{self} started {self._state.turn_id} at {self._state.started_at}")
        return True

    def adopt_item_id(self, item_id: Optional[str]) -> bool:
        """Record the turn's correlation id if it isn't known yet.

        Returns:
            False if the turn already has a different id.
        """
        if not item_id:
            return True
        if not self._state.item_id:
            self._state.item_id = item_id
            return True
        return self._state.item_id == item_id

    def mark_speech_stopped(self, item_id: Optional[str] = None):
        """Speech ended: transcription is now pending.

        If no turn is active (a missed start), one is started first.
        """
        if not self.is_active:
            self.start(item_id)
        self.adopt_item_id(item_id)
        if self._state.phase == TurnPhase.LISTENING:
            self._state.phase = TurnPhase.PENDING_TRANSCRIPTION
        self._state.pending = True

    def apply_delta(self, delta: str, item_id: Optional[str] = None) -> bool:
        """Merge a streaming fragment into the turn text.

        Returns:
            Whether the visible text changed.
        """
        if self._state.finalized:
            logger.debug(f"{self} ignoring delta for finalized turn {self._state.turn_id}")
            return False
        if not self.is_active:
            self.start(item_id)
        self.adopt_item_id(item_id)

        self._state.delta_count += 1
        merged = merge_delta(self._state.text, delta)
        if merged == self._state.text:
            return False
        logger.trace(f"{self} delta #{self._state.delta_count}: {merged!r}")
        self._state.text = merged
        return True

    def replace_text(self, text: Optional[str]) -> bool:
        """Replace the turn text with a full snapshot.

        Returns:
            Whether the visible text changed.
        """
        if self._state.finalized:
            return False
        if not self.is_active:
            self.start()
        text = normalize_text(text)
        if not text or text == self._state.text:
            return False
        self._state.text = text
        return True

    def resolve_finalization(
        self, trigger: FinalizationTrigger, text: Optional[str] = None
    ) -> Optional[str]:
        """Finalize the turn if ``trigger`` allows it.

        - ``COMPLETION`` needs non-empty ``text``. An empty completion is
          ignored and leaves ``pending`` set.
        - ``OTHER_ROLE_STARTED`` needs accumulated deltas and finalizes from
          them.
        - ``FALLBACK_TIMEOUT`` finalizes from accumulated deltas, or with no
          text at all, flagging the turn unresolved.
        - ``FAILURE`` finalizes with the given placeholder text.
        - ``INTERRUPTED`` and ``RESPONSE_DONE`` finalize with ``text`` if
          given, otherwise with the accumulated text.

        A turn that was finalized unresolved, without text, can still be
        resolved once by a late ``COMPLETION``.

        Returns:
            The committed text (possibly empty), or None if nothing changed.
        """
        state = self._state
        text = normalize_text(text) if text is not None else None

        if state.finalized:
            late_resolution = (
                trigger == FinalizationTrigger.COMPLETION and state.unresolved and not state.text
            )
            if not (late_resolution and text):
                logger.debug(f"{self} {state.turn_id} already finalized, ignoring {trigger.value}")
                return None
            state.unresolved = False
            return self.commit(text, trigger)

        if trigger == FinalizationTrigger.COMPLETION:
            if not text:
                logger.debug(f"{self} ignoring empty completion, transcription still pending")
                return None
            final_text = text
        elif trigger == FinalizationTrigger.OTHER_ROLE_STARTED:
            if state.delta_count == 0:
                return None
            final_text = state.text
        elif trigger == FinalizationTrigger.FALLBACK_TIMEOUT:
            final_text = state.text
            if state.delta_count == 0 or not final_text:
                state.unresolved = True
        elif trigger == FinalizationTrigger.FAILURE:
            final_text = text or ""
            state.failed = True
        else:
            final_text = text if text else state.text
            if trigger == FinalizationTrigger.INTERRUPTED:
                state.interrupted = True

        if state.phase == TurnPhase.IDLE:
            state.started_at = self._clock.get_time()
        state.phase = TurnPhase.FINALIZING
        return self.commit(final_text, trigger)

    def finalize_empty(self) -> None:
        """Close an active turn that never produced any input."""
        if self._state.finalized:
            return
        self._state.phase = TurnPhase.FINALIZING
        self.commit("", None)

    def commit(self, text: str, trigger: Optional[FinalizationTrigger]) -> str:
        """Commit ``text`` as the final text of the turn. Clears ``pending``."""
        state = self._state
        if state.phase not in (TurnPhase.FINALIZING, TurnPhase.FINALIZED):
            raise TranscriptEngineError(f"{self} can't commit from phase {state.phase.value}")
        state.text = text
        state.finalized = True
        state.pending = False
        state.trigger = trigger
        state.phase = TurnPhase.FINALIZED
        logger.debug(
            f"{self} {state.turn_id} finalized ({trigger.value if trigger else 'empty'}): {text!r}"
        )
        return text

    def reset(self):
        """Return to idle, dropping the turn and its correlation id."""
        self._state = TurnState(role=self._role)
