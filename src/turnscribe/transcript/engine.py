#
# Copyright (c) 2024–2025, Daily
#
# SPDX-License-Identifier: BSD 2-Clause License
#

"""Transcript engine.

The engine owns one turn per role and turns classified conversation events
into transcript updates. It resolves the ordering races of realtime speech
services:

- Assistant output that arrives while the user's speech is still being
  transcribed is held back and replayed, in arrival order, once the user turn
  is final. The transcript then reads in the order things were said.
- A response starting right after the user stopped talking doesn't close the
  user turn as empty while its transcription is pending.
- Empty completions never finalize a turn.
- Completions are relayed by correlation id, so a completion that arrives
  after the next turn started is still delivered exactly once.

Fallback timers finalize user turns whose transcription never completes.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional

from loguru import logger

from turnscribe.clocks.base_clock import BaseClock
from turnscribe.events.events import ResponseDeltaEvent, ResponseDoneEvent, Role
from turnscribe.scheduling.scheduler import BaseScheduler, TimerHandle
from turnscribe.transcript.assistant_buffer import AssistantEventBuffer, AssistantStreamEvent
from turnscribe.transcript.text import (
    RATE_LIMITED_TEXT,
    failure_text,
    normalize_text,
)
from turnscribe.turns.turn_state import (
    FinalizationTrigger,
    TurnPhase,
    TurnState,
    TurnStateMachine,
)
from turnscribe.utils.base_object import BaseObject

DEFAULT_STT_FALLBACK_MS = 1200
DEFAULT_STT_EXTENDED_MS = 2500


class SpeechStartResult(Enum):
    """Outcome of a user speech start."""

    CONTINUE_ACTIVE_TURN = "continue_active_turn"
    START_NEW_TURN = "start_new_turn"


class AssistantStartAction(Enum):
    """What happened to the user turn when an assistant response started."""

    FINALIZE_FROM_DELTAS = "finalize_from_deltas"
    WAIT_FOR_PENDING = "wait_for_pending"
    WAIT_FOR_COMMIT = "wait_for_commit"
    FINALIZE_EMPTY = "finalize_empty"
    NONE = "none"


@dataclass
class TranscriptUpdate:
    """Visible text of a turn, partial or final.

    Parameters:
        role: Who is speaking.
        turn_id: Local identifier of the turn.
        text: Text of the turn so far, or its final text.
        is_final: Whether the text is committed.
        started_at: When the turn started, in milliseconds.
        emitted_at: When the update was produced, in milliseconds.
        item_id: Upstream correlation id, if known.
        unresolved: Finalized by timeout without a completion.
        interrupted: Assistant turn cut short by the user.
        failed: Text is a placeholder for a failed transcription.
    """

    role: Role
    turn_id: str
    text: str
    is_final: bool
    started_at: int
    emitted_at: int
    item_id: Optional[str] = None
    unresolved: bool = False
    interrupted: bool = False
    failed: bool = False


@dataclass
class RelayRequest:
    """A finalized turn that should be forwarded to other clients.

    Parameters:
        role: Who spoke.
        item_id: Upstream correlation id. None when it was never received.
        text: Final text.
        is_final: Always True for turns finalized by the engine.
        timestamp: Turn start time, in milliseconds.
    """

    role: Role
    item_id: Optional[str]
    text: str
    is_final: bool
    timestamp: int


class TranscriptEngine(BaseObject):
    """Assembles user and assistant turns from conversation events.

    Event handlers available:

    - on_turn_started: A new turn started for a role.
    - on_transcript_update: A turn's visible text changed or became final.
    - on_turn_finalized: A turn finalized, even without any text.
    - on_relay_request: A finalized turn should be relayed.

    Example::

        @engine.event_handler("on_transcript_update")
        def on_transcript_update(engine, update: TranscriptUpdate):
            ...
    """

    def __init__(
        self,
        *,
        clock: BaseClock,
        scheduler: BaseScheduler,
        barge_in_enabled: bool = False,
        stt_fallback_ms: int = DEFAULT_STT_FALLBACK_MS,
        stt_extended_ms: int = DEFAULT_STT_EXTENDED_MS,
        **kwargs,
    ):
        """Initialize the engine.

        Args:
            clock: Clock used to stamp turns and updates.
            scheduler: Scheduler for the transcription fallback timers.
            barge_in_enabled: Whether user speech interrupts the assistant.
            stt_fallback_ms: How long to wait for transcription after the
                audio buffer is committed.
            stt_extended_ms: How long to wait for a completion after the
                last transcription delta.
            **kwargs: Additional arguments passed to BaseObject.
        """
        super().__init__(**kwargs)
        self._clock = clock
        self._scheduler = scheduler
        self._barge_in_enabled = barge_in_enabled
        self._stt_fallback_ms = stt_fallback_ms
        self._stt_extended_ms = stt_extended_ms

        self._user = TurnStateMachine("user", clock=clock)
        self._assistant = TurnStateMachine("assistant", clock=clock)
        self._assistant_buffer = AssistantEventBuffer()

        self._stt_timer: Optional[TimerHandle] = None
        # The user turn replaced by the current one, for late completions.
        self._previous_user_item_id: Optional[str] = None
        self._previous_user_started_at = 0
        self._previous_user_relayed = False
        self._user_relayed_item_id: Optional[str] = None

        # Assistant stream state, reset on every response.
        self._audio_transcript_mode = False
        self._suppress_audio_transcript = False
        self._assistant_cut_off = False

        self._register_event_handler("on_turn_started")
        self._register_event_handler("on_transcript_update")
        self._register_event_handler("on_turn_finalized")
        self._register_event_handler("on_relay_request")

    @property
    def user(self) -> TurnStateMachine:
        """The user's turn."""
        return self._user

    @property
    def assistant(self) -> TurnStateMachine:
        """The assistant's turn."""
        return self._assistant

    @property
    def barge_in_enabled(self) -> bool:
        """Whether user speech interrupts the assistant."""
        return self._barge_in_enabled

    @property
    def buffered_assistant_events(self) -> int:
        """Number of assistant events waiting for the user turn to finalize."""
        return len(self._assistant_buffer)

    @property
    def stt_timer_active(self) -> bool:
        """Whether a transcription fallback timer is armed."""
        return bool(self._stt_timer and self._stt_timer.active)

    #
    # User speech
    #

    def handle_speech_started(self, item_id: Optional[str] = None) -> SpeechStartResult:
        """Handle the start of user speech.

        A start inside an active user turn is a pause, not a new turn.
        """
        if self._barge_in_enabled and self._assistant.is_active:
            self._interrupt_assistant("barge-in")

        if self._user.is_active:
            self._user.adopt_item_id(item_id)
            logger.debug(f"{self}: speech resumed, continuing active user turn")
            return SpeechStartResult.CONTINUE_ACTIVE_TURN

        self._start_user_turn(item_id)
        return SpeechStartResult.START_NEW_TURN

    def handle_speech_stopped(self, item_id: Optional[str] = None):
        """Handle the end of user speech. The user turn becomes pending."""
        if not self._user.is_active:
            self._start_user_turn(item_id)
        self._user.mark_speech_stopped(item_id)
        logger.debug(f"{self}: user speech stopped, transcription pending")

    def handle_audio_committed(self, item_id: Optional[str] = None) -> Optional[int]:
        """Handle an audio buffer commit by arming the fallback timer.

        Returns:
            The fallback delay in milliseconds, or None if no user turn is
            waiting for transcription.
        """
        if not self._user.is_active:
            return None
        self._user.adopt_item_id(item_id)
        self._start_stt_timer(self._stt_fallback_ms, self._on_stt_fallback)
        logger.debug(f"{self}: audio committed, fallback in {self._stt_fallback_ms}ms")
        return self._stt_fallback_ms

    #
    # User transcription
    #

    def handle_transcription_delta(self, delta: str, item_id: Optional[str] = None):
        """Merge a user transcription delta into the user turn."""
        user = self._user
        if user.finalized:
            if item_id and item_id == user.item_id:
                logger.debug(f"{self}: ignoring late delta for finalized item {item_id}")
                return
            logger.debug(f"{self}: delta after finalization, restarting user turn")

        if not user.is_active:
            self._start_user_turn(item_id)

        changed = user.apply_delta(delta, item_id)
        self._start_stt_timer(self._stt_extended_ms, self._on_stt_fallback)
        if changed:
            self._emit_update(user, is_final=False)

    def handle_transcription_completed(self, transcript: str, item_id: Optional[str] = None):
        """Finalize the user turn with the completed transcription.

        Empty completions are ignored. A completion for an item other than the
        current turn's only relays, at most once for the previous turn's item.
        A turn finalized before its item id was known takes the completion's
        id and is only relayed.
        """
        text = normalize_text(transcript)
        if not text:
            logger.debug(f"{self}: ignoring empty completion for {item_id}, waiting for more")
            return

        user = self._user
        if item_id and item_id != user.item_id:
            if item_id == self._previous_user_item_id:
                self._relay_previous_user_item(text)
                return
            if user.is_active and user.item_id:
                logger.debug(f"{self}: completion for unknown item {item_id}, relaying only")
                self._request_relay("user", item_id, text, self._clock.get_time())
                return
            if user.finalized and not user.item_id:
                logger.debug(f"{self}: finalized user turn takes item id {item_id}")
                user.adopt_item_id(item_id)

        if user.phase == TurnPhase.IDLE or (user.finalized and item_id and item_id != user.item_id):
            self._start_user_turn(item_id)
        user.adopt_item_id(item_id)

        final_text = user.resolve_finalization(FinalizationTrigger.COMPLETION, text)
        self._cancel_stt_timer()
        if final_text is not None:
            self._on_user_finalized()
        self._request_relay("user", item_id or user.item_id, text, user.state.started_at)
        if final_text is not None:
            self._flush_assistant_buffer()

    def handle_transcription_failed(
        self,
        error_message: str = "",
        error_code: Optional[str] = None,
        item_id: Optional[str] = None,
    ):
        """Finalize the user turn with a placeholder after a transcription failure."""
        placeholder = failure_text(error_message, error_code)
        if placeholder == RATE_LIMITED_TEXT:
            logger.error(f"{self}: transcription rate limited: {error_message}")
        else:
            logger.error(f"{self}: transcription failed: {error_message or error_code}")

        user = self._user
        self._cancel_stt_timer()
        if user.finalized:
            return
        if user.phase == TurnPhase.IDLE:
            self._start_user_turn(item_id)
        user.adopt_item_id(item_id)

        if user.resolve_finalization(FinalizationTrigger.FAILURE, placeholder) is not None:
            self._on_user_finalized()
            self._flush_assistant_buffer()

    #
    # Assistant
    #

    def handle_response_created(self, response_id: Optional[str] = None) -> AssistantStartAction:
        """Start an assistant turn, settling the user turn first."""
        action = self._prepare_assistant_start()
        logger.debug(f"{self}: response {response_id} starting, user turn: {action.value}")

        if action == AssistantStartAction.FINALIZE_FROM_DELTAS:
            self._cancel_stt_timer()
            if self._user.resolve_finalization(FinalizationTrigger.OTHER_ROLE_STARTED):
                self._on_user_finalized()
            self._flush_assistant_buffer()
        elif action == AssistantStartAction.FINALIZE_EMPTY:
            self._cancel_stt_timer()
            self._user.finalize_empty()
            self._call_event_handler("on_turn_finalized", self._user.state)
            self._flush_assistant_buffer()

        assistant = self._assistant
        if assistant.is_active and assistant.text:
            logger.warning(f"{self}: new response before the previous one finished")
            self._finalize_assistant(FinalizationTrigger.RESPONSE_DONE)

        self._audio_transcript_mode = False
        self._suppress_audio_transcript = False
        self._assistant_cut_off = False
        if not assistant.is_active:
            assistant.start()
            self._call_event_handler("on_turn_started", assistant.state)
        return action

    def handle_response_delta(self, event: ResponseDeltaEvent):
        """Apply assistant text, or hold it while the user turn is pending."""
        if self._buffer_assistant_event(event):
            return
        self._apply_assistant_delta(event)

    def handle_response_done(self, event: ResponseDoneEvent):
        """Finalize the assistant turn, or hold the event while the user turn is pending."""
        if self._buffer_assistant_event(event):
            return
        self._apply_assistant_done(event)

    #
    # Conversation items
    #

    def handle_item_created(self, role: Optional[str], item_id: Optional[str] = None):
        """Track a conversation item created upstream."""
        if role == "user":
            user = self._user
            if user.finalized and item_id and item_id != user.item_id:
                logger.debug(f"{self}: user item {item_id} created after finalization, new turn")
                self._start_user_turn(item_id)
            elif user.is_active:
                user.adopt_item_id(item_id)
        elif role == "assistant":
            assistant = self._assistant
            if assistant.is_active:
                assistant.adopt_item_id(item_id)
            elif not (assistant.finalized and item_id == assistant.item_id):
                assistant.start(item_id)
                self._call_event_handler("on_turn_started", assistant.state)

    def handle_item_truncated(self, item_id: Optional[str] = None):
        """Finalize an assistant turn whose playback was cut short."""
        assistant = self._assistant
        if not assistant.is_active:
            return
        if item_id and assistant.item_id and item_id != assistant.item_id:
            logger.debug(f"{self}: ignoring truncation of item {item_id}")
            return
        assistant.adopt_item_id(item_id)
        self._interrupt_assistant("truncated")

    #
    # Lifecycle
    #

    def reset(self):
        """Drop all turns, buffered events and timers."""
        self._cancel_stt_timer()
        self._user.reset()
        self._assistant.reset()
        self._assistant_buffer.clear(reset_sequence=True)
        self._previous_user_item_id = None
        self._previous_user_started_at = 0
        self._previous_user_relayed = False
        self._user_relayed_item_id = None
        self._audio_transcript_mode = False
        self._suppress_audio_transcript = False
        self._assistant_cut_off = False

    def close(self):
        """Cancel pending timers."""
        self._cancel_stt_timer()

    #
    # Internals
    #

    def _start_user_turn(self, item_id: Optional[str]):
        self._cancel_stt_timer()
        dropped = self._assistant_buffer.clear()
        if dropped:
            logger.debug(f"{self}: discarding {dropped} buffered assistant events for new user turn")
        user = self._user
        if user.item_id:
            self._previous_user_item_id = user.item_id
            self._previous_user_started_at = user.state.started_at
            self._previous_user_relayed = self._user_relayed_item_id == user.item_id
        self._user_relayed_item_id = None
        user.start(item_id)
        self._on_user_turn_started()

    def _on_user_turn_started(self):
        self._call_event_handler("on_turn_started", self._user.state)

    def _on_user_finalized(self):
        self._emit_update(self._user, is_final=True)
        self._call_event_handler("on_turn_finalized", self._user.state)

    def _prepare_assistant_start(self) -> AssistantStartAction:
        user = self._user
        if not user.is_active:
            return AssistantStartAction.NONE
        if user.delta_count > 0:
            return AssistantStartAction.FINALIZE_FROM_DELTAS
        # The pending flag is set at speech stop, before the commit arrives.
        if user.pending:
            return AssistantStartAction.WAIT_FOR_PENDING
        if self.stt_timer_active:
            return AssistantStartAction.WAIT_FOR_COMMIT
        return AssistantStartAction.FINALIZE_EMPTY

    def _buffer_assistant_event(self, event: AssistantStreamEvent) -> bool:
        if self._barge_in_enabled:
            return False
        if self._user.phase not in (TurnPhase.PENDING_TRANSCRIPTION, TurnPhase.FINALIZING):
            return False
        buffered = self._assistant_buffer.push(event)
        logger.debug(
            f"{self}: holding assistant {event.kind} #{buffered.sequence} until user turn finalizes "
            f"({len(self._assistant_buffer)} buffered)"
        )
        return True

    def _flush_assistant_buffer(self):
        events = self._assistant_buffer.drain()
        if not events:
            return
        logger.debug(f"{self}: replaying {len(events)} buffered assistant events")
        for buffered in events:
            if isinstance(buffered.event, ResponseDeltaEvent):
                self._apply_assistant_delta(buffered.event)
            else:
                self._apply_assistant_done(buffered.event)

    def _apply_assistant_delta(self, event: ResponseDeltaEvent):
        if self._assistant_cut_off:
            logger.trace(f"{self}: dropping assistant delta after interruption")
            return

        has_text = bool(event.text or event.delta)
        if not event.is_audio_transcript and has_text:
            # Text output wins over the audio transcript for the rest of the response.
            if self._audio_transcript_mode:
                self._audio_transcript_mode = False
                self._suppress_audio_transcript = True
        elif event.is_audio_transcript:
            if self._suppress_audio_transcript:
                return
            self._audio_transcript_mode = True
        elif self._audio_transcript_mode:
            return

        assistant = self._assistant
        if assistant.finalized:
            logger.debug(f"{self}: ignoring assistant delta after response finished")
            return
        if not assistant.is_active:
            assistant.start(event.item_id)
            self._call_event_handler("on_turn_started", assistant.state)

        assistant.adopt_item_id(event.item_id)
        if event.text:
            changed = assistant.replace_text(event.text)
        else:
            changed = assistant.apply_delta(event.delta, event.item_id)
        if changed:
            self._emit_update(assistant, is_final=False)

    def _apply_assistant_done(self, event: ResponseDoneEvent):
        if event.is_audio_transcript and self._suppress_audio_transcript:
            return

        assistant = self._assistant
        if assistant.finalized or (not assistant.is_active and not normalize_text(event.text)):
            logger.trace(f"{self}: nothing to finalize for {event.event_type or event.kind}")
            return
        if not assistant.is_active:
            assistant.start(event.item_id)
            self._call_event_handler("on_turn_started", assistant.state)

        assistant.adopt_item_id(event.item_id)
        self._finalize_assistant(FinalizationTrigger.RESPONSE_DONE, event.text)
        if not event.is_audio_transcript:
            self._suppress_audio_transcript = True
        self._audio_transcript_mode = False

    def _interrupt_assistant(self, reason: str):
        logger.debug(f"{self}: assistant turn interrupted ({reason})")
        self._finalize_assistant(FinalizationTrigger.INTERRUPTED)
        self._assistant_cut_off = True

    def _finalize_assistant(self, trigger: FinalizationTrigger, text: Optional[str] = None):
        assistant = self._assistant
        final_text = assistant.resolve_finalization(trigger, text)
        if final_text is None:
            return
        self._emit_update(assistant, is_final=True)
        self._call_event_handler("on_turn_finalized", assistant.state)
        if final_text:
            self._request_relay("assistant", assistant.item_id, final_text, assistant.state.started_at)

    def _on_stt_fallback(self):
        self._stt_timer = None
        user = self._user
        if user.finalized or not user.is_active:
            return

        final_text = user.resolve_finalization(FinalizationTrigger.FALLBACK_TIMEOUT)
        if final_text is None:
            return
        if user.state.unresolved:
            logger.warning(f"{self}: no transcription arrived, user turn left unresolved")
        else:
            logger.warning(f"{self}: completion timed out, finalizing user turn from deltas")

        self._on_user_finalized()
        if final_text:
            self._request_relay("user", user.item_id, final_text, user.state.started_at)
        self._flush_assistant_buffer()

    def _emit_update(self, machine: TurnStateMachine, *, is_final: bool):
        state: TurnState = machine.state
        if not state.text:
            return
        update = TranscriptUpdate(
            role=state.role,
            turn_id=state.turn_id,
            text=state.text,
            is_final=is_final,
            started_at=state.started_at,
            emitted_at=self._clock.get_time(),
            item_id=state.item_id,
            unresolved=state.unresolved,
            interrupted=state.interrupted,
            failed=state.failed,
        )
        self._call_event_handler("on_transcript_update", update)

    def _relay_previous_user_item(self, text: str):
        item_id = self._previous_user_item_id
        if self._previous_user_relayed:
            logger.debug(f"{self}: previous item {item_id} already relayed, ignoring completion")
            return
        logger.debug(f"{self}: late completion for previous item {item_id}")
        self._previous_user_relayed = True
        self._request_relay("user", item_id, text, self._previous_user_started_at)

    def _request_relay(self, role: Role, item_id: Optional[str], text: str, timestamp: int):
        if role == "user" and item_id and item_id == self._user.item_id:
            self._user_relayed_item_id = item_id
        request = RelayRequest(role=role, item_id=item_id, text=text, is_final=True, timestamp=timestamp)
        self._call_event_handler("on_relay_request", request)

    def _start_stt_timer(self, delay_ms: int, callback: Callable[[], None]):
        self._cancel_stt_timer()
        self._stt_timer = self._scheduler.start(delay_ms, callback)

    def _cancel_stt_timer(self):
        self._scheduler.cancel(self._stt_timer)
        self._stt_timer = None
