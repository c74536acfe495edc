#
# Copyright (c) 2024–2025, Daily
#
# SPDX-License-Identifier: BSD 2-Clause License
#

"""Conversation orchestrator.

The orchestrator is the single entry point for one conversation session. It
classifies inbound realtime events, drives the transcript engine, relays
finalized turns exactly once, stamps observer messages with a total order and
recommends silence thresholds to the transport.

Everything runs on the caller's thread. Events are processed strictly in
arrival order; an event submitted from inside an observer callback is queued
and processed after the current one.
"""

import uuid
from collections import deque
from enum import Enum
from typing import Any, Callable, Deque, Dict, Iterator, List, Optional

from loguru import logger
from pydantic import BaseModel

from turnscribe.clocks.base_clock import BaseClock
from turnscribe.clocks.system_clock import SystemClock
from turnscribe.conversation.emitter import (
    ConversationEventEmitter,
    DiagnosticEvent,
    DiagnosticsCallback,
    ObserverCallback,
)
from turnscribe.conversation.params import ConversationParams
from turnscribe.events.classifier import classify_event
from turnscribe.events.events import (
    AudioCommittedEvent,
    ConversationEvent,
    ItemCreatedEvent,
    ItemTruncatedEvent,
    ResponseCreatedEvent,
    ResponseDeltaEvent,
    ResponseDoneEvent,
    ServiceErrorEvent,
    SessionCreatedEvent,
    SessionExpiredEvent,
    SessionFailedEvent,
    SessionUpdatedEvent,
    SpeechStartedEvent,
    SpeechStoppedEvent,
    TranscriptionCompletedEvent,
    TranscriptionDeltaEvent,
    TranscriptionFailedEvent,
)
from turnscribe.relay.deduplicator import BroadcastSink, RelayDeduplicator
from turnscribe.scheduling.scheduler import AsyncioScheduler, BaseScheduler
from turnscribe.transcript.engine import (
    RelayRequest,
    SpeechStartResult,
    TranscriptEngine,
    TranscriptUpdate,
)
from turnscribe.transcript.sequencer import Message, MessageSequencer, sort_messages
from turnscribe.transcript.text import count_words, failure_text
from turnscribe.turns.patience import AdaptivePatienceController
from turnscribe.turns.turn_state import TurnState
from turnscribe.utils.base_object import BaseObject


class ConversationStatus(str, Enum):
    """Status of the realtime session."""

    IDLE = "idle"
    CONNECTED = "connected"
    FAILED = "failed"
    EXPIRED = "expired"


class ConversationSnapshot(BaseModel):
    """Point-in-time view of a conversation.

    Parameters:
        status: Session status.
        error: Last error message, if any.
        session_id: Session the transcripts are relayed under.
        realtime_session_id: Session id reported by the realtime service.
        user_partial: Text of the user turn in progress.
        assistant_partial: Text of the assistant turn in progress.
        silence_threshold_ms: Last recommended silence threshold.
        message_count: Number of transcript messages.
        diagnostics_enabled: Whether diagnostics are being delivered.
    """

    status: ConversationStatus
    error: Optional[str] = None
    session_id: str
    realtime_session_id: Optional[str] = None
    user_partial: str = ""
    assistant_partial: str = ""
    silence_threshold_ms: Optional[int] = None
    message_count: int = 0
    diagnostics_enabled: bool = False


def build_session_update(silence_ms: int, *, prefix_padding_ms: Optional[int] = None) -> Dict[str, Any]:
    """Build the ``session.update`` payload applying a silence threshold.

    Args:
        silence_ms: Silence duration that ends a user turn.
        prefix_padding_ms: Optional audio kept before detected speech.

    Returns:
        The client event to send to the realtime service.
    """
    turn_detection: Dict[str, Any] = {"type": "server_vad", "silence_duration_ms": silence_ms}
    if prefix_padding_ms is not None:
        turn_detection["prefix_padding_ms"] = prefix_padding_ms
    return {"type": "session.update", "session": {"turn_detection": turn_detection}}


class ConversationOrchestrator(BaseObject):
    """Coordinates transcript assembly for one conversation session.

    Observers receive dicts with a ``type`` of ``partial``, ``final``,
    ``status`` or ``error``. Transcript events carry the observer
    ``Message`` under ``message``.

    Event handlers available:

    - on_silence_threshold_update: A new silence threshold is recommended.
      The transport is expected to apply it, e.g. with ``build_session_update()``.
    - on_message: A transcript message was produced or updated.

    Example::

        @orchestrator.event_handler("on_silence_threshold_update")
        async def on_silence_threshold_update(orchestrator, silence_ms: int):
            await transport.send(build_session_update(silence_ms))
    """

    def __init__(
        self,
        *,
        params: Optional[ConversationParams] = None,
        sink: Optional[BroadcastSink] = None,
        clock: Optional[BaseClock] = None,
        scheduler: Optional[BaseScheduler] = None,
        sequence_counter: Optional[Iterator[int]] = None,
        **kwargs,
    ):
        """Initialize the orchestrator.

        Args:
            params: Session configuration.
            sink: Broadcast collaborator finalized turns are relayed to.
            clock: Clock for turn timestamps. Defaults to ``SystemClock``.
            scheduler: Timer scheduler. Defaults to ``AsyncioScheduler``.
            sequence_counter: Source of message sequence ids.
            **kwargs: Additional arguments passed to BaseObject.
        """
        super().__init__(**kwargs)
        self._params = params or ConversationParams()
        self._clock = clock or SystemClock()
        self._scheduler = scheduler or AsyncioScheduler()
        self._session_id = self._params.session_id or uuid.uuid4().hex

        self._engine = TranscriptEngine(
            clock=self._clock,
            scheduler=self._scheduler,
            barge_in_enabled=self._params.barge_in_enabled,
            stt_fallback_ms=self._params.stt_fallback_ms,
            stt_extended_ms=self._params.stt_extended_ms,
            name=f"{self.name}::TranscriptEngine",
        )
        self._patience = AdaptivePatienceController(
            clock=self._clock,
            scheduler=self._scheduler,
            params=self._params.patience,
            name=f"{self.name}::Patience",
        )
        self._relay = RelayDeduplicator(sink=sink, session_id=self._session_id, clock=self._clock)
        self._sequencer = MessageSequencer(counter=sequence_counter)
        self._emitter = ConversationEventEmitter(
            diagnostics_enabled=self._params.diagnostics_enabled,
            max_backlog=self._params.max_diagnostics_backlog,
        )

        self._status = ConversationStatus.IDLE
        self._error: Optional[str] = None
        self._realtime_session_id: Optional[str] = None
        self._messages: Dict[str, Message] = {}
        self._partials: Dict[str, str] = {"user": "", "assistant": ""}

        self._queue: Deque[ConversationEvent] = deque()
        self._processing = False

        self._engine.add_event_handler("on_turn_started", self._on_turn_started)
        self._engine.add_event_handler("on_transcript_update", self._on_transcript_update)
        self._engine.add_event_handler("on_turn_finalized", self._on_turn_finalized)
        self._engine.add_event_handler("on_relay_request", self._on_relay_request)
        self._patience.add_event_handler(
            "on_silence_threshold_update", self._on_silence_threshold_update
        )

        self._register_event_handler("on_silence_threshold_update")
        self._register_event_handler("on_message")

    @property
    def params(self) -> ConversationParams:
        """The session configuration."""
        return self._params

    @property
    def session_id(self) -> str:
        """Session the transcripts are relayed under."""
        return self._session_id

    @property
    def status(self) -> ConversationStatus:
        """Current session status."""
        return self._status

    @property
    def engine(self) -> TranscriptEngine:
        """The transcript engine."""
        return self._engine

    @property
    def patience(self) -> AdaptivePatienceController:
        """The adaptive patience controller."""
        return self._patience

    @property
    def relay(self) -> RelayDeduplicator:
        """The relay deduplicator."""
        return self._relay

    @property
    def messages(self) -> List[Message]:
        """Latest version of every transcript message, in conversation order."""
        return sort_messages(self._messages.values())

    def subscribe(self, callback: ObserverCallback) -> Callable[[], None]:
        """Subscribe to transcript, status and error events.

        Returns:
            A function that removes the subscription.
        """
        return self._emitter.subscribe(callback)

    def add_diagnostics_listener(self, callback: DiagnosticsCallback) -> Callable[[], None]:
        """Subscribe to the diagnostics stream.

        Returns:
            A function that removes the listener.
        """
        return self._emitter.add_diagnostics_listener(callback)

    def enable_diagnostics(self, enabled: bool):
        """Turn diagnostics delivery on or off."""
        self._emitter.enable_diagnostics(enabled)

    def snapshot(self) -> ConversationSnapshot:
        """Return a point-in-time view of the conversation."""
        return ConversationSnapshot(
            status=self._status,
            error=self._error,
            session_id=self._session_id,
            realtime_session_id=self._realtime_session_id,
            user_partial=self._partials["user"],
            assistant_partial=self._partials["assistant"],
            silence_threshold_ms=self._patience.current_silence_ms,
            message_count=len(self._messages),
            diagnostics_enabled=self._emitter.diagnostics_enabled,
        )

    def process_event(self, raw: Any) -> Optional[ConversationEvent]:
        """Process one inbound event.

        Args:
            raw: JSON text or dict from the realtime service, a dict in the
                normalized ``kind`` form, or a ``ConversationEvent``.

        Returns:
            The classified event, or None if the event was ignored.
        """
        event = classify_event(raw)
        if event is None:
            return None

        self._queue.append(event)
        if self._processing:
            return event

        self._processing = True
        try:
            while self._queue:
                self._dispatch(self._queue.popleft())
        finally:
            self._processing = False
        return event

    def reset(self):
        """Drop all conversation state. Subscriptions are kept."""
        self._engine.reset()
        self._patience.reset()
        self._relay.reset()
        self._sequencer.reset()
        self._messages.clear()
        self._partials = {"user": "", "assistant": ""}
        self._queue.clear()
        self._error = None
        self._diagnostic("info", "conversation.reset")

    async def cleanup(self):
        """Cancel timers and wait for async handlers."""
        self._engine.close()
        self._patience.reset()
        await self._engine.cleanup()
        await self._patience.cleanup()
        await super().cleanup()

    #
    # Inbound events
    #

    def _dispatch(self, event: ConversationEvent):
        self._diagnostic("event", event.kind, src="realtime", **event.model_dump(exclude_defaults=True))

        if isinstance(event, SpeechStartedEvent):
            self._handle_evt_speech_started(event)
        elif isinstance(event, SpeechStoppedEvent):
            self._handle_evt_speech_stopped(event)
        elif isinstance(event, AudioCommittedEvent):
            self._handle_evt_audio_committed(event)
        elif isinstance(event, TranscriptionDeltaEvent):
            self._engine.handle_transcription_delta(event.delta, event.item_id)
        elif isinstance(event, TranscriptionCompletedEvent):
            self._engine.handle_transcription_completed(event.transcript, event.item_id)
        elif isinstance(event, TranscriptionFailedEvent):
            self._handle_evt_transcription_failed(event)
        elif isinstance(event, ResponseCreatedEvent):
            self._handle_evt_response_created(event)
        elif isinstance(event, ResponseDeltaEvent):
            self._engine.handle_response_delta(event)
        elif isinstance(event, ResponseDoneEvent):
            self._engine.handle_response_done(event)
        elif isinstance(event, ItemCreatedEvent):
            self._engine.handle_item_created(event.role, event.item_id)
        elif isinstance(event, ItemTruncatedEvent):
            self._engine.handle_item_truncated(event.item_id)
        elif isinstance(event, (SessionCreatedEvent, SessionUpdatedEvent)):
            self._handle_evt_session_ready(event)
        elif isinstance(event, (SessionFailedEvent, SessionExpiredEvent)):
            self._handle_evt_session_ended(event)
        elif isinstance(event, ServiceErrorEvent):
            self._handle_evt_error(event)

    def _handle_evt_speech_started(self, event: SpeechStartedEvent):
        result = self._engine.handle_speech_started(event.item_id)
        self._patience.speech_started("user")
        if result == SpeechStartResult.CONTINUE_ACTIVE_TURN:
            self._diagnostic("info", "user.turn.continued")

    def _handle_evt_speech_stopped(self, event: SpeechStoppedEvent):
        self._engine.handle_speech_stopped(event.item_id)
        self._patience.speech_ended("user")

    def _handle_evt_audio_committed(self, event: AudioCommittedEvent):
        self._patience.speech_ended("user")
        fallback_ms = self._engine.handle_audio_committed(event.item_id)
        if fallback_ms is not None:
            self._diagnostic("info", "stt.fallback.scheduled", timeout_ms=fallback_ms)

    def _handle_evt_transcription_failed(self, event: TranscriptionFailedEvent):
        self._engine.handle_transcription_failed(event.error_message, event.error_code, event.item_id)
        self._emit_error(
            event.error_message or failure_text(event.error_message, event.error_code),
            source="transcription",
            item_id=event.item_id,
            recoverable=True,
        )

    def _handle_evt_response_created(self, event: ResponseCreatedEvent):
        action = self._engine.handle_response_created(event.response_id)
        self._diagnostic(
            "info",
            "assistant.response.start",
            action=action.value,
            user_finalized=self._engine.user.finalized,
            user_has_delta=self._engine.user.delta_count > 0,
            user_speech_pending=self._engine.user.pending,
        )

    def _handle_evt_session_ready(self, event):
        if event.session_id:
            self._realtime_session_id = event.session_id
        self._set_status(ConversationStatus.CONNECTED)

    def _handle_evt_session_ended(self, event):
        expired = isinstance(event, SessionExpiredEvent)
        status = ConversationStatus.EXPIRED if expired else ConversationStatus.FAILED
        message = event.message or f"Session {status.value}"
        logger.error(f"{self}: realtime session {status.value}: {message}")
        self._engine.close()
        self._error = message
        self._set_status(status)
        self._emit_error(message, source="session", recoverable=False)

    def _handle_evt_error(self, event: ServiceErrorEvent):
        logger.warning(f"{self}: realtime service error {event.code}: {event.message}")
        self._error = event.message
        self._emit_error(event.message, source="service", code=event.code, recoverable=True)

    #
    # Engine events
    #

    def _on_turn_started(self, engine: TranscriptEngine, state: TurnState):
        self._relay.clear(state.role)
        self._partials[state.role] = ""
        self._diagnostic("info", f"{state.role}.turn.started", turn_id=state.turn_id)

    def _on_transcript_update(self, engine: TranscriptEngine, update: TranscriptUpdate):
        message = self._sequencer.stamp(
            update.turn_id,
            update.role,
            update.text,
            update.started_at,
            pending=not update.is_final,
            channel=self._params.channel,
            item_id=update.item_id,
            interrupted=update.interrupted,
            unresolved=update.unresolved,
        )
        self._messages[update.turn_id] = message
        self._partials[update.role] = "" if update.is_final else update.text

        self._emitter.emit(
            {
                "type": "final" if update.is_final else "partial",
                "role": update.role,
                "text": update.text,
                "timestamp": message.timestamp,
                "sequence_id": message.sequence_id,
                "item_id": update.item_id,
                "failed": update.failed,
                "message": message,
            }
        )
        self._call_event_handler("on_message", message)

    def _on_turn_finalized(self, engine: TranscriptEngine, state: TurnState):
        self._partials[state.role] = ""
        self._diagnostic(
            "info",
            f"{state.role}.turn.finalized",
            turn_id=state.turn_id,
            trigger=state.trigger.value if state.trigger else None,
            unresolved=state.unresolved,
            interrupted=state.interrupted,
        )
        if state.role != "user" or state.failed or not state.text:
            return
        if self._params.adaptive_patience_enabled:
            self._patience.record_word_count("user", count_words(state.text))

    def _on_relay_request(self, engine: TranscriptEngine, request: RelayRequest):
        self._relay.relay(
            request.role, request.item_id, request.text, request.is_final, request.timestamp
        )

    def _on_silence_threshold_update(self, controller: AdaptivePatienceController, silence_ms: int):
        self._diagnostic("info", "adaptive.silence.update", silence_ms=silence_ms)
        self._call_event_handler("on_silence_threshold_update", silence_ms)

    #
    # Helpers
    #

    def _set_status(self, status: ConversationStatus):
        if status == self._status:
            return
        self._status = status
        self._emitter.emit({"type": "status", "status": status.value})

    def _emit_error(self, message: str, **details):
        self._diagnostic("error", message, **details)
        self._emitter.emit({"type": "error", "error": message, **details})

    def _diagnostic(self, kind: str, msg: str, *, src: str = "engine", **data):
        self._emitter.emit_diagnostic(
            DiagnosticEvent(t=self._clock.get_time(), kind=kind, src=src, msg=msg, data=data)
        )
