#
# Copyright (c) 2024–2025, Daily
#
# SPDX-License-Identifier: BSD 2-Clause License
#

"""Classification of raw inbound payloads into conversation events."""

import json
from typing import Any, Callable, Dict, Optional

from loguru import logger
from pydantic import ValidationError

from turnscribe.events import server_events as se
from turnscribe.events.events import (
    AudioCommittedEvent,
    BaseConversationEvent,
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
    conversation_event_adapter,
)
from turnscribe.utils.exceptions import EventClassificationError


def _response_text(response: se.Response) -> Optional[str]:
    parts = []
    for item in response.output:
        if item.role not in (None, "assistant"):
            continue
        for content in item.content or []:
            if content.value:
                parts.append(content.value.strip())
    text = " ".join(p for p in parts if p)
    return text or None


def _response_item_id(response: se.Response) -> Optional[str]:
    return next((item.id for item in response.output if item.id), None)


def _base(event: se.ServerEvent) -> Dict[str, Any]:
    return {"event_id": event.event_id, "event_type": event.type}


def _speech_started(event: se.InputAudioBufferSpeechStarted):
    return SpeechStartedEvent(**_base(event), item_id=event.item_id)


def _speech_stopped(event: se.InputAudioBufferSpeechStopped):
    return SpeechStoppedEvent(**_base(event), item_id=event.item_id)


def _committed(event: se.InputAudioBufferCommitted):
    return AudioCommittedEvent(
        **_base(event), item_id=event.item_id, previous_item_id=event.previous_item_id
    )


def _transcription_delta(event: se.ConversationItemInputAudioTranscriptionDelta):
    return TranscriptionDeltaEvent(**_base(event), item_id=event.item_id, delta=event.delta)


def _transcription_completed(event: se.ConversationItemInputAudioTranscriptionCompleted):
    return TranscriptionCompletedEvent(
        **_base(event), item_id=event.item_id, transcript=event.transcript
    )


def _transcription_failed(event: se.ConversationItemInputAudioTranscriptionFailed):
    return TranscriptionFailedEvent(
        **_base(event),
        item_id=event.item_id,
        error_message=event.error.message,
        error_code=event.error.code,
    )


def _response_created(event: se.ResponseCreated):
    return ResponseCreatedEvent(**_base(event), response_id=event.response.id)


def _response_done(event: se.ResponseDone):
    return ResponseDoneEvent(
        **_base(event),
        response_id=event.response.id,
        item_id=_response_item_id(event.response),
        text=_response_text(event.response),
    )


def _content_part(event: se.ResponseContentPart):
    common = dict(
        **_base(event),
        response_id=event.response_id,
        item_id=event.item_id,
        is_audio_transcript=event.part.is_audio,
    )
    if event.type.endswith(".added"):
        return ResponseDeltaEvent(**common, text=event.part.value or None)
    return ResponseDoneEvent(**common, text=event.part.value or None)


def _text_delta(event: se.ResponseTextDelta):
    return ResponseDeltaEvent(
        **_base(event), response_id=event.response_id, item_id=event.item_id, delta=event.delta
    )


def _text_done(event: se.ResponseTextDone):
    return ResponseDoneEvent(
        **_base(event), response_id=event.response_id, item_id=event.item_id, text=event.text
    )


def _audio_transcript_delta(event: se.ResponseAudioTranscriptDelta):
    return ResponseDeltaEvent(
        **_base(event),
        response_id=event.response_id,
        item_id=event.item_id,
        delta=event.delta,
        is_audio_transcript=True,
    )


def _audio_transcript_done(event: se.ResponseAudioTranscriptDone):
    return ResponseDoneEvent(
        **_base(event),
        response_id=event.response_id,
        item_id=event.item_id,
        text=event.transcript,
        is_audio_transcript=True,
    )


def _item_created(event: se.ConversationItemCreated):
    return ItemCreatedEvent(
        **_base(event),
        item_id=event.item.id,
        role=event.item.role,
        previous_item_id=event.previous_item_id,
    )


def _item_truncated(event: se.ConversationItemTruncated):
    return ItemTruncatedEvent(**_base(event), item_id=event.item_id, audio_end_ms=event.audio_end_ms)


def _session_created(event: se.SessionCreatedEvent):
    return SessionCreatedEvent(**_base(event), session_id=event.session.id)


def _session_updated(event: se.SessionUpdatedEvent):
    return SessionUpdatedEvent(**_base(event), session_id=event.session.id)


def _session_failed(event: se.SessionFailedEvent):
    return SessionFailedEvent(**_base(event), message=event.error.message if event.error else "")


def _session_expired(event: se.SessionExpiredEvent):
    return SessionExpiredEvent(**_base(event), message=event.error.message if event.error else "")


def _error(event: se.ErrorEvent):
    return ServiceErrorEvent(**_base(event), message=event.error.message, code=event.error.code)


_converters: Dict[type, Callable[[Any], ConversationEvent]] = {
    se.InputAudioBufferSpeechStarted: _speech_started,
    se.InputAudioBufferSpeechStopped: _speech_stopped,
    se.InputAudioBufferCommitted: _committed,
    se.ConversationItemInputAudioTranscriptionDelta: _transcription_delta,
    se.ConversationItemInputAudioTranscriptionCompleted: _transcription_completed,
    se.ConversationItemInputAudioTranscriptionFailed: _transcription_failed,
    se.ResponseCreated: _response_created,
    se.ResponseDone: _response_done,
    se.ResponseContentPart: _content_part,
    se.ResponseTextDelta: _text_delta,
    se.ResponseTextDone: _text_done,
    se.ResponseAudioTranscriptDelta: _audio_transcript_delta,
    se.ResponseAudioTranscriptDone: _audio_transcript_done,
    se.ConversationItemCreated: _item_created,
    se.ConversationItemTruncated: _item_truncated,
    se.SessionCreatedEvent: _session_created,
    se.SessionUpdatedEvent: _session_updated,
    se.SessionFailedEvent: _session_failed,
    se.SessionExpiredEvent: _session_expired,
    se.ErrorEvent: _error,
}


def parse_conversation_event(raw: Any) -> Optional[ConversationEvent]:
    """Decode a payload into a conversation event.

    Accepts an already classified event, a dict using the normalized ``kind``
    field, or an upstream server event (JSON text or dict with a ``type``).

    Args:
        raw: The payload to decode.

    Returns:
        The conversation event, or None if the payload is of a kind the
        engine doesn't handle.

    Raises:
        EventClassificationError: If the payload is malformed.
    """
    if isinstance(raw, BaseConversationEvent):
        return raw

    if isinstance(raw, (str, bytes)):
        try:
            raw = json.loads(raw)
        except ValueError as e:
            raise EventClassificationError(f"Invalid JSON event: {e}", raw)

    if isinstance(raw, dict) and "kind" in raw and "type" not in raw:
        try:
            return conversation_event_adapter.validate_python(raw)
        except ValidationError as e:
            if any(err["type"] == "union_tag_invalid" for err in e.errors()):
                return None
            raise EventClassificationError(f"Invalid conversation event: {e}", raw)

    server_event = se.parse_server_event(raw)
    if server_event is None:
        return None
    return _converters[type(server_event)](server_event)


def classify_event(raw: Any) -> Optional[ConversationEvent]:
    """Classify a payload, ignoring anything the engine can't use.

    Unknown kinds are silently dropped. Malformed payloads of a known kind are
    logged and dropped.

    Args:
        raw: The payload to classify.

    Returns:
        The conversation event, or None.
    """
    try:
        return parse_conversation_event(raw)
    except EventClassificationError as e:
        logger.warning(f"Ignoring malformed event: {e}")
        return None
