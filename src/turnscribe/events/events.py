#
# Copyright (c) 2024–2025, Daily
#
# SPDX-License-Identifier: BSD 2-Clause License
#

"""Normalized conversation events consumed by the transcript engine.

Every inbound payload is decoded once, at the ingestion boundary, into one of
the models below. ``ConversationEvent`` is a closed union discriminated by the
``kind`` field.
"""

from typing import Annotated, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter

Role = Literal["user", "assistant"]


class BaseConversationEvent(BaseModel):
    """Fields shared by all conversation events.

    Parameters:
        event_id: Upstream event identifier, if any.
        event_type: Upstream event type the event was classified from.
    """

    model_config = ConfigDict(frozen=True, extra="ignore")

    event_id: str = ""
    event_type: str = ""


class SpeechStartedEvent(BaseConversationEvent):
    """Voice activity detected on the user's input audio."""

    kind: Literal["speech_started"] = "speech_started"
    item_id: Optional[str] = None


class SpeechStoppedEvent(BaseConversationEvent):
    """Voice activity ended. Transcription is now pending."""

    kind: Literal["speech_stopped"] = "speech_stopped"
    item_id: Optional[str] = None


class AudioCommittedEvent(BaseConversationEvent):
    """The user's audio buffer was committed for transcription."""

    kind: Literal["audio_committed"] = "audio_committed"
    item_id: Optional[str] = None
    previous_item_id: Optional[str] = None


class TranscriptionDeltaEvent(BaseConversationEvent):
    """Incremental user transcription text."""

    kind: Literal["transcription_delta"] = "transcription_delta"
    item_id: Optional[str] = None
    delta: str = ""


class TranscriptionCompletedEvent(BaseConversationEvent):
    """Final user transcription. ``transcript`` may be empty."""

    kind: Literal["transcription_completed"] = "transcription_completed"
    item_id: Optional[str] = None
    transcript: str = ""


class TranscriptionFailedEvent(BaseConversationEvent):
    """User transcription failed upstream."""

    kind: Literal["transcription_failed"] = "transcription_failed"
    item_id: Optional[str] = None
    error_message: str = ""
    error_code: Optional[str] = None


class ResponseCreatedEvent(BaseConversationEvent):
    """The assistant started a response."""

    kind: Literal["response_created"] = "response_created"
    response_id: Optional[str] = None


class ResponseDeltaEvent(BaseConversationEvent):
    """Incremental assistant text.

    Parameters:
        delta: Incremental text fragment.
        text: Full text so far, when the upstream event carries it.
        is_audio_transcript: Whether the text comes from the audio transcript
            stream rather than the text stream.
    """

    kind: Literal["response_delta"] = "response_delta"
    response_id: Optional[str] = None
    item_id: Optional[str] = None
    delta: str = ""
    text: Optional[str] = None
    is_audio_transcript: bool = False


class ResponseDoneEvent(BaseConversationEvent):
    """The assistant response (or one of its streams) finished."""

    kind: Literal["response_done"] = "response_done"
    response_id: Optional[str] = None
    item_id: Optional[str] = None
    text: Optional[str] = None
    is_audio_transcript: bool = False


class ItemCreatedEvent(BaseConversationEvent):
    """A conversation item was created upstream."""

    kind: Literal["item_created"] = "item_created"
    item_id: Optional[str] = None
    role: Optional[Literal["user", "assistant", "system"]] = None
    previous_item_id: Optional[str] = None


class ItemTruncatedEvent(BaseConversationEvent):
    """An assistant item was truncated (playback interrupted)."""

    kind: Literal["item_truncated"] = "item_truncated"
    item_id: Optional[str] = None
    audio_end_ms: Optional[int] = None


class SessionCreatedEvent(BaseConversationEvent):
    """The realtime session is ready."""

    kind: Literal["session_created"] = "session_created"
    session_id: Optional[str] = None


class SessionUpdatedEvent(BaseConversationEvent):
    """The realtime session configuration changed."""

    kind: Literal["session_updated"] = "session_updated"
    session_id: Optional[str] = None


class SessionFailedEvent(BaseConversationEvent):
    """The realtime session failed."""

    kind: Literal["session_failed"] = "session_failed"
    message: str = ""


class SessionExpiredEvent(BaseConversationEvent):
    """The realtime session expired."""

    kind: Literal["session_expired"] = "session_expired"
    message: str = ""


class ServiceErrorEvent(BaseConversationEvent):
    """A non-fatal error reported by the realtime service."""

    kind: Literal["error"] = "error"
    message: str = ""
    code: Optional[str] = None


ConversationEvent = Annotated[
    Union[
        SpeechStartedEvent,
        SpeechStoppedEvent,
        AudioCommittedEvent,
        TranscriptionDeltaEvent,
        TranscriptionCompletedEvent,
        TranscriptionFailedEvent,
        ResponseCreatedEvent,
        ResponseDeltaEvent,
        ResponseDoneEvent,
        ItemCreatedEvent,
        ItemTruncatedEvent,
        SessionCreatedEvent,
        SessionUpdatedEvent,
        SessionFailedEvent,
        SessionExpiredEvent,
        ServiceErrorEvent,
    ],
    Field(discriminator="kind"),
]

conversation_event_adapter: TypeAdapter[ConversationEvent] = TypeAdapter(ConversationEvent)

CONVERSATION_EVENT_KINDS = frozenset(
    model.model_fields["kind"].default for model in BaseConversationEvent.__subclasses__()
)
