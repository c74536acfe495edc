#
# Copyright (c) 2024–2025, Daily
#
# SPDX-License-Identifier: BSD 2-Clause License
#

"""Wire models for realtime speech service events.

Only the events that drive transcript assembly are modeled. Fields the
upstream service sometimes omits are optional so a slightly different
payload shape degrades to missing data rather than a rejected event.
"""

import json
from typing import Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, ValidationError

from turnscribe.utils.exceptions import EventClassificationError

#
# shared structures
#


class ItemContent(BaseModel):
    """Content within a conversation item.

    Parameters:
        type: Content type (text, audio, input_text, or input_audio).
        text: Text content for text-based items.
        transcript: Transcribed text for audio items.
    """

    model_config = ConfigDict(extra="ignore")

    type: str = "text"
    text: Optional[str] = None
    transcript: Optional[str] = None

    @property
    def is_audio(self) -> bool:
        """Whether this part carries an audio transcript."""
        return "audio" in self.type

    @property
    def value(self) -> Optional[str]:
        """The text carried by this part, whichever field holds it."""
        return self.transcript if self.is_audio else self.text


class ConversationItem(BaseModel):
    """A conversation item in the realtime session.

    Parameters:
        id: Identifier for the item.
        type: Item type (message, function_call, ...).
        role: Speaker role for message items.
        content: Content list for message items.
    """

    model_config = ConfigDict(extra="ignore")

    id: Optional[str] = None
    type: str = "message"
    status: Optional[str] = None
    role: Optional[Literal["user", "assistant", "system"]] = None
    content: Optional[List[ItemContent]] = None


class RealtimeError(BaseModel):
    """Error information from the realtime service.

    Parameters:
        type: Error type identifier.
        code: Specific error code.
        message: Human-readable error message.
    """

    model_config = ConfigDict(extra="ignore", coerce_numbers_to_str=True)

    type: Optional[str] = None
    code: Optional[str] = None
    message: str = ""


class SessionInfo(BaseModel):
    """Session properties echoed by the service. Only the id is kept."""

    model_config = ConfigDict(extra="ignore")

    id: Optional[str] = None


class Response(BaseModel):
    """An assistant response.

    Parameters:
        id: Unique identifier for the response.
        status: Current status of the response.
        output: Conversation items produced by the response.
    """

    model_config = ConfigDict(extra="ignore")

    id: Optional[str] = None
    status: Optional[str] = None
    output: List[ConversationItem] = []


#
# server events
#


class ServerEvent(BaseModel):
    """Base class for server events received from the realtime service.

    Parameters:
        event_id: Unique identifier for the event.
        type: Type of the server event.
    """

    model_config = ConfigDict(arbitrary_types_allowed=True, extra="ignore")

    event_id: str = ""
    type: str


class SessionCreatedEvent(ServerEvent):
    """Event indicating a session has been created."""

    type: Literal["session.created"]
    session: SessionInfo = SessionInfo()


class SessionUpdatedEvent(ServerEvent):
    """Event indicating a session has been updated."""

    type: Literal["session.updated"]
    session: SessionInfo = SessionInfo()


class SessionFailedEvent(ServerEvent):
    """Event indicating the session can no longer be used."""

    type: Literal["session.failed"]
    error: Optional[RealtimeError] = None


class SessionExpiredEvent(ServerEvent):
    """Event indicating the session reached its maximum duration."""

    type: Literal["session.expired"]
    error: Optional[RealtimeError] = None


class ConversationItemCreated(ServerEvent):
    """Event indicating a conversation item has been created.

    Parameters:
        previous_item_id: ID of the previous item, if any.
        item: The created conversation item.
    """

    type: Literal["conversation.item.created"]
    previous_item_id: Optional[str] = None
    item: ConversationItem


class ConversationItemInputAudioTranscriptionDelta(ServerEvent):
    """Event containing incremental input audio transcription.

    Parameters:
        item_id: ID of the conversation item being transcribed.
        delta: Incremental transcription text.
    """

    type: Literal["conversation.item.input_audio_transcription.delta"]
    item_id: Optional[str] = None
    content_index: int = 0
    delta: str = ""


class ConversationItemInputAudioTranscriptionCompleted(ServerEvent):
    """Event indicating input audio transcription is complete.

    Parameters:
        item_id: ID of the conversation item that was transcribed.
        transcript: Complete transcription text.
    """

    type: Literal["conversation.item.input_audio_transcription.completed"]
    item_id: Optional[str] = None
    content_index: int = 0
    transcript: str = ""


class ConversationItemInputAudioTranscriptionFailed(ServerEvent):
    """Event indicating input audio transcription failed.

    Parameters:
        item_id: ID of the conversation item that failed transcription.
        error: Error details for the transcription failure.
    """

    type: Literal["conversation.item.input_audio_transcription.failed"]
    item_id: Optional[str] = None
    content_index: int = 0
    error: RealtimeError = RealtimeError()


class ConversationItemTruncated(ServerEvent):
    """Event indicating a conversation item has been truncated.

    Parameters:
        item_id: ID of the truncated conversation item.
        audio_end_ms: End time in milliseconds for the truncated audio.
    """

    type: Literal["conversation.item.truncated"]
    item_id: Optional[str] = None
    content_index: int = 0
    audio_end_ms: Optional[int] = None


class ResponseCreated(ServerEvent):
    """Event indicating an assistant response has been created."""

    type: Literal["response.created"]
    response: Response = Response()


class ResponseDone(ServerEvent):
    """Event indicating an assistant response is complete."""

    type: Literal["response.done"]
    response: Response = Response()


class ResponseContentPart(ServerEvent):
    """Event carrying a whole content part of a response.

    Covers ``response.content_part.added`` and ``response.content_part.done``.
    """

    type: Literal["response.content_part.added", "response.content_part.done"]
    response_id: Optional[str] = None
    item_id: Optional[str] = None
    output_index: int = 0
    content_index: int = 0
    part: ItemContent = ItemContent()


class ResponseTextDelta(ServerEvent):
    """Event containing incremental text from a response.

    Covers ``response.text.delta`` and ``response.output_text.delta``.
    """

    type: Literal["response.text.delta", "response.output_text.delta"]
    response_id: Optional[str] = None
    item_id: Optional[str] = None
    output_index: int = 0
    content_index: int = 0
    delta: str = ""


class ResponseTextDone(ServerEvent):
    """Event indicating text content is complete.

    Covers ``response.text.done`` and ``response.output_text.done``.
    """

    type: Literal["response.text.done", "response.output_text.done"]
    response_id: Optional[str] = None
    item_id: Optional[str] = None
    output_index: int = 0
    content_index: int = 0
    text: Optional[str] = None


class ResponseAudioTranscriptDelta(ServerEvent):
    """Event containing incremental audio transcript from a response."""

    type: Literal["response.audio_transcript.delta", "response.output_audio_transcript.delta"]
    response_id: Optional[str] = None
    item_id: Optional[str] = None
    output_index: int = 0
    content_index: int = 0
    delta: str = ""


class ResponseAudioTranscriptDone(ServerEvent):
    """Event indicating audio transcript is complete."""

    type: Literal["response.audio_transcript.done", "response.output_audio_transcript.done"]
    response_id: Optional[str] = None
    item_id: Optional[str] = None
    output_index: int = 0
    content_index: int = 0
    transcript: Optional[str] = None


class InputAudioBufferSpeechStarted(ServerEvent):
    """Event indicating speech has started in the input audio buffer.

    Parameters:
        audio_start_ms: Start time of speech in milliseconds.
        item_id: ID of the associated conversation item.
    """

    type: Literal["input_audio_buffer.speech_started"]
    audio_start_ms: Optional[int] = None
    item_id: Optional[str] = None


class InputAudioBufferSpeechStopped(ServerEvent):
    """Event indicating speech has stopped in the input audio buffer.

    Parameters:
        audio_end_ms: End time of speech in milliseconds.
        item_id: ID of the associated conversation item.
    """

    type: Literal["input_audio_buffer.speech_stopped"]
    audio_end_ms: Optional[int] = None
    item_id: Optional[str] = None


class InputAudioBufferCommitted(ServerEvent):
    """Event indicating the input audio buffer has been committed.

    Parameters:
        previous_item_id: ID of the previous item, if any.
        item_id: ID of the committed conversation item.
    """

    type: Literal["input_audio_buffer.committed"]
    previous_item_id: Optional[str] = None
    item_id: Optional[str] = None


class ErrorEvent(ServerEvent):
    """Event indicating an error occurred."""

    type: Literal["error"]
    error: RealtimeError = RealtimeError()


_server_event_types = {
    "error": ErrorEvent,
    "session.created": SessionCreatedEvent,
    "session.updated": SessionUpdatedEvent,
    "session.failed": SessionFailedEvent,
    "session.expired": SessionExpiredEvent,
    "input_audio_buffer.committed": InputAudioBufferCommitted,
    "input_audio_buffer.speech_started": InputAudioBufferSpeechStarted,
    "input_audio_buffer.speech_stopped": InputAudioBufferSpeechStopped,
    "conversation.item.created": ConversationItemCreated,
    "conversation.item.input_audio_transcription.delta": ConversationItemInputAudioTranscriptionDelta,
    "conversation.item.input_audio_transcription.completed": ConversationItemInputAudioTranscriptionCompleted,
    "conversation.item.input_audio_transcription.failed": ConversationItemInputAudioTranscriptionFailed,
    "conversation.item.truncated": ConversationItemTruncated,
    "response.created": ResponseCreated,
    "response.done": ResponseDone,
    "response.content_part.added": ResponseContentPart,
    "response.content_part.done": ResponseContentPart,
    "response.text.delta": ResponseTextDelta,
    "response.output_text.delta": ResponseTextDelta,
    "response.text.done": ResponseTextDone,
    "response.output_text.done": ResponseTextDone,
    "response.audio_transcript.delta": ResponseAudioTranscriptDelta,
    "response.output_audio_transcript.delta": ResponseAudioTranscriptDelta,
    "response.audio_transcript.done": ResponseAudioTranscriptDone,
    "response.output_audio_transcript.done": ResponseAudioTranscriptDone,
}


def is_known_server_event(event_type: str) -> bool:
    """Whether ``event_type`` is one of the modeled server events."""
    return event_type in _server_event_types


def parse_server_event(data: Union[str, bytes, Dict[str, Any]]) -> Optional[ServerEvent]:
    """Parse a server event from a JSON string or an already decoded dict.

    Args:
        data: JSON text or dict containing the server event.

    Returns:
        The parsed server event, or None if the event type isn't modeled.

    Raises:
        EventClassificationError: If the payload isn't valid JSON, has no
            type, or doesn't validate against the model for its type.
    """
    if isinstance(data, (str, bytes)):
        try:
            data = json.loads(data)
        except ValueError as e:
            raise EventClassificationError(f"Invalid JSON event: {e}", data)

    if not isinstance(data, dict) or not isinstance(data.get("type"), str):
        raise EventClassificationError("Event payload has no type", data)

    event_type = data["type"].lower()
    if event_type not in _server_event_types:
        return None

    try:
        return _server_event_types[event_type].model_validate({**data, "type": event_type})
    except ValidationError as e:
        raise EventClassificationError(f"Invalid {event_type} event: {e}", data)
