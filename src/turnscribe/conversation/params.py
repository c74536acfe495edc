#
# Copyright (c) 2024–2025, Daily
#
# SPDX-License-Identifier: BSD 2-Clause License
#

"""Configuration of a conversation session."""

from typing import Optional

from pydantic import BaseModel, Field

from turnscribe.turns.patience import PatienceParams
from turnscribe.utils.env import env_int, env_truthy

MIN_STT_FALLBACK_MS = 300
MAX_STT_FALLBACK_MS = 5000
MIN_STT_EXTENDED_MS = 800
MAX_STT_EXTENDED_MS = 8000


class ConversationParams(BaseModel):
    """Configuration parameters for a conversation.

    Parameters:
        session_id: Identifier of the session relays are published under.
        barge_in_enabled: Whether user speech interrupts the assistant.
        adaptive_patience_enabled: Whether silence threshold updates are emitted.
        stt_fallback_ms: Wait after an audio commit before giving up on transcription.
        stt_extended_ms: Wait after the last transcription delta for a completion.
        diagnostics_enabled: Whether diagnostics are delivered to listeners as they happen.
        max_diagnostics_backlog: Diagnostics kept for late listeners.
        channel: Channel reported on transcript messages.
        patience: Adaptive patience configuration.
    """

    session_id: Optional[str] = None
    barge_in_enabled: bool = False
    adaptive_patience_enabled: bool = True
    stt_fallback_ms: int = Field(default=1200, ge=MIN_STT_FALLBACK_MS, le=MAX_STT_FALLBACK_MS)
    stt_extended_ms: int = Field(default=2500, ge=MIN_STT_EXTENDED_MS, le=MAX_STT_EXTENDED_MS)
    diagnostics_enabled: bool = False
    max_diagnostics_backlog: int = Field(default=500, ge=0)
    channel: str = "voice"
    patience: PatienceParams = Field(default_factory=PatienceParams)

    @classmethod
    def from_env(cls, **overrides) -> "ConversationParams":
        """Build parameters from ``TURNSCRIBE_*`` environment variables.

        Recognized variables: ``TURNSCRIBE_BARGE_IN``,
        ``TURNSCRIBE_ADAPTIVE_PATIENCE``, ``TURNSCRIBE_DIAGNOSTICS``,
        ``TURNSCRIBE_STT_FALLBACK_MS`` and ``TURNSCRIBE_STT_EXTENDED_MS``.
        Timer values outside their allowed range are clamped.

        Args:
            **overrides: Values that take precedence over the environment.

        Raises:
            InvalidEnvVarValueError: If a variable can't be parsed.
        """
        values = dict(
            barge_in_enabled=env_truthy("TURNSCRIBE_BARGE_IN", False),
            adaptive_patience_enabled=env_truthy("TURNSCRIBE_ADAPTIVE_PATIENCE", True),
            diagnostics_enabled=env_truthy("TURNSCRIBE_DIAGNOSTICS", False),
            stt_fallback_ms=env_int(
                "TURNSCRIBE_STT_FALLBACK_MS",
                1200,
                minimum=MIN_STT_FALLBACK_MS,
                maximum=MAX_STT_FALLBACK_MS,
            ),
            stt_extended_ms=env_int(
                "TURNSCRIBE_STT_EXTENDED_MS",
                2500,
                minimum=MIN_STT_EXTENDED_MS,
                maximum=MAX_STT_EXTENDED_MS,
            ),
        )
        values.update(overrides)
        return cls(**values)
