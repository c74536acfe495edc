#
# Copyright (c) 2024–2025, Daily
#
# SPDX-License-Identifier: BSD 2-Clause License
#

"""Exception types raised by turnscribe.

Recoverable conditions (empty completions, duplicate relays, failed
deliveries) are absorbed and logged by the engine. Only the errors below
escape to the host.
"""


class TurnscribeError(Exception):
    """Base class for all turnscribe errors."""

    pass


class TranscriptEngineError(TurnscribeError):
    """Raised when an engine invariant is violated by the caller."""

    pass


class EventClassificationError(TurnscribeError):
    """Raised by strict event parsing when a payload can't be classified."""

    def __init__(self, message: str, payload=None):
        """Initialize the error.

        Args:
            message: Description of the problem.
            payload: The raw payload that failed to parse, if available.
        """
        super().__init__(message)
        self.payload = payload
