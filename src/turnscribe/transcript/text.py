#
# Copyright (c) 2024–2025, Daily
#
# SPDX-License-Identifier: BSD 2-Clause License
#

"""Transcript text helpers.

``merge_delta()`` folds one streaming fragment into the accumulated text of a
turn. It is a pure function: replaying the same fragments always produces the
same text, and replaying a fragment that was already applied changes nothing.
"""

import re
from typing import Optional

from loguru import logger

RATE_LIMITED_TEXT = "[Rate limit exceeded]"
NOT_TRANSCRIBED_TEXT = "[Speech not transcribed]"

_CONTROL_CHARS_RE = re.compile(r"[\x00\r]")
_RATE_LIMIT_RE = re.compile(r"\b429\b|too many requests|rate[ _-]?limit", re.IGNORECASE)


def normalize_text(value: Optional[str]) -> str:
    """Normalize full transcript text.

    Strips NUL and carriage return characters and surrounding whitespace.

    Args:
        value: The text to normalize. None is treated as empty.

    Returns:
        The normalized text, possibly empty.
    """
    if not value:
        return ""
    return _CONTROL_CHARS_RE.sub("", value).strip()


def normalize_delta(value: Optional[str]) -> str:
    """Normalize a streaming fragment.

    Like ``normalize_text()`` but keeps surrounding whitespace, which is
    significant when fragments are joined.
    """
    if not value:
        return ""
    return _CONTROL_CHARS_RE.sub("", value)


def count_words(text: str) -> int:
    """Count whitespace separated words in ``text``."""
    return len(text.split())


def _overlap_length(accumulated: str, delta: str) -> int:
    """Length of the longest suffix of ``accumulated`` that prefixes ``delta``."""
    for size in range(min(len(accumulated), len(delta)), 0, -1):
        if accumulated.endswith(delta[:size]):
            return size
    return 0


def merge_delta(accumulated: str, delta: Optional[str]) -> str:
    """Merge a streaming fragment into the accumulated turn text.

    Rules, in order:

    - An empty fragment changes nothing.
    - A fragment that starts with the accumulated text is a cumulative
      update and replaces it.
    - A fragment already contained in the accumulated text is redundant.
    - A fragment the accumulated text starts with is stale.
    - Otherwise the part of the fragment past the longest overlap between the
      end of the accumulated text and the start of the fragment is appended.
      Without overlap the fragment is appended with the whitespace at the
      seam collapsed to a single space.

    Args:
        accumulated: Text accumulated so far (normalized).
        delta: The new fragment.

    Returns:
        The new accumulated text.
    """
    delta = normalize_delta(delta)
    if not delta.strip():
        return accumulated

    if not accumulated:
        return normalize_text(delta)

    if delta.startswith(accumulated):
        return normalize_text(delta)

    if delta in accumulated:
        logger.trace(f"Skipping redundant delta {delta!r}")
        return accumulated

    if accumulated.startswith(delta):
        logger.trace(f"Skipping stale delta {delta!r}")
        return accumulated

    overlap = _overlap_length(accumulated, delta)
    if overlap:
        return normalize_text(accumulated + delta[overlap:])

    if accumulated[-1].isspace() or delta[0].isspace():
        return normalize_text(f"{accumulated.rstrip()} {delta.lstrip()}")
    return normalize_text(accumulated + delta)


def failure_text(error_message: Optional[str], error_code: Optional[str] = None) -> str:
    """Placeholder text for a turn whose transcription failed.

    Args:
        error_message: The upstream error message.
        error_code: The upstream error code, if any.

    Returns:
        ``RATE_LIMITED_TEXT`` for rate limit errors, ``NOT_TRANSCRIBED_TEXT``
        otherwise.
    """
    details = f"{error_code or ''} {error_message or ''}"
    if _RATE_LIMIT_RE.search(details):
        return RATE_LIMITED_TEXT
    return NOT_TRANSCRIBED_TEXT
