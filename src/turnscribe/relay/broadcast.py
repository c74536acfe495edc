#
# Copyright (c) 2024–2025, Daily
#
# SPDX-License-Identifier: BSD 2-Clause License
#

"""In-memory transcript fan-out.

``TranscriptBroadcaster`` is a ``BroadcastSink`` that delivers finalized turns
to every subscriber of a session and keeps a bounded history for late
joiners. Final transcripts are deduplicated by ``(session, role, item_id)``
within a TTL, so an engine restarted mid-session can't broadcast a turn
twice. Finals without an id fall back to a signature of role, start time and
text.
"""

import hashlib
from collections import OrderedDict, defaultdict, deque
from dataclasses import dataclass, field
from typing import Callable, Deque, Dict, List, Optional

from loguru import logger

from turnscribe.clocks.base_clock import BaseClock
from turnscribe.events.events import Role
from turnscribe.utils.base_object import BaseObject

MAX_HISTORY_PER_SESSION = 200
DEFAULT_DEDUPE_TTL_MS = 30_000


@dataclass
class TranscriptHistoryEntry:
    """A transcript delivered to a session.

    Parameters:
        role: Who spoke.
        text: Transcript text.
        is_final: Whether the text is final.
        timestamp: Turn start time, in milliseconds.
        item_id: Upstream correlation id, if any.
        broadcast_at: When the entry was delivered, in milliseconds.
    """

    role: Role
    text: str
    is_final: bool
    timestamp: int
    item_id: Optional[str] = None
    broadcast_at: int = 0


@dataclass
class BroadcastMetrics:
    """Delivery counters of a broadcaster."""

    broadcasted: Dict[str, int] = field(default_factory=lambda: {"user": 0, "assistant": 0})
    dedupe_drops: Dict[str, int] = field(default_factory=lambda: {"user": 0, "assistant": 0})
    cache_size: int = 0


TranscriptSubscriber = Callable[[TranscriptHistoryEntry], None]


class TranscriptBroadcaster(BaseObject):
    """Delivers finalized transcripts to session subscribers.

    Event handlers available:

    - on_transcript_broadcast: A transcript was delivered to a session.
    - on_broadcast_error: An error was broadcast to a session.

    Example::

        @broadcaster.event_handler("on_transcript_broadcast")
        def on_transcript_broadcast(broadcaster, session_id, entry):
            ...
    """

    def __init__(
        self,
        *,
        clock: BaseClock,
        dedupe_ttl_ms: int = DEFAULT_DEDUPE_TTL_MS,
        max_history: int = MAX_HISTORY_PER_SESSION,
        dedupe_enabled: bool = True,
        **kwargs,
    ):
        """Initialize the broadcaster.

        Args:
            clock: Clock used for history timestamps and dedupe expiry.
            dedupe_ttl_ms: How long a final transcript key is remembered.
            max_history: Entries kept per session.
            dedupe_enabled: Whether duplicate finals are dropped.
            **kwargs: Additional arguments passed to BaseObject.
        """
        super().__init__(**kwargs)
        self._clock = clock
        self._dedupe_ttl_ms = dedupe_ttl_ms
        self._max_history = max_history
        self._dedupe_enabled = dedupe_enabled

        self._subscribers: Dict[str, List[TranscriptSubscriber]] = defaultdict(list)
        self._history: Dict[str, Deque[TranscriptHistoryEntry]] = {}
        self._seen: "OrderedDict[str, int]" = OrderedDict()
        self._metrics = BroadcastMetrics()

        self._register_event_handler("on_transcript_broadcast")
        self._register_event_handler("on_broadcast_error")

    @property
    def metrics(self) -> BroadcastMetrics:
        """Delivery counters."""
        self._metrics.cache_size = len(self._seen)
        return self._metrics

    def subscribe(self, session_id: str, callback: TranscriptSubscriber) -> Callable[[], None]:
        """Subscribe to a session's transcripts.

        Returns:
            A function that removes the subscription. Calling it twice is safe.
        """
        self._subscribers[session_id].append(callback)

        def unsubscribe():
            callbacks = self._subscribers.get(session_id)
            if callbacks and callback in callbacks:
                callbacks.remove(callback)
                if not callbacks:
                    del self._subscribers[session_id]

        return unsubscribe

    def history(self, session_id: str) -> List[TranscriptHistoryEntry]:
        """Transcripts delivered to a session, oldest first."""
        return list(self._history.get(session_id, ()))

    def is_duplicate(
        self,
        session_id: str,
        role: Role,
        text: str,
        is_final: bool,
        timestamp: int,
        item_id: Optional[str] = None,
    ) -> bool:
        """Whether a final transcript was already delivered within the TTL."""
        key = self._dedupe_key(session_id, role, text, is_final, timestamp, item_id)
        if not key or not self._dedupe_enabled:
            return False
        self._expire_seen()
        return key in self._seen

    def relay(
        self,
        session_id: str,
        role: Role,
        text: str,
        is_final: bool,
        timestamp: int,
        item_id: Optional[str] = None,
    ) -> bool:
        """Deliver a transcript to every subscriber of the session.

        Returns:
            False if the transcript was dropped as a duplicate.
        """
        key = self._dedupe_key(session_id, role, text, is_final, timestamp, item_id)
        if self.is_duplicate(session_id, role, text, is_final, timestamp, item_id):
            self._metrics.dedupe_drops[role] = self._metrics.dedupe_drops.get(role, 0) + 1
            logger.debug(f"{self}: dedupe drop ({role}) for session {session_id[-6:]}, item {item_id}")
            return False
        if key:
            self._seen[key] = self._clock.get_time()

        entry = TranscriptHistoryEntry(
            role=role,
            text=text,
            is_final=is_final,
            timestamp=timestamp,
            item_id=item_id,
            broadcast_at=self._clock.get_time(),
        )
        if is_final:
            history = self._history.setdefault(session_id, deque(maxlen=self._max_history))
            history.append(entry)

        for callback in list(self._subscribers.get(session_id, ())):
            try:
                callback(entry)
            except Exception as e:
                logger.exception(f"{self}: subscriber failed for session {session_id}: {e}")

        self._metrics.broadcasted[role] = self._metrics.broadcasted.get(role, 0) + 1
        self._call_event_handler("on_transcript_broadcast", session_id, entry)
        return True

    def broadcast_error(self, session_id: str, message: str):
        """Notify a session's listeners of an error."""
        logger.warning(f"{self}: error for session {session_id}: {message}")
        self._call_event_handler("on_broadcast_error", session_id, message)

    def clear_session(self, session_id: str):
        """Drop the history and subscribers of a session."""
        self._history.pop(session_id, None)
        self._subscribers.pop(session_id, None)
        prefix = f"{session_id}|"
        for key in [k for k in self._seen if k.startswith(prefix)]:
            del self._seen[key]

    def _dedupe_key(
        self,
        session_id: str,
        role: Role,
        text: str,
        is_final: bool,
        timestamp: int,
        item_id: Optional[str],
    ) -> Optional[str]:
        text = (text or "").strip()
        if not is_final or not text:
            return None
        item_id = (item_id or "").strip()
        if item_id:
            return f"{session_id}|{role}|item|{item_id}"
        digest = hashlib.sha1(text.lower().encode("utf-8")).hexdigest()[:12]
        return f"{session_id}|sig|{role}|{timestamp}|{digest}|{len(text)}"

    def _expire_seen(self):
        cutoff = self._clock.get_time() - self._dedupe_ttl_ms
        while self._seen:
            key, seen_at = next(iter(self._seen.items()))
            if seen_at >= cutoff:
                break
            del self._seen[key]
