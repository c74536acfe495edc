#
# Copyright (c) 2024–2025, Daily
#
# SPDX-License-Identifier: BSD 2-Clause License
#

"""Adaptive patience for end-of-turn detection.

Speakers who talk in short bursts, pause often, or have just been talking
get more silence before their turn is considered over. The controller
derives a recommended silence threshold from the most recent utterances of a
role. It never applies the threshold itself; consumers listen to the
``on_silence_threshold_update`` event and push the value to the transport.
"""

from collections import deque
from dataclasses import dataclass
from typing import Deque, Dict, List, Optional

from loguru import logger
from pydantic import BaseModel, model_validator

from turnscribe.clocks.base_clock import BaseClock
from turnscribe.events.events import Role
from turnscribe.scheduling.scheduler import BaseScheduler, TimerHandle
from turnscribe.utils.base_object import BaseObject


class PatienceParams(BaseModel):
    """Configuration parameters for adaptive patience.

    Parameters:
        base_silence_ms: Silence threshold without any bonus.
        min_silence_ms: Lower clamp for the threshold.
        max_silence_ms: Upper clamp for the threshold.
        short_fragment_bonus_ms: Bonus when the speaker uses short fragments.
        rapid_succession_bonus_ms: Bonus when utterances follow each other quickly.
        recent_engagement_bonus_ms: Bonus when the speaker talked very recently.
        max_tracked_utterances: Number of utterances remembered per role.
        recency_window_ms: Only utterances that ended within this window count.
        short_fragment_max_words: Utterances with fewer words are fragments.
        rapid_gap_ms: Maximum gap between utterances in rapid succession.
        recent_engagement_ms: Maximum age of the last utterance for engagement.
        min_change_ms: Smaller threshold changes are not reported.
        debounce_ms: Delay before a new threshold is reported. 0 reports immediately.
    """

    base_silence_ms: int = 700
    min_silence_ms: int = 500
    max_silence_ms: int = 1500
    short_fragment_bonus_ms: int = 500
    rapid_succession_bonus_ms: int = 300
    recent_engagement_bonus_ms: int = 200
    max_tracked_utterances: int = 5
    recency_window_ms: int = 10000
    short_fragment_max_words: int = 5
    rapid_gap_ms: int = 3000
    recent_engagement_ms: int = 5000
    min_change_ms: int = 100
    debounce_ms: int = 0

    @model_validator(mode="after")
    def _check_bounds(self):
        if self.min_silence_ms > self.max_silence_ms:
            raise ValueError("min_silence_ms must not be greater than max_silence_ms")
        if self.max_tracked_utterances < 1:
            raise ValueError("max_tracked_utterances must be at least 1")
        return self


@dataclass
class Utterance:
    """A completed stretch of speech.

    Parameters:
        duration_ms: How long the speaker talked.
        word_count: Words in the final transcript. 0 until the transcript is known.
        ended_at: When the speech ended, in milliseconds.
    """

    duration_ms: int
    word_count: int
    ended_at: int


@dataclass
class PatienceBonus:
    """Breakdown of the bonus added to the base silence threshold."""

    short_fragments: int = 0
    rapid_succession: int = 0
    recent_engagement: int = 0

    @property
    def total(self) -> int:
        """Sum of all bonuses."""
        return self.short_fragments + self.rapid_succession + self.recent_engagement


class AdaptivePatienceController(BaseObject):
    """Computes a silence threshold from recent speech patterns.

    Event handlers available:

    - on_silence_threshold_update: Called when the recommended silence
      threshold changes.

    Example::

        @controller.event_handler("on_silence_threshold_update")
        def on_silence_threshold_update(controller, silence_ms: int):
            ...
    """

    def __init__(
        self,
        *,
        clock: BaseClock,
        scheduler: Optional[BaseScheduler] = None,
        params: Optional[PatienceParams] = None,
        **kwargs,
    ):
        """Initialize the controller.

        Args:
            clock: Clock used to age utterances.
            scheduler: Scheduler for debounced updates. Required when
                ``params.debounce_ms`` is greater than 0.
            params: Patience configuration. Defaults are used when omitted.
            **kwargs: Additional arguments passed to BaseObject.
        """
        super().__init__(**kwargs)
        self._clock = clock
        self._scheduler = scheduler
        self._params = params or PatienceParams()

        if self._params.debounce_ms > 0 and not self._scheduler:
            raise ValueError("A scheduler is required when debounce_ms is set")

        self._utterances: Dict[Role, Deque[Utterance]] = {}
        self._speech_started_at: Dict[Role, int] = {}
        self._current_silence_ms: Optional[int] = None
        self._last_bonus = 0
        self._debounce_timer: Optional[TimerHandle] = None

        self._register_event_handler("on_silence_threshold_update")

    @property
    def params(self) -> PatienceParams:
        """The patience configuration."""
        return self._params

    @property
    def current_silence_ms(self) -> Optional[int]:
        """The last threshold reported, or None if nothing was reported yet."""
        return self._current_silence_ms

    def utterances(self, role: Role = "user") -> List[Utterance]:
        """Recent utterances for ``role``, oldest first."""
        return list(self._utterances.get(role, ()))

    def speech_started(self, role: Role = "user", now: Optional[int] = None):
        """Remember when a role started talking.

        A start while speech is already in progress keeps the first start.
        """
        if role not in self._speech_started_at:
            self._speech_started_at[role] = self._now(now)

    def speech_ended(self, role: Role = "user", now: Optional[int] = None) -> Optional[Utterance]:
        """Close the utterance opened by ``speech_started()``.

        Returns:
            The recorded utterance, or None if no speech was in progress.
        """
        started_at = self._speech_started_at.pop(role, None)
        if started_at is None:
            return None
        now = self._now(now)
        return self.record_utterance(role, duration_ms=now - started_at, word_count=0, ended_at=now)

    def record_utterance(
        self, role: Role, *, duration_ms: int, word_count: int, ended_at: int
    ) -> Utterance:
        """Add an utterance to the role's history."""
        history = self._utterances.setdefault(
            role, deque(maxlen=self._params.max_tracked_utterances)
        )
        utterance = Utterance(duration_ms=max(0, duration_ms), word_count=word_count, ended_at=ended_at)
        history.append(utterance)
        return utterance

    def record_word_count(self, role: Role, word_count: int) -> Optional[int]:
        """Attach the final word count to the role's last utterance and recompute.

        Returns:
            The new threshold if one was reported immediately, otherwise None.
        """
        history = self._utterances.get(role)
        if history:
            history[-1].word_count = word_count
        return self.update(role)

    def compute_bonus(self, role: Role = "user", now: Optional[int] = None) -> PatienceBonus:
        """Compute the patience bonus for ``role`` at time ``now``."""
        now = self._now(now)
        p = self._params
        bonus = PatienceBonus()

        recent = [u for u in self._utterances.get(role, ()) if now - u.ended_at < p.recency_window_ms]
        if not recent:
            return bonus

        fragments = [u for u in recent if 0 < u.word_count < p.short_fragment_max_words]
        if len(fragments) >= 2:
            bonus.short_fragments = p.short_fragment_bonus_ms

        # Count every utterance that belongs to a close pair, so two
        # utterances close together already qualify.
        rapid = set()
        for i in range(1, len(recent)):
            if recent[i].ended_at - recent[i - 1].ended_at < p.rapid_gap_ms:
                rapid.update((i - 1, i))
        if len(rapid) >= 2:
            bonus.rapid_succession = p.rapid_succession_bonus_ms

        if now - recent[-1].ended_at < p.recent_engagement_ms:
            bonus.recent_engagement = p.recent_engagement_bonus_ms

        return bonus

    def compute_threshold(self, role: Role = "user", now: Optional[int] = None) -> int:
        """Compute the clamped silence threshold for ``role``."""
        p = self._params
        bonus = self.compute_bonus(role, now)
        threshold = max(p.min_silence_ms, min(p.max_silence_ms, p.base_silence_ms + bonus.total))

        if bonus.total != self._last_bonus:
            self._last_bonus = bonus.total
            if bonus.total:
                logger.debug(
                    f"{self}: patience bonus {bonus.total}ms (fragments={bonus.short_fragments}, "
                    f"rapid={bonus.rapid_succession}, recent={bonus.recent_engagement}), "
                    f"threshold {threshold}ms"
                )
        return threshold

    def update(self, role: Role = "user") -> Optional[int]:
        """Recompute the threshold and report it if it changed enough.

        With debouncing enabled the report happens when the debounce timer
        fires, using the utterances known at that time.

        Returns:
            The reported threshold, or None if nothing was reported now.
        """
        if self._params.debounce_ms > 0:
            self._scheduler.cancel(self._debounce_timer)
            self._debounce_timer = self._scheduler.start(
                self._params.debounce_ms, lambda: self._report(role)
            )
            return None
        return self._report(role)

    def reset(self):
        """Forget all utterances and the last reported threshold."""
        if self._scheduler:
            self._scheduler.cancel(self._debounce_timer)
        self._debounce_timer = None
        self._utterances.clear()
        self._speech_started_at.clear()
        self._current_silence_ms = None
        self._last_bonus = 0

    def _report(self, role: Role) -> Optional[int]:
        self._debounce_timer = None
        threshold = self.compute_threshold(role)
        current = self._current_silence_ms
        if current is not None and abs(threshold - current) < self._params.min_change_ms:
            return None
        self._current_silence_ms = threshold
        logger.debug(f"{self}: silence threshold {current}ms -> {threshold}ms")
        self._call_event_handler("on_silence_threshold_update", threshold)
        return threshold

    def _now(self, now: Optional[int]) -> int:
        return self._clock.get_time() if now is None else now
