from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass

from .clock import TimerHandle, TimerScheduler
from .stimulus import MatchTruth
from .tally import Channel, Outcome

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class ResponseWindow:
    """Per-trial response state: one open/closed flag per channel, frozen ground truth."""

    block_number: int
    trial_index: int
    truth: MatchTruth
    opened_at_s: float
    closes_at_s: float
    position_open: bool = True
    sound_open: bool = True

    @property
    def closed(self) -> bool:
        return not (self.position_open or self.sound_open)

    def is_open(self, channel: Channel) -> bool:
        return self.position_open if channel is Channel.POSITION else self.sound_open

    def is_match(self, channel: Channel) -> bool:
        if channel is Channel.POSITION:
            return self.truth.position_match
        return self.truth.letter_match

    def submit(self, channel: Channel) -> Outcome | None:
        """Close ``channel`` and classify the press. Duplicate presses return None."""

        if not self.is_open(channel):
            return None
        self._close(channel)
        return Outcome.HIT if self.is_match(channel) else Outcome.FALSE_ALARM

    def expire(self) -> list[tuple[Channel, Outcome]]:
        """Close every channel; unanswered true matches become misses."""

        results: list[tuple[Channel, Outcome]] = []
        for channel in (Channel.POSITION, Channel.SOUND):
            if not self.is_open(channel):
                continue
            self._close(channel)
            if self.is_match(channel):
                results.append((channel, Outcome.MISS))
        return results

    def discard(self) -> None:
        self.position_open = False
        self.sound_open = False

    def _close(self, channel: Channel) -> None:
        if channel is Channel.POSITION:
            self.position_open = False
        else:
            self.sound_open = False


OutcomeListener = Callable[[ResponseWindow, Channel, Outcome, float | None], None]


class ResponseWindowController:
    """Owns the single live response window and its expiry timer.

    Expiry timers are kept per trial index and cancelled when the window closes
    early (both channels answered), when the block is reset, or on stop.
    """

    def __init__(self, *, scheduler: TimerScheduler, on_outcome: OutcomeListener) -> None:
        self._scheduler = scheduler
        self._on_outcome = on_outcome
        self._current: ResponseWindow | None = None
        self._expiry_timers: dict[int, TimerHandle] = {}

    @property
    def current(self) -> ResponseWindow | None:
        return self._current

    def pending_timer_count(self) -> int:
        return sum(1 for handle in self._expiry_timers.values() if handle.pending)

    def open(
        self,
        *,
        block_number: int,
        trial_index: int,
        truth: MatchTruth,
        window_s: float,
    ) -> ResponseWindow:
        # A window as long as the tick can still be open when the next trial starts.
        self.close_current()

        now = self._scheduler.now()
        window = ResponseWindow(
            block_number=int(block_number),
            trial_index=int(trial_index),
            truth=truth,
            opened_at_s=now,
            closes_at_s=now + max(0.0, float(window_s)),
        )
        self._current = window
        self._expiry_timers[window.trial_index] = self._scheduler.call_at(
            window.closes_at_s,
            lambda idx=window.trial_index: self._on_expiry(idx),
        )
        return window

    def submit(self, channel: Channel) -> Outcome | None:
        window = self._current
        if window is None or window.closed:
            return None

        now = self._scheduler.now()
        if now >= window.closes_at_s:
            self._expire(window)
            return None

        outcome = window.submit(channel)
        if outcome is None:
            return None

        self._on_outcome(window, channel, outcome, max(0.0, now - window.opened_at_s))
        if window.closed:
            self._release_timer(window.trial_index)
        return outcome

    def close_current(self) -> None:
        window = self._current
        if window is None or window.closed:
            return
        self._expire(window)

    def cancel(self) -> None:
        """Drop every pending expiry and the live window without scoring it."""

        for handle in self._expiry_timers.values():
            handle.cancel()
        self._expiry_timers.clear()
        if self._current is not None and not self._current.closed:
            logger.debug("Discarding unscored trial %d", self._current.trial_index)
            self._current.discard()
        self._current = None

    def _on_expiry(self, trial_index: int) -> None:
        self._expiry_timers.pop(trial_index, None)
        window = self._current
        if window is None or window.trial_index != trial_index or window.closed:
            return
        self._expire(window)

    def _expire(self, window: ResponseWindow) -> None:
        self._release_timer(window.trial_index)
        for channel, outcome in window.expire():
            self._on_outcome(window, channel, outcome, None)

    def _release_timer(self, trial_index: int) -> None:
        handle = self._expiry_timers.pop(trial_index, None)
        if handle is not None:
            handle.cancel()
