from __future__ import annotations

import dataclasses
import logging
from dataclasses import dataclass
from typing import Any

from .clock import Clock, TimerHandle, TimerScheduler
from .cognitive_core import RunState
from .config import MIN_N, RunConfig
from .presentation import PresentationPort
from .response_window import ResponseWindow, ResponseWindowController
from .stimulus import Stimulus, StimulusGenerator, StimulusSource, TrialHistory, detect_match
from .tally import Channel, Outcome, Tally, TallyAggregator

logger = logging.getLogger(__name__)

LEVEL_UP_ACCURACY = 0.75
LEVEL_DOWN_ACCURACY = 0.55

_TIMING_FIELDS = ("tick_interval_ms", "response_window_ms", "window_margin_ms", "block_pause_ms")


def next_n_for_accuracy(n: int, accuracy: float) -> int:
    """Adaptive step: up one level at >= 75%, down one below 55%, never under 1."""

    if accuracy >= LEVEL_UP_ACCURACY:
        return n + 1
    if accuracy < LEVEL_DOWN_ACCURACY:
        return max(MIN_N, n - 1)
    return n


@dataclass(frozen=True, slots=True)
class ResponseEvent:
    block_number: int
    trial_index: int
    channel: Channel
    outcome: Outcome
    response_time_s: float | None  # None for misses


@dataclass(frozen=True, slots=True)
class BlockResult:
    block_number: int
    n: int
    next_n: int
    trials: int
    tally: Tally
    combined_accuracy: float
    started_at_s: float
    completed_at_s: float

    @property
    def position_accuracy(self) -> float:
        return self.tally.accuracy(Channel.POSITION)

    @property
    def sound_accuracy(self) -> float:
        return self.tally.accuracy(Channel.SOUND)


@dataclass(frozen=True, slots=True)
class NBackSnapshot:
    """View model for the UI (pure data)."""

    title: str
    state: RunState
    prompt: str
    input_hint: str
    n: int
    trial_index: int
    trials_per_block: int
    block_number: int
    current: Stimulus | None
    tally: Tally
    position_accuracy: float
    sound_accuracy: float
    combined_accuracy: float
    position_open: bool
    sound_open: bool
    last_block: BlockResult | None = None


class DualNBackEngine:
    """Block/difficulty controller for the dual n-back task.

    - Deterministic: stimuli come from a generator seeded at construction.
    - Time is entirely via the injected Clock; the host calls ``update()``
      every frame to fire due timers.
    - ``n`` and ``trials_per_block`` only change at block boundaries.
    """

    def __init__(
        self,
        *,
        clock: Clock,
        seed: int,
        config: RunConfig | None = None,
        presenter: PresentationPort | None = None,
        generator: StimulusSource | None = None,
    ) -> None:
        self._clock = clock
        self._seed = int(seed)
        self._scheduler = TimerScheduler(clock)
        self._generator: StimulusSource = generator or StimulusGenerator(seed=self._seed)
        self._presenter = presenter

        self._config = (config or RunConfig()).with_changes()
        self._pending_config: RunConfig | None = None

        self._state = RunState.IDLE
        self._generation = 0

        self._history = TrialHistory()
        self._tally = TallyAggregator()
        self._windows = ResponseWindowController(
            scheduler=self._scheduler,
            on_outcome=self._record_outcome,
        )

        self._trial_index = 0
        self._block_number = 0
        self._block_started_at_s = 0.0
        self._current: Stimulus | None = None

        self._tick_handle: TimerHandle | None = None
        self._pause_handle: TimerHandle | None = None
        self._next_n: int | None = None

        self._events: list[ResponseEvent] = []
        self._block_results: list[BlockResult] = []

    @property
    def seed(self) -> int:
        return self._seed

    @property
    def state(self) -> RunState:
        return self._state

    @property
    def n(self) -> int:
        return self._config.n

    @property
    def config(self) -> RunConfig:
        return self._config

    @property
    def pending_config(self) -> RunConfig | None:
        return self._pending_config

    @property
    def trial_index(self) -> int:
        return self._trial_index

    @property
    def block_number(self) -> int:
        return self._block_number

    @property
    def current_stimulus(self) -> Stimulus | None:
        return self._current

    @property
    def current_window(self) -> ResponseWindow | None:
        return self._windows.current

    def tally(self) -> Tally:
        return self._tally.snapshot()

    def history(self) -> tuple[Stimulus, ...]:
        return self._history.snapshot()

    def events(self) -> list[ResponseEvent]:
        """Scored outcomes of the current run; cleared by ``start()``."""
        return list(self._events)

    def block_results(self) -> list[BlockResult]:
        """Evaluated blocks of the current run; cleared by ``start()``."""
        return list(self._block_results)

    def pending_timer_count(self) -> int:
        return self._scheduler.pending_count()

    # Control surface

    def start(self) -> None:
        if self._state is not RunState.IDLE:
            return
        self._apply_pending_config()
        self._generation += 1
        self._events.clear()
        self._block_results.clear()
        now = self._scheduler.now()
        self._begin_block(now)
        self._state = RunState.RUNNING
        self._arm_tick(now + self._config.tick_interval_s)
        logger.info(
            "Run started: n=%d, tick=%dms, window=%dms, trials/block=%d",
            self._config.n,
            self._config.tick_interval_ms,
            self._config.response_window_ms,
            self._config.trials_per_block,
        )

    def stop(self) -> None:
        if self._state is RunState.IDLE:
            return
        if self._state is RunState.BLOCK_TRANSITION and self._next_n is not None:
            # Keep the step the finished block earned.
            self._config = dataclasses.replace(self._config, n=self._next_n)
        self._cancel_timers()
        self._windows.cancel()
        self._current = None
        self._state = RunState.IDLE
        logger.info("Run stopped at block %d, trial %d", self._block_number, self._trial_index)

    def reset_block(self, next_n: int | None = None) -> None:
        """Discard the block in progress (unscored) and start over, optionally at a new N."""

        self._cancel_timers()
        self._windows.cancel()
        if next_n is not None:
            self.set_config(n=next_n)
        self._apply_pending_config()

        if self._state is RunState.IDLE:
            self._clear_block()
            return

        now = self._scheduler.now()
        self._begin_block(now)
        self._state = RunState.RUNNING
        self._arm_tick(now + self._config.tick_interval_s)
        logger.info("Block reset: block %d at n=%d", self._block_number, self._config.n)

    def set_config(self, **changes: Any) -> RunConfig:
        """Apply clamped config changes.

        While idle everything applies at once. While running, timing applies
        from the next trial and ``n``/``trials_per_block`` wait for the next block.
        """

        target = (self._pending_config or self._config).with_changes(**changes)
        if self._state is RunState.IDLE:
            self._config = target
            self._pending_config = None
            return target

        timing = {name: getattr(target, name) for name in _TIMING_FIELDS}
        self._config = dataclasses.replace(self._config, **timing)
        staged = target.n != self._config.n or target.trials_per_block != self._config.trials_per_block
        self._pending_config = target if staged else None
        return target

    def set_n(self, value: int) -> int:
        return self.set_config(n=value).n

    def submit_response(self, channel: Channel | str) -> bool:
        """Route a match press to the live trial. Returns True if an outcome was scored."""

        # Overdue expiries fire first so a late press cannot land on a closed trial.
        self._scheduler.run_due()
        if self._state is not RunState.RUNNING:
            return False
        return self._windows.submit(Channel(channel)) is not None

    def update(self) -> None:
        self._scheduler.run_due()

    def snapshot(self) -> NBackSnapshot:
        tally = self._tally.snapshot()
        window = self._windows.current
        return NBackSnapshot(
            title="Dual N-Back",
            state=self._state,
            prompt=self.current_prompt(),
            input_hint="A=position  L=sound  Space=start/stop  R=reset block",
            n=self._config.n,
            trial_index=self._trial_index,
            trials_per_block=self._config.trials_per_block,
            block_number=self._block_number,
            current=self._current,
            tally=tally,
            position_accuracy=tally.accuracy(Channel.POSITION),
            sound_accuracy=tally.accuracy(Channel.SOUND),
            combined_accuracy=tally.combined_accuracy(),
            position_open=window is not None and window.position_open,
            sound_open=window is not None and window.sound_open,
            last_block=self._block_results[-1] if self._block_results else None,
        )

    def current_prompt(self) -> str:
        if self._state is RunState.IDLE:
            return "Press Space to start."
        if self._state is RunState.BLOCK_TRANSITION and self._block_results:
            last = self._block_results[-1]
            return f"Block {last.block_number} done: {last.combined_accuracy * 100.0:.0f}%. Next N = {last.next_n}."
        trial = min(self._trial_index, self._config.trials_per_block)
        return f"{self._config.n}-back  trial {trial}/{self._config.trials_per_block}"

    # Internals

    def _arm_tick(self, when_s: float) -> None:
        generation = self._generation
        self._tick_handle = self._scheduler.call_at(when_s, lambda: self._on_tick(generation))

    def _on_tick(self, generation: int) -> None:
        self._tick_handle = None
        if generation != self._generation or self._state is not RunState.RUNNING:
            return
        now = self._scheduler.now()
        late_s = self._clock.now() - now
        if late_s >= self._config.tick_interval_s:
            # Host stalled for a whole interval or more; missed trials are not replayed.
            logger.info("Tick %.2fs late; resuming without replaying missed trials", late_s)
            self._arm_tick(self._clock.now())
            return
        if self._trial_index >= self._config.trials_per_block:
            self._end_block(now)
            return
        self._run_trial()
        self._arm_tick(now + self._config.tick_interval_s)

    def _run_trial(self) -> None:
        stimulus = self._generator.next()
        idx = self._history.append(stimulus)
        truth = detect_match(self._history, idx, self._config.n)
        self._current = stimulus
        self._windows.open(
            block_number=self._block_number,
            trial_index=idx,
            truth=truth,
            window_s=self._config.response_window_s,
        )
        self._present(stimulus)
        self._trial_index += 1
        logger.debug(
            "Trial %d: pos=%d letter=%s match=(%s, %s)",
            idx,
            stimulus.position,
            stimulus.letter,
            truth.position_match,
            truth.letter_match,
        )

    def _end_block(self, now: float) -> None:
        self._windows.close_current()
        self._state = RunState.BLOCK_TRANSITION

        tally = self._tally.snapshot()
        accuracy = tally.combined_accuracy()
        next_n = next_n_for_accuracy(self._config.n, accuracy)
        result = BlockResult(
            block_number=self._block_number,
            n=self._config.n,
            next_n=next_n,
            trials=self._trial_index,
            tally=tally,
            combined_accuracy=accuracy,
            started_at_s=self._block_started_at_s,
            completed_at_s=now,
        )
        self._block_results.append(result)
        self._next_n = next_n
        logger.info(
            "Block %d complete: accuracy %.2f, n %d -> %d",
            result.block_number,
            accuracy,
            result.n,
            next_n,
        )

        generation = self._generation
        self._pause_handle = self._scheduler.call_at(
            now + self._config.block_pause_s,
            lambda: self._on_pause_done(generation),
        )

    def _on_pause_done(self, generation: int) -> None:
        self._pause_handle = None
        if generation != self._generation or self._state is not RunState.BLOCK_TRANSITION:
            return
        if self._next_n is not None:
            self._config = dataclasses.replace(self._config, n=self._next_n)
            self._next_n = None
        # A value the user picked during the block wins over the adaptive step.
        self._apply_pending_config()

        now = self._scheduler.now()
        self._windows.cancel()
        self._begin_block(now)
        self._state = RunState.RUNNING
        self._arm_tick(now + self._config.tick_interval_s)

    def _begin_block(self, now: float) -> None:
        self._clear_block()
        self._block_number += 1
        self._block_started_at_s = now

    def _clear_block(self) -> None:
        self._history.clear()
        self._tally.reset()
        self._trial_index = 0
        self._current = None

    def _apply_pending_config(self) -> None:
        if self._pending_config is None:
            return
        self._config = dataclasses.replace(
            self._config,
            n=self._pending_config.n,
            trials_per_block=self._pending_config.trials_per_block,
        )
        self._pending_config = None

    def _cancel_timers(self) -> None:
        self._generation += 1
        for handle in (self._tick_handle, self._pause_handle):
            if handle is not None:
                handle.cancel()
        self._tick_handle = None
        self._pause_handle = None
        self._next_n = None

    def _record_outcome(
        self,
        window: ResponseWindow,
        channel: Channel,
        outcome: Outcome,
        response_time_s: float | None,
    ) -> None:
        self._tally.record(channel, outcome)
        self._events.append(
            ResponseEvent(
                block_number=window.block_number,
                trial_index=window.trial_index,
                channel=channel,
                outcome=outcome,
                response_time_s=response_time_s,
            )
        )
        logger.debug("Trial %d %s: %s", window.trial_index, channel.value, outcome.value)

    def _present(self, stimulus: Stimulus) -> None:
        if self._presenter is None:
            return
        try:
            self._presenter.present(stimulus)
        except Exception:
            # Presentation is fire-and-forget; its failures never reach scoring.
            logger.warning("Presentation failed for %s", stimulus, exc_info=True)


def build_dual_nback_engine(
    *,
    clock: Clock,
    seed: int,
    config: RunConfig | None = None,
    presenter: PresentationPort | None = None,
    generator: StimulusSource | None = None,
) -> DualNBackEngine:
    return DualNBackEngine(
        clock=clock,
        seed=seed,
        config=config,
        presenter=presenter,
        generator=generator,
    )
