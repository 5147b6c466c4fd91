from __future__ import annotations

import random
from collections.abc import Callable
from dataclasses import dataclass

import pytest

from dual_nback.cognitive_core import RunState
from dual_nback.config import make_run_config
from dual_nback.engine import DualNBackEngine, build_dual_nback_engine
from dual_nback.presentation import RecordingSink
from dual_nback.response_window import ResponseWindow
from dual_nback.stimulus import Stimulus, detect_match
from dual_nback.tally import Channel, Outcome


@dataclass
class FakeClock:
    t: float = 0.0

    def now(self) -> float:
        return self.t

    def advance(self, dt: float) -> None:
        self.t += float(dt)


class ScriptedSource:
    def __init__(self, stimuli: list[Stimulus]) -> None:
        self._stimuli = list(stimuli)
        self._i = 0

    def next(self) -> Stimulus:
        s = self._stimuli[self._i % len(self._stimuli)]
        self._i += 1
        return s


SAME = Stimulus(position=4, letter="K")

Responder = Callable[[DualNBackEngine, ResponseWindow], None]


def _engine(
    *,
    clock: FakeClock,
    generator: ScriptedSource | None = None,
    presenter: object | None = None,
    trials: int = 8,
    margin_ms: int = 100,
    seed: int = 123,
) -> DualNBackEngine:
    # 1 s ticks: block 1 trial k is shown at t=k+1 and its window closes at t=k+1.9.
    cfg = make_run_config(
        n=2,
        tick_interval_ms=1000,
        trials_per_block=trials,
        window_margin_ms=margin_ms,
        block_pause_ms=400,
    )
    return build_dual_nback_engine(
        clock=clock,
        seed=seed,
        config=cfg,
        presenter=presenter,  # type: ignore[arg-type]
        generator=generator if generator is not None else ScriptedSource([SAME]),
    )


def _drive(engine: DualNBackEngine, clock: FakeClock, until: float, respond: Responder | None = None) -> None:
    seen: tuple[int, int] | None = None
    while clock.t < until:
        clock.t = min(clock.t + 0.05, until)
        engine.update()
        window = engine.current_window
        if window is None:
            continue
        key = (window.block_number, window.trial_index)
        if key != seen:
            seen = key
            if respond is not None:
                respond(engine, window)


def _perfect(engine: DualNBackEngine, window: ResponseWindow) -> None:
    if window.truth.position_match:
        engine.submit_response(Channel.POSITION)
    if window.truth.letter_match:
        engine.submit_response(Channel.SOUND)


def _position_only(engine: DualNBackEngine, window: ResponseWindow) -> None:
    if window.truth.position_match:
        engine.submit_response(Channel.POSITION)


def test_initial_state_is_idle_and_nothing_fires() -> None:
    clock = FakeClock()
    engine = _engine(clock=clock)

    assert engine.state is RunState.IDLE
    assert engine.pending_timer_count() == 0
    assert engine.snapshot().prompt == "Press Space to start."

    _drive(engine, clock, 5.0)
    assert engine.history() == ()
    assert engine.submit_response(Channel.POSITION) is False


def test_first_n_trials_are_never_scored() -> None:
    clock = FakeClock()
    engine = _engine(clock=clock)
    engine.start()

    _drive(engine, clock, 9.0)

    assert engine.state is RunState.BLOCK_TRANSITION
    assert all(e.trial_index >= 2 for e in engine.events())
    t = engine.block_results()[0].tally
    # Constant stimuli: every scorable trial is a match on both channels.
    assert t.pos_hits + t.pos_misses + engine.n == 8
    assert t.snd_hits + t.snd_misses + engine.n == 8
    assert t.pos_misses == 6 and t.snd_misses == 6


def test_early_press_on_unscorable_trial_is_a_false_alarm() -> None:
    clock = FakeClock()
    engine = _engine(clock=clock)
    engine.start()

    _drive(engine, clock, 1.2)
    assert engine.current_window is not None and engine.current_window.trial_index == 0
    assert engine.submit_response(Channel.POSITION) is True
    assert engine.tally().pos_false_alarms == 1


def test_duplicate_press_counts_once() -> None:
    clock = FakeClock()
    engine = _engine(clock=clock)
    engine.start()

    _drive(engine, clock, 3.2)
    assert engine.submit_response(Channel.POSITION) is True
    assert engine.submit_response(Channel.POSITION) is False
    assert engine.submit_response("position") is False

    assert engine.tally().pos_hits == 1
    ev = engine.events()[-1]
    assert ev.trial_index == 2
    assert ev.outcome is Outcome.HIT
    assert ev.response_time_s == pytest.approx(0.2, abs=0.06)


def test_press_at_window_close_is_dropped_even_without_a_pump() -> None:
    clock = FakeClock()
    engine = _engine(clock=clock)
    engine.start()
    _drive(engine, clock, 3.2)

    clock.t = 3.9
    assert engine.submit_response(Channel.POSITION) is False
    assert engine.submit_response(Channel.SOUND) is False

    t = engine.tally()
    assert (t.pos_hits, t.pos_misses, t.snd_hits, t.snd_misses) == (0, 1, 0, 1)


def test_zero_margin_window_closes_before_next_trial_opens() -> None:
    clock = FakeClock()
    engine = _engine(clock=clock, margin_ms=0)
    assert engine.config.response_window_ms == 1000
    engine.start()
    _drive(engine, clock, 3.2)

    # Trial 2 expires and trial 3 is shown at the same instant; the press belongs to trial 3.
    clock.t = 4.0
    assert engine.submit_response(Channel.POSITION) is True

    pos_events = [(e.trial_index, e.outcome) for e in engine.events() if e.channel is Channel.POSITION]
    assert pos_events == [(2, Outcome.MISS), (3, Outcome.HIT)]


def test_perfect_block_raises_n() -> None:
    clock = FakeClock()
    engine = _engine(clock=clock)
    engine.start()

    _drive(engine, clock, 9.0, _perfect)
    result = engine.block_results()[0]
    assert result.combined_accuracy == 1.0
    assert (result.n, result.next_n) == (2, 3)
    assert engine.snapshot().prompt == "Block 1 done: 100%. Next N = 3."

    _drive(engine, clock, 9.5)
    assert engine.state is RunState.RUNNING
    assert engine.n == 3
    assert engine.block_number == 2
    assert engine.tally().pos_hits == 0


def test_position_only_block_lowers_n() -> None:
    clock = FakeClock()
    engine = _engine(clock=clock)
    engine.start()

    _drive(engine, clock, 9.5, _position_only)
    result = engine.block_results()[0]
    assert result.position_accuracy == 1.0
    assert result.sound_accuracy == 0.0
    assert result.combined_accuracy == pytest.approx(0.5)
    assert engine.n == 1


def test_middle_band_block_keeps_n() -> None:
    clock = FakeClock()
    engine = _engine(clock=clock, trials=11)
    engine.start()
    sound_presses = 0

    def respond(eng: DualNBackEngine, window: ResponseWindow) -> None:
        nonlocal sound_presses
        if window.truth.position_match:
            eng.submit_response(Channel.POSITION)
        if window.truth.letter_match and sound_presses < 2:
            sound_presses += 1
            eng.submit_response(Channel.SOUND)

    _drive(engine, clock, 12.5, respond)
    result = engine.block_results()[0]
    assert result.combined_accuracy == pytest.approx(11 / 18)
    assert result.next_n == 2
    assert engine.n == 2


def test_n_change_mid_block_waits_for_boundary_and_beats_adaptive_step() -> None:
    clock = FakeClock()
    engine = _engine(clock=clock)
    engine.start()
    _drive(engine, clock, 3.2)

    assert engine.set_n(4) == 4
    assert engine.n == 2
    assert engine.pending_config is not None and engine.pending_config.n == 4

    _drive(engine, clock, 9.5)
    # No responses: the adaptive step alone would have dropped to 1.
    assert engine.block_results()[0].next_n == 1
    assert engine.n == 4
    assert engine.pending_config is None


def test_timing_change_applies_from_next_trial() -> None:
    clock = FakeClock()
    engine = _engine(clock=clock)
    engine.start()
    _drive(engine, clock, 1.2)

    engine.set_config(tick_interval_ms=2000)
    assert engine.config.tick_interval_ms == 2000
    assert engine.config.response_window_ms == 1900
    assert engine.pending_config is None

    # Trial 1 was already armed for t=2.0 with the old interval.
    _drive(engine, clock, 2.2)
    assert engine.trial_index == 2
    _drive(engine, clock, 3.9)
    assert engine.trial_index == 2
    _drive(engine, clock, 4.2)
    assert engine.trial_index == 3


def test_stop_mid_trial_discards_it_and_start_is_fresh() -> None:
    clock = FakeClock()
    engine = _engine(clock=clock)
    engine.start()
    _drive(engine, clock, 3.3)
    events_before = len(engine.events())

    engine.stop()
    assert engine.state is RunState.IDLE
    assert engine.pending_timer_count() == 0
    assert engine.submit_response(Channel.POSITION) is False

    _drive(engine, clock, 10.0)
    assert len(engine.events()) == events_before
    assert engine.block_results() == []

    engine.start()
    assert engine.trial_index == 0
    assert engine.tally().pos_misses == 0
    assert engine.block_number == 2
    _drive(engine, clock, 11.2)
    assert len(engine.history()) == 1


def test_stop_during_block_transition_prevents_next_block() -> None:
    clock = FakeClock()
    engine = _engine(clock=clock)
    engine.start()
    _drive(engine, clock, 9.2)
    assert engine.state is RunState.BLOCK_TRANSITION

    engine.stop()
    assert engine.pending_timer_count() == 0
    _drive(engine, clock, 20.0)
    assert engine.state is RunState.IDLE
    assert engine.block_number == 1
    assert len(engine.block_results()) == 1


def test_stop_during_block_transition_keeps_the_earned_n() -> None:
    clock = FakeClock()
    engine = _engine(clock=clock)
    engine.start()
    _drive(engine, clock, 9.2, _perfect)
    assert engine.block_results()[-1].next_n == 3

    engine.stop()
    assert engine.n == 3
    engine.start()
    assert engine.n == 3


def test_reset_block_during_transition_drops_the_adaptive_step() -> None:
    clock = FakeClock()
    engine = _engine(clock=clock)
    engine.start()
    _drive(engine, clock, 9.2, _perfect)

    engine.reset_block()
    assert engine.state is RunState.RUNNING
    assert engine.n == 2
    _drive(engine, clock, 12.0)
    assert engine.n == 2


def test_start_clears_previous_run_logs() -> None:
    clock = FakeClock()
    engine = _engine(clock=clock)
    engine.start()
    _drive(engine, clock, 9.2)
    assert engine.events() and engine.block_results()

    engine.stop()
    engine.start()
    assert engine.events() == []
    assert engine.block_results() == []
    assert engine.block_number == 2


def test_stalled_host_does_not_replay_missed_trials() -> None:
    sink = RecordingSink()
    clock = FakeClock()
    engine = _engine(clock=clock, presenter=sink, trials=20)
    engine.start()
    _drive(engine, clock, 1.05)
    assert len(sink.presented) == 1

    clock.t = 31.0
    engine.update()

    assert len(sink.presented) == 2
    assert engine.trial_index == 2
    assert engine.block_results() == []
    assert engine.tally().pos_misses == 0
    window = engine.current_window
    assert window is not None and window.is_open(Channel.POSITION)
    assert window.opened_at_s == pytest.approx(31.0)

    # Regular cadence resumes from the moment the host came back.
    _drive(engine, clock, 31.95)
    assert engine.trial_index == 2
    _drive(engine, clock, 32.05)
    assert engine.trial_index == 3


def test_block_pause_then_first_trial_one_tick_later() -> None:
    clock = FakeClock()
    engine = _engine(clock=clock)
    engine.start()

    _drive(engine, clock, 9.35)
    assert engine.state is RunState.BLOCK_TRANSITION
    assert len(engine.history()) == 8

    _drive(engine, clock, 9.45)
    assert engine.state is RunState.RUNNING
    assert engine.block_number == 2
    assert engine.history() == ()

    _drive(engine, clock, 10.35)
    assert engine.history() == ()
    _drive(engine, clock, 10.45)
    assert len(engine.history()) == 1
    assert engine.current_window is not None and engine.current_window.block_number == 2


def test_presenter_failure_does_not_affect_scoring() -> None:
    class ExplodingPresenter:
        def present(self, stimulus: Stimulus) -> None:
            raise RuntimeError("audio device gone")

    clock = FakeClock()
    engine = _engine(clock=clock, presenter=ExplodingPresenter())
    engine.start()

    _drive(engine, clock, 9.0, _perfect)
    assert engine.block_results()[0].combined_accuracy == 1.0


def test_presenter_receives_each_stimulus_once() -> None:
    sink = RecordingSink()
    clock = FakeClock()
    engine = _engine(clock=clock, presenter=sink)
    engine.start()

    _drive(engine, clock, 9.0)
    assert sink.presented == [SAME] * 8


def test_reset_block_while_running_discards_and_restarts() -> None:
    clock = FakeClock()
    engine = _engine(clock=clock)
    engine.start()
    _drive(engine, clock, 3.5, _position_only)
    assert engine.tally().pos_hits == 1

    engine.reset_block(next_n=3)
    assert engine.state is RunState.RUNNING
    assert engine.n == 3
    assert engine.block_number == 2
    assert engine.trial_index == 0
    assert engine.tally().pos_hits == 0
    assert engine.current_window is None

    _drive(engine, clock, 4.4)
    assert engine.history() == ()
    _drive(engine, clock, 4.6)
    assert len(engine.history()) == 1


def test_reset_block_while_idle_applies_n() -> None:
    engine = _engine(clock=FakeClock())
    engine.reset_block(next_n=5)
    assert engine.state is RunState.IDLE
    assert engine.n == 5
    assert engine.pending_timer_count() == 0


def test_config_values_are_clamped() -> None:
    engine = _engine(clock=FakeClock())

    assert engine.set_n(0) == 1
    cfg = engine.set_config(tick_interval_ms=100, trials_per_block=3)
    assert cfg.tick_interval_ms == 300
    assert cfg.trials_per_block == 8
    assert cfg.response_window_ms == 200
    with pytest.raises(TypeError):
        engine.set_config(speed=1)


def test_scores_match_ground_truth_under_random_presses() -> None:
    clock = FakeClock()
    engine = DualNBackEngine(
        clock=clock,
        seed=4242,
        config=make_run_config(n=1, tick_interval_ms=1000, trials_per_block=40, window_margin_ms=100),
    )
    rng = random.Random(7)
    presses = {Channel.POSITION: set(), Channel.SOUND: set()}

    def respond(eng: DualNBackEngine, window: ResponseWindow) -> None:
        for channel in (Channel.POSITION, Channel.SOUND):
            if rng.random() < 0.4:
                eng.submit_response(channel)
                presses[channel].add(window.trial_index)

    engine.start()
    _drive(engine, clock, 41.0, respond)
    assert engine.state is RunState.BLOCK_TRANSITION

    history = engine.history()
    truths = [detect_match(history, i, 1) for i in range(len(history))]
    pos_true = {i for i, m in enumerate(truths) if m.position_match}
    snd_true = {i for i, m in enumerate(truths) if m.letter_match}

    t = engine.block_results()[0].tally
    assert t.pos_hits == len(pos_true & presses[Channel.POSITION])
    assert t.pos_misses == len(pos_true - presses[Channel.POSITION])
    assert t.pos_false_alarms == len(presses[Channel.POSITION] - pos_true)
    assert t.snd_hits == len(snd_true & presses[Channel.SOUND])
    assert t.snd_misses == len(snd_true - presses[Channel.SOUND])
    assert t.snd_false_alarms == len(presses[Channel.SOUND] - snd_true)
