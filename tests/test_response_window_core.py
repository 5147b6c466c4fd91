from __future__ import annotations

from dataclasses import dataclass

from dual_nback.clock import TimerScheduler
from dual_nback.response_window import ResponseWindow, ResponseWindowController
from dual_nback.stimulus import MatchTruth
from dual_nback.tally import Channel, Outcome


@dataclass
class FakeClock:
    t: float = 0.0

    def now(self) -> float:
        return self.t

    def advance(self, dt: float) -> None:
        self.t += float(dt)


def _controller() -> tuple[FakeClock, TimerScheduler, ResponseWindowController, list[tuple[int, Channel, Outcome]]]:
    clock = FakeClock()
    scheduler = TimerScheduler(clock)
    recorded: list[tuple[int, Channel, Outcome]] = []

    def on_outcome(window: ResponseWindow, channel: Channel, outcome: Outcome, rt: float | None) -> None:
        recorded.append((window.trial_index, channel, outcome))

    controller = ResponseWindowController(scheduler=scheduler, on_outcome=on_outcome)
    return clock, scheduler, controller, recorded


def test_window_classifies_hit_and_false_alarm_per_channel() -> None:
    window = ResponseWindow(
        block_number=1,
        trial_index=3,
        truth=MatchTruth(position_match=True, letter_match=False),
        opened_at_s=0.0,
        closes_at_s=1.0,
    )
    assert window.submit(Channel.POSITION) is Outcome.HIT
    assert window.submit(Channel.SOUND) is Outcome.FALSE_ALARM
    assert window.closed


def test_duplicate_press_is_ignored() -> None:
    clock, _, controller, recorded = _controller()
    controller.open(block_number=1, trial_index=2, truth=MatchTruth(True, True), window_s=1.0)

    clock.advance(0.2)
    assert controller.submit(Channel.POSITION) is Outcome.HIT
    assert controller.submit(Channel.POSITION) is None
    assert controller.submit(Channel.POSITION) is None

    assert recorded == [(2, Channel.POSITION, Outcome.HIT)]


def test_expiry_scores_misses_only_for_true_matches() -> None:
    clock, scheduler, controller, recorded = _controller()
    controller.open(block_number=1, trial_index=4, truth=MatchTruth(True, False), window_s=0.9)

    clock.advance(0.89)
    scheduler.run_due()
    assert recorded == []

    clock.advance(0.05)
    scheduler.run_due()
    assert recorded == [(4, Channel.POSITION, Outcome.MISS)]
    assert controller.current is not None and controller.current.closed


def test_answering_both_channels_cancels_the_expiry_timer() -> None:
    clock, scheduler, controller, recorded = _controller()
    controller.open(block_number=1, trial_index=5, truth=MatchTruth(True, True), window_s=0.9)
    assert controller.pending_timer_count() == 1

    clock.advance(0.1)
    controller.submit(Channel.SOUND)
    controller.submit(Channel.POSITION)

    assert controller.pending_timer_count() == 0
    assert scheduler.pending_count() == 0

    clock.advance(5.0)
    scheduler.run_due()
    assert [o for _, _, o in recorded] == [Outcome.HIT, Outcome.HIT]


def test_press_after_window_closed_is_dropped() -> None:
    clock, scheduler, controller, recorded = _controller()
    controller.open(block_number=1, trial_index=2, truth=MatchTruth(True, True), window_s=0.5)

    clock.advance(0.5)
    # No pump yet: the boundary itself must already count as closed.
    assert controller.submit(Channel.POSITION) is None
    assert controller.submit(Channel.SOUND) is None
    scheduler.run_due()

    assert sorted(o.value for _, _, o in recorded) == ["miss", "miss"]


def test_cancel_discards_open_window_without_scoring() -> None:
    clock, scheduler, controller, recorded = _controller()
    controller.open(block_number=1, trial_index=6, truth=MatchTruth(True, True), window_s=0.9)

    controller.cancel()
    assert controller.current is None
    assert controller.pending_timer_count() == 0

    clock.advance(2.0)
    scheduler.run_due()
    assert recorded == []
    assert controller.submit(Channel.POSITION) is None


def test_opening_next_window_closes_a_still_open_previous_one() -> None:
    clock, _, controller, recorded = _controller()
    controller.open(block_number=1, trial_index=1, truth=MatchTruth(False, True), window_s=1.0)
    clock.advance(1.0)

    controller.open(block_number=1, trial_index=2, truth=MatchTruth(False, False), window_s=1.0)

    assert recorded == [(1, Channel.SOUND, Outcome.MISS)]
    assert controller.current is not None and controller.current.trial_index == 2
    assert controller.pending_timer_count() == 1
