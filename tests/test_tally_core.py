from __future__ import annotations

import pytest

from dual_nback.engine import next_n_for_accuracy
from dual_nback.tally import Channel, Outcome, Tally, TallyAggregator


def test_record_increments_only_the_matching_counter() -> None:
    agg = TallyAggregator()
    agg.record(Channel.POSITION, Outcome.HIT)
    agg.record(Channel.POSITION, Outcome.HIT)
    agg.record(Channel.POSITION, Outcome.FALSE_ALARM)
    agg.record(Channel.SOUND, Outcome.MISS)
    agg.record(Channel.SOUND, Outcome.HIT)

    assert agg.snapshot() == Tally(
        pos_hits=2,
        pos_misses=0,
        pos_false_alarms=1,
        snd_hits=1,
        snd_misses=1,
        snd_false_alarms=0,
    )


def test_accuracy_excludes_false_alarms_and_handles_empty_denominator() -> None:
    agg = TallyAggregator()
    assert agg.accuracy(Channel.POSITION) == 0.0
    assert agg.combined_accuracy() == 0.0

    for _ in range(5):
        agg.record(Channel.POSITION, Outcome.FALSE_ALARM)
    assert agg.accuracy(Channel.POSITION) == 0.0

    agg.record(Channel.POSITION, Outcome.HIT)
    agg.record(Channel.POSITION, Outcome.MISS)
    agg.record(Channel.SOUND, Outcome.HIT)
    assert agg.accuracy(Channel.POSITION) == pytest.approx(0.5)
    assert agg.accuracy(Channel.SOUND) == pytest.approx(1.0)
    assert agg.combined_accuracy() == pytest.approx(2 / 3)


def test_reset_zeroes_every_counter() -> None:
    agg = TallyAggregator()
    agg.record(Channel.SOUND, Outcome.FALSE_ALARM)
    agg.record(Channel.POSITION, Outcome.MISS)
    agg.reset()
    assert agg.snapshot() == Tally()


def test_level_up_at_exactly_75_percent() -> None:
    tally = Tally(pos_hits=8, pos_misses=2, snd_hits=7, snd_misses=3)
    assert tally.combined_accuracy() == 0.75
    assert next_n_for_accuracy(2, tally.combined_accuracy()) == 3


def test_level_down_below_55_percent() -> None:
    tally = Tally(pos_hits=3, pos_misses=7, snd_hits=2, snd_misses=8)
    assert tally.combined_accuracy() == pytest.approx(0.25)
    assert next_n_for_accuracy(3, tally.combined_accuracy()) == 2


def test_middle_band_keeps_n() -> None:
    tally = Tally(pos_hits=6, pos_misses=4, snd_hits=6, snd_misses=4)
    assert tally.combined_accuracy() == pytest.approx(0.60)
    assert next_n_for_accuracy(4, tally.combined_accuracy()) == 4
    assert next_n_for_accuracy(4, 0.55) == 4


def test_n_never_drops_below_one() -> None:
    assert next_n_for_accuracy(1, 0.0) == 1
    assert next_n_for_accuracy(2, 0.0) == 1
