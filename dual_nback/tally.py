from __future__ import annotations

from dataclasses import dataclass
from enum import StrEnum

from .cognitive_core import safe_ratio


class Channel(StrEnum):
    POSITION = "position"
    SOUND = "sound"


class Outcome(StrEnum):
    HIT = "hit"
    MISS = "miss"
    FALSE_ALARM = "false_alarm"


@dataclass(frozen=True, slots=True)
class Tally:
    pos_hits: int = 0
    pos_misses: int = 0
    pos_false_alarms: int = 0
    snd_hits: int = 0
    snd_misses: int = 0
    snd_false_alarms: int = 0

    def hits(self, channel: Channel) -> int:
        return self.pos_hits if channel is Channel.POSITION else self.snd_hits

    def misses(self, channel: Channel) -> int:
        return self.pos_misses if channel is Channel.POSITION else self.snd_misses

    def false_alarms(self, channel: Channel) -> int:
        return self.pos_false_alarms if channel is Channel.POSITION else self.snd_false_alarms

    def accuracy(self, channel: Channel) -> float:
        hits = self.hits(channel)
        return safe_ratio(hits, hits + self.misses(channel))

    def combined_accuracy(self) -> float:
        hits = self.pos_hits + self.snd_hits
        attempts = hits + self.pos_misses + self.snd_misses
        return safe_ratio(hits, attempts)


_FIELDS: dict[tuple[Channel, Outcome], str] = {
    (Channel.POSITION, Outcome.HIT): "pos_hits",
    (Channel.POSITION, Outcome.MISS): "pos_misses",
    (Channel.POSITION, Outcome.FALSE_ALARM): "pos_false_alarms",
    (Channel.SOUND, Outcome.HIT): "snd_hits",
    (Channel.SOUND, Outcome.MISS): "snd_misses",
    (Channel.SOUND, Outcome.FALSE_ALARM): "snd_false_alarms",
}


class TallyAggregator:
    """Per-block outcome counters.

    False alarms are counted but stay out of the accuracy denominator:
    accuracy is hits / (hits + misses), per channel or over both channels.
    """

    def __init__(self) -> None:
        self._counts: dict[str, int] = {name: 0 for name in _FIELDS.values()}

    def record(self, channel: Channel, outcome: Outcome) -> None:
        key = _FIELDS[(Channel(channel), Outcome(outcome))]
        self._counts[key] += 1

    def reset(self) -> None:
        for key in self._counts:
            self._counts[key] = 0

    def snapshot(self) -> Tally:
        return Tally(**self._counts)

    def accuracy(self, channel: Channel) -> float:
        return self.snapshot().accuracy(channel)

    def combined_accuracy(self) -> float:
        return self.snapshot().combined_accuracy()
