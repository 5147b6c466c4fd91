from __future__ import annotations

from collections.abc import Iterator, Sequence
from dataclasses import dataclass
from typing import Protocol

from .cognitive_core import SeededRng

GRID_SIZE = 3
GRID_CELLS = GRID_SIZE * GRID_SIZE
LETTER_POOL: tuple[str, ...] = ("A", "E", "I", "O", "U", "B", "K", "M", "P", "S", "T")


@dataclass(frozen=True, slots=True)
class Stimulus:
    position: int  # grid cell, row-major in [0, GRID_CELLS)
    letter: str

    @property
    def row(self) -> int:
        return self.position // GRID_SIZE

    @property
    def col(self) -> int:
        return self.position % GRID_SIZE


@dataclass(frozen=True, slots=True)
class MatchTruth:
    position_match: bool = False
    letter_match: bool = False


NO_MATCH = MatchTruth()


class StimulusSource(Protocol):
    def next(self) -> Stimulus: ...


class StimulusGenerator:
    """Independent uniform draws over grid cells and letters, with replacement."""

    def __init__(self, *, seed: int, letters: Sequence[str] = LETTER_POOL, cells: int = GRID_CELLS) -> None:
        if cells <= 0:
            raise ValueError("cells must be > 0")
        if not letters:
            raise ValueError("letters must not be empty")
        self._rng = SeededRng(seed)
        self._letters = tuple(str(v) for v in letters)
        self._cells = int(cells)

    def next(self) -> Stimulus:
        position = self._rng.randrange(self._cells)
        letter = self._rng.choice(self._letters)
        return Stimulus(position=position, letter=letter)


class TrialHistory:
    """Append-only stimulus record for the current block."""

    def __init__(self) -> None:
        self._items: list[Stimulus] = []

    def __len__(self) -> int:
        return len(self._items)

    def __getitem__(self, index: int) -> Stimulus:
        return self._items[index]

    def __iter__(self) -> Iterator[Stimulus]:
        return iter(self._items)

    def append(self, stimulus: Stimulus) -> int:
        """Append and return the new entry's index."""
        self._items.append(stimulus)
        return len(self._items) - 1

    def clear(self) -> None:
        self._items.clear()

    def snapshot(self) -> tuple[Stimulus, ...]:
        return tuple(self._items)


def detect_match(history: Sequence[Stimulus] | TrialHistory, index: int, n: int) -> MatchTruth:
    """Compare trial ``index`` with trial ``index - n`` on each channel independently."""

    back = index - n
    if n < 1 or back < 0 or index >= len(history):
        return NO_MATCH
    current = history[index]
    earlier = history[back]
    return MatchTruth(
        position_match=current.position == earlier.position,
        letter_match=current.letter == earlier.letter,
    )


def letter_index(letter: str) -> int:
    try:
        return LETTER_POOL.index(letter)
    except ValueError:
        return -1
