from __future__ import annotations

import random
from collections.abc import Sequence
from enum import Enum
from typing import TypeVar

T = TypeVar("T")


class RunState(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    BLOCK_TRANSITION = "block_transition"


class SeededRng:
    """Simple seeded RNG wrapper to keep deterministic streams explicit."""

    def __init__(self, seed: int) -> None:
        self._rng = random.Random(int(seed))

    def randrange(self, stop: int) -> int:
        return self._rng.randrange(stop)

    def choice(self, seq: Sequence[T]) -> T:
        return self._rng.choice(seq)


def clamp_int(value: object, lo: int, hi: int | None = None, *, fallback: int) -> int:
    """Coerce ``value`` to an int within ``[lo, hi]``; unparseable input yields ``fallback``."""

    try:
        number = int(value)  # type: ignore[call-overload]
    except (TypeError, ValueError, OverflowError):
        number = int(fallback)
    if number < lo:
        return lo
    if hi is not None and number > hi:
        return hi
    return number


def safe_ratio(numerator: int, denominator: int) -> float:
    return 0.0 if denominator <= 0 else numerator / float(denominator)
