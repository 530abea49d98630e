from __future__ import annotations

import math
import random
from dataclasses import dataclass
from enum import Enum


class Phase(str, Enum):
    INSTRUCTIONS = "instructions"
    SCORED = "scored"
    RESULTS = "results"
    CANCELLED = "cancelled"


@dataclass(frozen=True, slots=True)
class TestSnapshot:
    """View model for the UI (pure data)."""

    title: str
    phase: Phase
    prompt: str
    input_hint: str
    time_remaining_s: float | None
    trials_completed: int
    lpfs_count: int
    payload: object | None = None


class SeededRng:
    """Simple seeded RNG wrapper to keep deterministic streams explicit."""

    def __init__(self, seed: int) -> None:
        self._rng = random.Random(int(seed))

    def randint(self, a: int, b: int) -> int:
        return self._rng.randint(a, b)


def clamp01(x: float) -> float:
    return 0.0 if x <= 0.0 else 1.0 if x >= 1.0 else float(x)


def round_half_up(x: float) -> int:
    # Matches the rounding participants see on the counter.
    return int(math.floor(x + 0.5))
