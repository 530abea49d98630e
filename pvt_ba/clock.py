from __future__ import annotations

import time
from typing import Protocol


class Clock(Protocol):
    """Monotonic session clock.

    The trial state machine reads elapsed time only through this interface, so
    tests can drive it with a fake clock instead of real delays.
    """

    def now(self) -> float:
        """Return monotonic seconds."""


class RealClock:
    """Production clock backed by time.monotonic()."""

    def now(self) -> float:
        return time.monotonic()


def require_clock(clock: Clock | None) -> Clock:
    """Return ``clock`` or fail; no trial can be scheduled without one."""

    if clock is None:
        raise ValueError("clock is required")
    if not callable(getattr(clock, "now", None)):
        raise ValueError("clock must provide a callable now()")
    return clock


def to_ms(seconds: float) -> float:
    return float(seconds) * 1000.0
