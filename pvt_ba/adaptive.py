from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import StrEnum

from .cognitive_core import clamp01

logger = logging.getLogger(__name__)

TIME_BIN_MS = 30_000
TIME_BIN_COUNT = 6
NOMINAL_DURATION_MS = TIME_BIN_MS * TIME_BIN_COUNT

# Cumulative lapse-or-false-start counts at which categories are ruled out.
HIGH_RULED_OUT_ABOVE = 6
LOW_FORCED_ABOVE = 16

DEFAULT_DECISION_THRESHOLD = 0.99619


class Classification(StrEnum):
    HIGH = "HIGH"
    MEDIUM = "MEDIUM"
    LOW = "LOW"


class StopReason(StrEnum):
    THRESHOLD = "threshold"
    LPFS_CUTOFF = "lpfs_cutoff"
    TIME_LIMIT = "time_limit"


@dataclass(frozen=True, slots=True)
class LikelihoodRatios:
    high: float
    low: float


@dataclass(frozen=True, slots=True)
class TimeBinRatios:
    lpfs: LikelihoodRatios
    non_lpfs: LikelihoodRatios


# Basner M., Sleep Advances 2022;3(1):zpac038 (PVT-BA), Figure 1.
# One row per 30 s bin of the nominal 3 minute test. Only HIGH and LOW carry
# ratios; MEDIUM takes the residual mass.
LIKELIHOOD_RATIOS: tuple[TimeBinRatios, ...] = (
    TimeBinRatios(lpfs=LikelihoodRatios(high=0.25, low=3.00), non_lpfs=LikelihoodRatios(high=1.22, low=0.78)),
    TimeBinRatios(lpfs=LikelihoodRatios(high=0.18, low=3.80), non_lpfs=LikelihoodRatios(high=1.30, low=0.68)),
    TimeBinRatios(lpfs=LikelihoodRatios(high=0.15, low=4.20), non_lpfs=LikelihoodRatios(high=1.35, low=0.62)),
    TimeBinRatios(lpfs=LikelihoodRatios(high=0.15, low=4.50), non_lpfs=LikelihoodRatios(high=1.38, low=0.58)),
    TimeBinRatios(lpfs=LikelihoodRatios(high=0.15, low=4.80), non_lpfs=LikelihoodRatios(high=1.40, low=0.57)),
    TimeBinRatios(lpfs=LikelihoodRatios(high=0.15, low=5.00), non_lpfs=LikelihoodRatios(high=1.40, low=0.57)),
)


@dataclass(frozen=True, slots=True)
class Posteriors:
    high: float
    medium: float
    low: float

    @classmethod
    def uniform(cls) -> "Posteriors":
        third = 1.0 / 3.0
        return cls(high=third, medium=third, low=third)

    def of(self, category: Classification) -> float:
        if category is Classification.HIGH:
            return self.high
        if category is Classification.MEDIUM:
            return self.medium
        return self.low

    def total(self) -> float:
        return self.high + self.medium + self.low

    def rounded(self, ndigits: int = 6) -> "Posteriors":
        return Posteriors(
            high=round(self.high, ndigits),
            medium=round(self.medium, ndigits),
            low=round(self.low, ndigits),
        )


@dataclass(frozen=True, slots=True)
class ClassifierState:
    """Immutable snapshot of the classifier after its latest update."""

    posteriors: Posteriors
    trial_count: int
    lpfs_count: int
    stopped: bool
    classification: Classification | None
    stop_reason: StopReason | None


def time_bin_from_elapsed_ms(elapsed_ms: float) -> int:
    """Map elapsed session time to its 30 s bin.

    Time past the nominal 180 s window stays in the last bin.
    """

    if elapsed_ms < 0:
        raise ValueError("elapsed_ms must be >= 0")
    return min(int(elapsed_ms // TIME_BIN_MS), TIME_BIN_COUNT - 1)


def likelihood_ratios(*, time_bin: int, is_lpfs: bool) -> LikelihoodRatios:
    row = LIKELIHOOD_RATIOS[_checked_time_bin(time_bin)]
    return row.lpfs if is_lpfs else row.non_lpfs


def classify_by_lpfs_count(lpfs_count: int) -> Classification:
    if lpfs_count <= HIGH_RULED_OUT_ABOVE:
        return Classification.HIGH
    if lpfs_count <= LOW_FORCED_ABOVE:
        return Classification.MEDIUM
    return Classification.LOW


def _checked_time_bin(time_bin: int) -> int:
    if isinstance(time_bin, bool) or int(time_bin) != time_bin:
        raise ValueError(f"time_bin must be an integer, got {time_bin!r}")
    b = int(time_bin)
    if not (0 <= b < TIME_BIN_COUNT):
        raise ValueError(f"time_bin must be in [0, {TIME_BIN_COUNT - 1}], got {b}")
    return b


def _odds_update(p: float, ratio: float) -> float:
    p = clamp01(p)
    # 0 and 1 are absorbing: their odds are 0 or infinite.
    if p <= 0.0 or p >= 1.0:
        return p
    odds = (p / (1.0 - p)) * ratio
    return clamp01(odds / (1.0 + odds))


class AdaptiveClassifier:
    """Sequential Bayesian HIGH/MEDIUM/LOW vigilance classifier (PVT-BA).

    Each trial contributes one observation: whether it was a lapse or false
    start (LpFS) and which 30 s bin of the test it fell in.

    - HIGH and LOW are updated independently in odds form with the bin's
      likelihood ratio; MEDIUM is the residual.
    - More than 6 cumulative LpFS rules HIGH out (posterior mass moves to
      MEDIUM and LOW proportionally).
    - More than 16 cumulative LpFS stops the test as LOW.
    - Otherwise the test stops once any posterior reaches the decision
      threshold.

    All state changes go through update(); readers get immutable snapshots.
    """

    def __init__(self, *, decision_threshold: float = DEFAULT_DECISION_THRESHOLD) -> None:
        threshold = float(decision_threshold)
        if not (0.0 < threshold <= 1.0):
            raise ValueError("decision_threshold must be in (0.0, 1.0]")
        self._threshold = threshold
        self._state = ClassifierState(
            posteriors=Posteriors.uniform(),
            trial_count=0,
            lpfs_count=0,
            stopped=False,
            classification=None,
            stop_reason=None,
        )

    @property
    def decision_threshold(self) -> float:
        return self._threshold

    @property
    def trial_count(self) -> int:
        return self._state.trial_count

    @property
    def lpfs_count(self) -> int:
        return self._state.lpfs_count

    def state(self) -> ClassifierState:
        return self._state

    def posteriors(self) -> Posteriors:
        return self._state.posteriors

    def should_stop(self) -> bool:
        return self._state.stopped

    def stop_reason(self) -> StopReason | None:
        return self._state.stop_reason

    def classification(self) -> Classification:
        """Frozen classification, or the count rule if the test never stopped.

        The count rule uses the same boundaries as the hard cutoffs, so a
        session ended by elapsed time agrees with what the cutoffs would say.
        """

        if self._state.classification is not None:
            return self._state.classification
        return classify_by_lpfs_count(self._state.lpfs_count)

    def update(self, is_lpfs: bool, time_bin: int) -> None:
        ratios = likelihood_ratios(time_bin=time_bin, is_lpfs=bool(is_lpfs))
        prev = self._state
        if prev.stopped:
            return

        trial_count = prev.trial_count + 1
        lpfs_count = prev.lpfs_count + (1 if is_lpfs else 0)

        high = _odds_update(prev.posteriors.high, ratios.high)
        low = _odds_update(prev.posteriors.low, ratios.low)
        claimed = high + low
        # Unreachable with the published table (each ratio pair shrinks
        # odds_H * odds_L below its 0.25 start); guards edited tables.
        if claimed > 1.0:
            high = clamp01(high / claimed)
            low = clamp01(low / claimed)
        medium = clamp01(max(0.0, 1.0 - high - low))

        if lpfs_count > HIGH_RULED_OUT_ABOVE:
            high = 0.0
            remaining = medium + low
            if remaining > 0.0:
                medium = clamp01(medium / remaining)
                low = clamp01(low / remaining)
            else:
                medium, low = 1.0, 0.0

        if lpfs_count > LOW_FORCED_ABOVE:
            self._state = ClassifierState(
                posteriors=Posteriors(high=0.0, medium=0.0, low=1.0),
                trial_count=trial_count,
                lpfs_count=lpfs_count,
                stopped=True,
                classification=Classification.LOW,
                stop_reason=StopReason.LPFS_CUTOFF,
            )
            logger.debug("lpfs cutoff reached after %d trials (lpfs=%d)", trial_count, lpfs_count)
            return

        posteriors = Posteriors(high=high, medium=medium, low=low)
        decided: Classification | None = None
        for category in (Classification.HIGH, Classification.MEDIUM, Classification.LOW):
            if posteriors.of(category) >= self._threshold:
                decided = category
                break

        self._state = ClassifierState(
            posteriors=posteriors,
            trial_count=trial_count,
            lpfs_count=lpfs_count,
            stopped=decided is not None,
            classification=decided,
            stop_reason=None if decided is None else StopReason.THRESHOLD,
        )
        logger.debug(
            "update bin=%d lpfs=%s -> H=%.6f M=%.6f L=%.6f%s",
            time_bin,
            bool(is_lpfs),
            high,
            medium,
            low,
            "" if decided is None else f" (decided {decided.value})",
        )
