from __future__ import annotations

from dataclasses import dataclass

from .adaptive import Classification, Posteriors, StopReason
from .cognitive_core import Phase
from .pvt import PvtEngine, TrialKind, TrialOutcome


@dataclass(frozen=True, slots=True)
class PvtResult:
    """Summary + trial log for a finished PVT session.

    Reaction-time statistics cover normal responses only. lapse_count
    includes timeouts; timeout_count singles them out.
    """

    seed: int
    classification: Classification
    stop_reason: StopReason

    trial_count: int
    lpfs_count: int
    lapse_count: int
    false_start_count: int
    timeout_count: int
    duration_ms: float

    mean_rt_ms: float | None
    median_rt_ms: float | None

    final_posteriors: Posteriors
    trials: list[TrialOutcome]

    def records(self) -> list[dict[str, object]]:
        return [t.to_record() for t in self.trials]


def pvt_result_from_engine(engine: PvtEngine) -> PvtResult:
    """Build a PvtResult from a PvtEngine that reached RESULTS."""

    if engine.phase is not Phase.RESULTS:
        raise ValueError(f"session has no result in phase {engine.phase.value!r}")
    classification = engine.final_classification
    stop_reason = engine.stop_reason
    assert classification is not None and stop_reason is not None

    trials = engine.trials()
    state = engine.classifier_state()
    rts_ms = sorted(float(t.rt_ms) for t in trials if t.kind is TrialKind.NORMAL and t.rt_ms is not None)

    mean_ms: float | None
    median_ms: float | None
    if not rts_ms:
        mean_ms = None
        median_ms = None
    else:
        mean_ms = sum(rts_ms) / float(len(rts_ms))
        mid = len(rts_ms) // 2
        if len(rts_ms) % 2 == 1:
            median_ms = rts_ms[mid]
        else:
            median_ms = (rts_ms[mid - 1] + rts_ms[mid]) / 2.0

    return PvtResult(
        seed=int(engine.seed),
        classification=classification,
        stop_reason=stop_reason,
        trial_count=len(trials),
        lpfs_count=int(state.lpfs_count),
        lapse_count=sum(1 for t in trials if t.is_lapse),
        false_start_count=sum(1 for t in trials if t.is_false_start),
        timeout_count=sum(1 for t in trials if t.is_timeout),
        duration_ms=float(engine.elapsed_ms() or 0.0),
        mean_rt_ms=mean_ms,
        median_rt_ms=median_ms,
        final_posteriors=state.posteriors,
        trials=trials,
    )
