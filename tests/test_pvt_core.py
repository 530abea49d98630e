from __future__ import annotations

from dataclasses import dataclass

import pytest

from pvt_ba.adaptive import Classification, StopReason
from pvt_ba.cognitive_core import Phase
from pvt_ba.pvt import (
    PvtConfig,
    PvtEngine,
    PvtPayload,
    TrialKind,
    TrialState,
    build_pvt_test,
    config_from_parameters,
)
from pvt_ba.results import pvt_result_from_engine


@dataclass
class FakeClock:
    t: float = 0.0

    def now(self) -> float:
        return self.t

    def advance(self, dt: float) -> None:
        self.t += float(dt)


class BrokenClock:
    def now(self) -> float:
        raise RuntimeError("clock unavailable")


# Fixed 2 s ISI so stimulus times are predictable.
FIXED_ISI = PvtConfig(min_isi_ms=2000, max_isi_ms=2000)


def _tick(clock: FakeClock, engine: PvtEngine, dt: float) -> None:
    clock.advance(dt)
    engine.update()


def _wait_for_stimulus(clock: FakeClock, engine: PvtEngine, step: float = 0.25) -> None:
    for _ in range(10_000):
        if engine.trial_state is TrialState.STIMULUS_VISIBLE:
            return
        _tick(clock, engine, step)
    raise AssertionError("stimulus never appeared")


def _finish_feedback(clock: FakeClock, engine: PvtEngine, step: float = 0.25) -> None:
    for _ in range(10_000):
        if engine.trial_state is not TrialState.FEEDBACK:
            return
        _tick(clock, engine, step)
    raise AssertionError("feedback never ended")


def _started(config: PvtConfig = FIXED_ISI, seed: int = 11) -> tuple[FakeClock, PvtEngine]:
    clock = FakeClock()
    engine = build_pvt_test(clock=clock, seed=seed, config=config)
    engine.start()
    return clock, engine


def test_start_enters_isi_and_shows_stimulus_when_due() -> None:
    clock, engine = _started()
    assert engine.phase is Phase.SCORED
    assert engine.trial_state is TrialState.WAITING_FOR_STIMULUS

    _tick(clock, engine, 1.5)
    assert engine.trial_state is TrialState.WAITING_FOR_STIMULUS

    _tick(clock, engine, 0.5)
    assert engine.trial_state is TrialState.STIMULUS_VISIBLE


def test_normal_response_is_timed_from_onset() -> None:
    clock, engine = _started()
    _wait_for_stimulus(clock, engine)
    _tick(clock, engine, 0.25)

    assert engine.respond() is True
    (trial,) = engine.trials()
    assert trial.kind is TrialKind.NORMAL
    assert trial.rt_ms == pytest.approx(250.0)
    assert trial.stimulus_onset_ms == pytest.approx(2000.0)
    assert trial.response_ms == pytest.approx(2250.0)
    assert trial.is_lapse is False
    assert trial.is_false_start is False
    assert trial.isi_ms == 2000
    assert engine.trial_state is TrialState.FEEDBACK


@pytest.mark.parametrize("lapse_threshold_ms", [150.0, 355.0, 1000.0])
def test_fast_response_below_false_start_threshold(lapse_threshold_ms: float) -> None:
    clock, engine = _started(PvtConfig(min_isi_ms=2000, max_isi_ms=2000, lapse_threshold_ms=lapse_threshold_ms))
    _wait_for_stimulus(clock, engine)
    clock.advance(0.09)

    assert engine.respond() is True
    (trial,) = engine.trials()
    assert trial.is_false_start is True
    assert trial.is_lapse is False
    assert trial.rt_ms == pytest.approx(90.0)
    assert trial.kind is TrialKind.FALSE_START


def test_threshold_edges_use_at_or_above_for_lapse_and_below_for_false_start() -> None:
    cfg = PvtConfig(min_isi_ms=2000, max_isi_ms=2000, false_start_threshold_ms=125.0, lapse_threshold_ms=375.0)

    clock, engine = _started(cfg)
    _wait_for_stimulus(clock, engine)
    clock.advance(0.125)
    engine.respond()
    _finish_feedback(clock, engine)
    _wait_for_stimulus(clock, engine)
    clock.advance(0.375)
    engine.respond()

    first, second = engine.trials()
    assert first.kind is TrialKind.NORMAL
    assert second.kind is TrialKind.LAPSE
    assert second.is_lapse is True


def test_no_response_times_out_as_lapse_at_ceiling() -> None:
    clock, engine = _started()
    _wait_for_stimulus(clock, engine)

    _tick(clock, engine, 29.5)
    assert engine.trial_state is TrialState.STIMULUS_VISIBLE
    assert engine.trials() == []

    _tick(clock, engine, 0.5)
    (trial,) = engine.trials()
    assert trial.kind is TrialKind.TIMEOUT
    assert trial.is_lapse is True
    assert trial.is_timeout is True
    assert trial.is_false_start is False
    assert trial.rt_ms == 30000.0
    assert trial.response_ms is None
    assert engine.classifier_state().lpfs_count == 1


def test_response_during_isi_is_false_start_without_waiting() -> None:
    clock, engine = _started()
    _tick(clock, engine, 1.0)

    assert engine.respond() is True
    (trial,) = engine.trials()
    assert trial.kind is TrialKind.FALSE_START
    assert trial.rt_ms is None
    assert trial.stimulus_onset_ms is None
    assert trial.response_ms == pytest.approx(1000.0)
    assert trial.is_false_start is True
    assert trial.is_lapse is False
    assert engine.trial_state is TrialState.FEEDBACK


def test_tap_when_stimulus_is_due_but_not_drawn_is_isi_false_start() -> None:
    clock, engine = _started()
    clock.advance(2.0)  # stimulus due now, no frame has shown it yet

    assert engine.respond() is True
    (trial,) = engine.trials()
    assert trial.kind is TrialKind.FALSE_START
    assert trial.rt_ms is None
    assert trial.stimulus_onset_ms is None
    assert trial.response_ms == pytest.approx(2000.0)


def test_tap_on_drawn_stimulus_is_timed_from_onset() -> None:
    clock, engine = _started()
    _tick(clock, engine, 2.0)
    assert engine.trial_state is TrialState.STIMULUS_VISIBLE

    assert engine.respond() is True
    (trial,) = engine.trials()
    assert trial.kind is TrialKind.FALSE_START
    assert trial.rt_ms == 0.0
    assert trial.stimulus_onset_ms == pytest.approx(2000.0)


def test_only_one_response_per_trial() -> None:
    clock, engine = _started()
    _wait_for_stimulus(clock, engine)
    _tick(clock, engine, 0.25)

    assert engine.respond() is True
    assert engine.respond() is False
    _tick(clock, engine, 0.5)
    assert engine.respond() is False

    assert len(engine.trials()) == 1
    assert engine.classifier_state().trial_count == 1


def test_isi_includes_previous_feedback() -> None:
    clock, engine = _started()
    _wait_for_stimulus(clock, engine)
    _tick(clock, engine, 0.25)
    engine.respond()  # t = 2.25

    _tick(clock, engine, 1.0)  # feedback over at 3.25
    assert engine.trial_state is TrialState.WAITING_FOR_STIMULUS

    _tick(clock, engine, 0.75)
    assert engine.trial_state is TrialState.WAITING_FOR_STIMULUS
    _tick(clock, engine, 0.25)  # 2.25 + 2.0
    assert engine.trial_state is TrialState.STIMULUS_VISIBLE

    _tick(clock, engine, 0.25)
    engine.respond()
    first, second = engine.trials()
    assert first.response_ms is not None and second.stimulus_onset_ms is not None
    assert second.stimulus_onset_ms - first.response_ms == pytest.approx(second.isi_ms)


def test_isi_draws_are_integers_within_bounds_and_seeded() -> None:
    def isis(seed: int) -> list[int]:
        clock, engine = _started(PvtConfig(decision_threshold=1.0), seed=seed)
        for _ in range(25):
            _wait_for_stimulus(clock, engine, step=0.125)
            _tick(clock, engine, 0.25)
            engine.respond()
            _finish_feedback(clock, engine, step=0.125)
        return [t.isi_ms for t in engine.trials()]

    first = isis(123)
    assert first == isis(123)
    assert all(isinstance(v, int) and 1000 <= v <= 4000 for v in first)
    assert len(set(first)) > 1


def test_each_trial_feeds_classifier_once() -> None:
    clock, engine = _started()
    for i in range(5):
        if i % 2:
            _tick(clock, engine, 0.25)
            engine.respond()
        else:
            _wait_for_stimulus(clock, engine)
            _tick(clock, engine, 0.5)
            engine.respond()
        _finish_feedback(clock, engine)

    state = engine.classifier_state()
    trials = engine.trials()
    assert state.trial_count == len(trials) == 5
    assert state.lpfs_count == sum(1 for t in trials if t.is_lpfs)
    assert [t.cumulative_lpfs for t in trials] == [1, 2, 3, 4, 5]


def test_classifier_stop_terminates_after_feedback() -> None:
    clock, engine = _started(PvtConfig())
    # Immediate taps are false starts; six in bin 0 push LOW past threshold.
    for _ in range(6):
        assert engine.respond() is True
        _finish_feedback(clock, engine)

    trials = engine.trials()
    assert len(trials) == 6
    assert all(t.classification is None for t in trials[:-1])
    assert trials[-1].classification is Classification.LOW
    assert all(t.time_bin == 0 for t in trials)
    assert engine.phase is Phase.RESULTS
    assert engine.trial_state is TrialState.TERMINATED
    assert engine.stop_reason is StopReason.THRESHOLD
    assert engine.final_classification is Classification.LOW
    assert engine.respond() is False


def test_terminal_trial_waits_out_feedback_before_results() -> None:
    clock, engine = _started(PvtConfig())
    for _ in range(5):
        engine.respond()
        _finish_feedback(clock, engine)
    engine.respond()

    assert engine.trials()[-1].classification is Classification.LOW
    assert engine.phase is Phase.SCORED
    assert engine.trial_state is TrialState.FEEDBACK
    _tick(clock, engine, 1.0)
    assert engine.phase is Phase.RESULTS


def test_time_budget_exhausted_between_trials_uses_count_fallback() -> None:
    clock, engine = _started(PvtConfig(min_isi_ms=2000, max_isi_ms=2000, max_duration_s=10.0))
    while engine.phase is Phase.SCORED:
        _wait_for_stimulus(clock, engine)
        _tick(clock, engine, 0.25)
        engine.respond()
        _finish_feedback(clock, engine)

    trials = engine.trials()
    assert len(trials) == 4
    assert all(t.classification is None for t in trials)
    assert engine.stop_reason is StopReason.TIME_LIMIT
    assert engine.final_classification is Classification.HIGH
    assert clock.now() == pytest.approx(10.0)


def test_time_budget_reached_at_response_marks_terminal_trial() -> None:
    clock, engine = _started(PvtConfig(min_isi_ms=2000, max_isi_ms=2000, max_duration_s=9.0))
    for _ in range(4):
        _wait_for_stimulus(clock, engine)
        _tick(clock, engine, 0.25)
        engine.respond()
        _finish_feedback(clock, engine)

    last = engine.trials()[-1]
    assert last.elapsed_test_time_ms == 9000
    assert last.classification is Classification.HIGH
    assert engine.stop_reason is StopReason.TIME_LIMIT
    assert engine.phase is Phase.RESULTS


def test_cancel_abandons_in_flight_trial_without_classification() -> None:
    clock, engine = _started()
    _wait_for_stimulus(clock, engine)
    _tick(clock, engine, 0.25)
    engine.respond()
    _finish_feedback(clock, engine)
    _wait_for_stimulus(clock, engine)

    assert engine.cancel() is True
    assert engine.phase is Phase.CANCELLED
    assert engine.trial_state is TrialState.TERMINATED
    assert len(engine.trials()) == 1
    assert engine.classifier_state().trial_count == 1
    assert engine.final_classification is None
    assert engine.respond() is False

    _tick(clock, engine, 60.0)
    assert len(engine.trials()) == 1
    assert engine.cancel() is False
    with pytest.raises(ValueError):
        pvt_result_from_engine(engine)


def test_inputs_before_start_are_ignored() -> None:
    clock = FakeClock()
    engine = build_pvt_test(clock=clock, seed=1)
    assert engine.phase is Phase.INSTRUCTIONS
    assert engine.respond() is False
    engine.update()
    assert engine.trials() == []
    assert engine.can_exit() is True
    assert engine.time_remaining_s() is None


def test_time_remaining_counts_down_during_session() -> None:
    clock, engine = _started()
    assert engine.time_remaining_s() == pytest.approx(180.0)
    assert engine.can_exit() is False
    _tick(clock, engine, 30.0)
    assert engine.time_remaining_s() == pytest.approx(150.0)


def test_snapshot_payload_shows_counter_and_feedback() -> None:
    clock, engine = _started()
    _wait_for_stimulus(clock, engine)
    _tick(clock, engine, 0.125)

    payload = engine.snapshot().payload
    assert isinstance(payload, PvtPayload)
    assert payload.trial_state is TrialState.STIMULUS_VISIBLE
    assert payload.counter_ms == 125

    clock.advance(0.0625)  # respond at 187.5 ms
    engine.respond()
    snap = engine.snapshot()
    payload = snap.payload
    assert isinstance(payload, PvtPayload)
    assert payload.feedback_kind is TrialKind.NORMAL
    assert payload.feedback_rt_ms == 188
    assert payload.feedback_fast is True
    assert payload.counter_ms is None
    assert snap.prompt == "188 ms"
    assert snap.trials_completed == 1


def test_slower_normal_response_is_not_flagged_fast() -> None:
    clock, engine = _started()
    _wait_for_stimulus(clock, engine)
    _tick(clock, engine, 0.25)
    engine.respond()

    payload = engine.snapshot().payload
    assert isinstance(payload, PvtPayload)
    assert payload.feedback_kind is TrialKind.NORMAL
    assert payload.feedback_rt_ms == 250
    assert payload.feedback_fast is False


def test_record_has_published_fields_and_rounded_posteriors() -> None:
    clock, engine = _started()
    _wait_for_stimulus(clock, engine)
    _tick(clock, engine, 0.25)
    engine.respond()

    record = engine.trials()[0].to_record()
    assert set(record) == {
        "trial_index",
        "rt_ms",
        "isi_ms",
        "stimulus_onset_timestamp",
        "response_timestamp",
        "is_lapse",
        "is_false_start",
        "is_timeout",
        "cumulative_lpfs",
        "elapsed_test_time_ms",
        "time_bin",
        "posterior_high",
        "posterior_medium",
        "posterior_low",
        "classification",
    }
    assert record["trial_index"] == 0
    assert record["elapsed_test_time_ms"] == 2250
    assert record["time_bin"] == 0
    assert record["classification"] is None
    assert record["posterior_high"] == round(0.61 / 1.61, 6)
    assert record["posterior_low"] == round(0.39 / 1.39, 6)


@pytest.mark.parametrize(
    "config",
    [
        PvtConfig(min_isi_ms=4000, max_isi_ms=1000),
        PvtConfig(min_isi_ms=-1),
        PvtConfig(lapse_threshold_ms=100.0, false_start_threshold_ms=100.0),
        PvtConfig(lapse_threshold_ms=90.0),
        PvtConfig(decision_threshold=0.0),
        PvtConfig(decision_threshold=1.5),
        PvtConfig(max_duration_s=0.0),
        PvtConfig(feedback_duration_ms=-5),
        PvtConfig(response_timeout_ms=300),
    ],
)
def test_invalid_config_fails_at_construction(config: PvtConfig) -> None:
    with pytest.raises(ValueError):
        build_pvt_test(clock=FakeClock(), seed=1, config=config)


def test_missing_clock_is_rejected() -> None:
    with pytest.raises(ValueError):
        PvtEngine(clock=None, seed=1)  # type: ignore[arg-type]


def test_failing_clock_is_fatal() -> None:
    engine = build_pvt_test(clock=BrokenClock(), seed=1)
    with pytest.raises(RuntimeError):
        engine.start()


def test_config_from_parameters_applies_overrides() -> None:
    cfg = config_from_parameters(
        {
            "max_duration_seconds": "120",
            "min_isi_ms": 1500,
            "decision_threshold": "0.99",
            "feedback_duration_ms": "500",
        }
    )
    assert cfg.max_duration_s == 120.0
    assert cfg.min_isi_ms == 1500
    assert cfg.max_isi_ms == 4000
    assert cfg.decision_threshold == 0.99
    assert cfg.feedback_duration_ms == 500
    assert cfg.lapse_threshold_ms == 355.0


@pytest.mark.parametrize(
    "params",
    [
        {"max_isi": 3000},
        {"lapse_threshold_ms": "slow"},
        {"min_isi_ms": 1500.5},
        {"min_isi_ms": 5000},
        {"false_start_threshold_ms": 400},
    ],
)
def test_config_from_parameters_rejects_bad_input(params: dict[str, object]) -> None:
    with pytest.raises(ValueError):
        config_from_parameters(params)
