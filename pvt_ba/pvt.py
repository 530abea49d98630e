from __future__ import annotations

import dataclasses
import logging
from collections.abc import Mapping
from dataclasses import dataclass
from enum import StrEnum

from .adaptive import (
    DEFAULT_DECISION_THRESHOLD,
    AdaptiveClassifier,
    Classification,
    ClassifierState,
    Posteriors,
    StopReason,
    time_bin_from_elapsed_ms,
)
from .clock import Clock, require_clock, to_ms
from .cognitive_core import Phase, SeededRng, TestSnapshot, round_half_up

logger = logging.getLogger(__name__)

RESPONSE_CEILING_MS = 30_000

# Normal responses faster than this share of the lapse threshold get "fast" feedback.
FAST_FEEDBACK_RATIO = 0.7


@dataclass(frozen=True, slots=True)
class PvtConfig:
    # Nominal PVT-BA length; the adaptive rule usually stops well before it.
    max_duration_s: float = 180.0
    # Drawn ISI includes the feedback display of the previous trial.
    min_isi_ms: int = 1000
    max_isi_ms: int = 4000
    lapse_threshold_ms: float = 355.0
    false_start_threshold_ms: float = 100.0
    decision_threshold: float = DEFAULT_DECISION_THRESHOLD
    feedback_duration_ms: int = 1000
    response_timeout_ms: int = RESPONSE_CEILING_MS


# External parameter names accepted by config_from_parameters().
PARAMETER_FIELDS: dict[str, str] = {
    "max_duration_seconds": "max_duration_s",
    "min_isi_ms": "min_isi_ms",
    "max_isi_ms": "max_isi_ms",
    "lapse_threshold_ms": "lapse_threshold_ms",
    "false_start_threshold_ms": "false_start_threshold_ms",
    "decision_threshold": "decision_threshold",
    "feedback_duration_ms": "feedback_duration_ms",
}

_INT_FIELDS = frozenset({"min_isi_ms", "max_isi_ms", "feedback_duration_ms", "response_timeout_ms"})


def validate_config(cfg: PvtConfig) -> None:
    if cfg.max_duration_s <= 0.0:
        raise ValueError("max_duration_s must be > 0")
    if cfg.min_isi_ms < 0:
        raise ValueError("min_isi_ms must be >= 0")
    if cfg.min_isi_ms > cfg.max_isi_ms:
        raise ValueError("min_isi_ms must be <= max_isi_ms")
    if cfg.false_start_threshold_ms < 0.0:
        raise ValueError("false_start_threshold_ms must be >= 0")
    if cfg.lapse_threshold_ms <= cfg.false_start_threshold_ms:
        raise ValueError("lapse_threshold_ms must be > false_start_threshold_ms")
    if cfg.response_timeout_ms < cfg.lapse_threshold_ms:
        raise ValueError("response_timeout_ms must be >= lapse_threshold_ms")
    if not (0.0 < cfg.decision_threshold <= 1.0):
        raise ValueError("decision_threshold must be in (0.0, 1.0]")
    if cfg.feedback_duration_ms < 0:
        raise ValueError("feedback_duration_ms must be >= 0")


def config_from_parameters(params: Mapping[str, object], *, base: PvtConfig | None = None) -> PvtConfig:
    """Build a config from externally supplied parameter overrides.

    Keys use the published parameter names (``max_duration_seconds``,
    ``min_isi_ms``, ...). Values may be numbers or numeric strings; keys that
    are absent keep the value from ``base``.
    """

    changes: dict[str, float | int] = {}
    for key, raw in params.items():
        field = PARAMETER_FIELDS.get(key)
        if field is None:
            raise ValueError(f"unknown parameter: {key}")
        try:
            value = float(raw)  # type: ignore[arg-type]
        except (TypeError, ValueError) as exc:
            raise ValueError(f"parameter {key} must be numeric, got {raw!r}") from exc
        if field in _INT_FIELDS:
            if not value.is_integer():
                raise ValueError(f"parameter {key} must be a whole number of ms, got {raw!r}")
            changes[field] = int(value)
        else:
            changes[field] = value

    cfg = dataclasses.replace(base or PvtConfig(), **changes)
    validate_config(cfg)
    return cfg


class TrialState(StrEnum):
    IDLE = "idle"
    WAITING_FOR_STIMULUS = "waiting_for_stimulus"
    STIMULUS_VISIBLE = "stimulus_visible"
    FEEDBACK = "feedback"
    TERMINATED = "terminated"


class TrialKind(StrEnum):
    NORMAL = "normal"
    LAPSE = "lapse"
    FALSE_START = "false_start"
    TIMEOUT = "timeout"


@dataclass(frozen=True, slots=True)
class TrialOutcome:
    trial_index: int
    kind: TrialKind
    isi_ms: int
    stimulus_onset_ms: float | None  # None when the tap came before the stimulus
    response_ms: float | None  # None on timeout
    rt_ms: float | None
    is_lapse: bool
    is_false_start: bool
    is_timeout: bool
    cumulative_lpfs: int
    elapsed_test_time_ms: int
    time_bin: int
    posteriors: Posteriors
    classification: Classification | None = None

    @property
    def is_lpfs(self) -> bool:
        return self.is_lapse or self.is_false_start

    @property
    def is_terminal(self) -> bool:
        return self.classification is not None

    def to_record(self) -> dict[str, object]:
        """Flat per-trial record for telemetry consumers."""

        p = self.posteriors.rounded(6)
        return {
            "trial_index": self.trial_index,
            "rt_ms": self.rt_ms,
            "isi_ms": self.isi_ms,
            "stimulus_onset_timestamp": self.stimulus_onset_ms,
            "response_timestamp": self.response_ms,
            "is_lapse": self.is_lapse,
            "is_false_start": self.is_false_start,
            "is_timeout": self.is_timeout,
            "cumulative_lpfs": self.cumulative_lpfs,
            "elapsed_test_time_ms": self.elapsed_test_time_ms,
            "time_bin": self.time_bin,
            "posterior_high": p.high,
            "posterior_medium": p.medium,
            "posterior_low": p.low,
            "classification": None if self.classification is None else self.classification.value,
        }


@dataclass(frozen=True, slots=True)
class PvtPayload:
    trial_state: TrialState
    trial_index: int
    counter_ms: int | None  # running RT counter while the stimulus is up
    feedback_kind: TrialKind | None
    feedback_rt_ms: int | None
    feedback_fast: bool
    trials_completed: int
    lpfs_count: int


@dataclass(slots=True)
class _LiveTrial:
    index: int
    isi_ms: int
    stimulus_due_s: float
    onset_s: float | None = None


class PvtEngine:
    """Trial timing state machine for the adaptive PVT.

    Per trial: IDLE -> WAITING_FOR_STIMULUS (ISI) -> STIMULUS_VISIBLE ->
    FEEDBACK -> IDLE/TERMINATED. A tap during the ISI skips straight to
    FEEDBACK as a false start.

    - Time only comes from the injected Clock; call update() every frame.
    - Each completed trial feeds the classifier exactly once.
    - The session ends when the classifier stops or the wall-clock budget is
      spent; cancel() abandons the session without a classification.
    """

    def __init__(
        self,
        *,
        clock: Clock,
        seed: int,
        config: PvtConfig | None = None,
    ) -> None:
        cfg = config or PvtConfig()
        validate_config(cfg)

        self._clock = require_clock(clock)
        self._seed = int(seed)
        self._cfg = cfg
        self._rng = SeededRng(self._seed)
        self._classifier = AdaptiveClassifier(decision_threshold=cfg.decision_threshold)

        self._phase = Phase.INSTRUCTIONS
        self._trial_state = TrialState.IDLE
        self._session_started_at_s: float | None = None
        self._ended_at_s: float | None = None

        self._current: _LiveTrial | None = None
        self._feedback_started_at_s: float | None = None
        self._pending_stop: StopReason | None = None

        self._trials: list[TrialOutcome] = []
        self._stop_reason: StopReason | None = None
        self._final_classification: Classification | None = None

    @property
    def seed(self) -> int:
        return self._seed

    @property
    def config(self) -> PvtConfig:
        return self._cfg

    @property
    def phase(self) -> Phase:
        return self._phase

    @property
    def trial_state(self) -> TrialState:
        return self._trial_state

    @property
    def stop_reason(self) -> StopReason | None:
        return self._stop_reason

    @property
    def final_classification(self) -> Classification | None:
        return self._final_classification

    def classifier_state(self) -> ClassifierState:
        return self._classifier.state()

    def trials(self) -> list[TrialOutcome]:
        return list(self._trials)

    def can_exit(self) -> bool:
        return self._phase is not Phase.SCORED

    def start(self) -> None:
        if self._phase is not Phase.INSTRUCTIONS:
            return
        now = self._clock.now()
        self._phase = Phase.SCORED
        self._session_started_at_s = now
        logger.info("PVT session started (seed=%d, max_duration_s=%.1f)", self._seed, self._cfg.max_duration_s)
        self._begin_trial(now, feedback_consumed_ms=0.0)

    def cancel(self) -> bool:
        """Quit signal. The in-flight trial is dropped and no result is produced."""

        if self._phase not in (Phase.INSTRUCTIONS, Phase.SCORED):
            return False
        self._phase = Phase.CANCELLED
        self._trial_state = TrialState.TERMINATED
        self._current = None
        self._feedback_started_at_s = None
        self._pending_stop = None
        self._ended_at_s = self._clock.now()
        logger.info("PVT session cancelled after %d completed trials", len(self._trials))
        return True

    def update(self) -> None:
        if self._phase is not Phase.SCORED:
            return
        self._advance(self._clock.now())

    def respond(self) -> bool:
        """Register a tap. Returns True if it was consumed as this trial's response."""

        if self._phase is not Phase.SCORED:
            return False
        now = self._clock.now()
        # A stimulus not yet drawn by update() cannot have been seen.
        self._advance(now, reveal_stimulus=False)

        live = self._current
        if live is None:
            # Feedback or terminated: one response per trial.
            return False

        if self._trial_state is TrialState.WAITING_FOR_STIMULUS:
            self._record_trial(now, kind=TrialKind.FALSE_START, rt_ms=None, response_s=now)
            return True

        if self._trial_state is TrialState.STIMULUS_VISIBLE:
            assert live.onset_s is not None
            rt_ms = round(to_ms(now - live.onset_s), 3)
            if rt_ms < self._cfg.false_start_threshold_ms:
                kind = TrialKind.FALSE_START
            elif rt_ms >= self._cfg.lapse_threshold_ms:
                kind = TrialKind.LAPSE
            else:
                kind = TrialKind.NORMAL
            self._record_trial(now, kind=kind, rt_ms=rt_ms, response_s=now)
            return True

        return False

    def elapsed_ms(self) -> float | None:
        if self._session_started_at_s is None:
            return None
        end = self._clock.now() if self._ended_at_s is None else self._ended_at_s
        return to_ms(end - self._session_started_at_s)

    def time_remaining_s(self) -> float | None:
        if self._phase is not Phase.SCORED:
            return None
        assert self._session_started_at_s is not None
        remaining = self._cfg.max_duration_s - (self._clock.now() - self._session_started_at_s)
        return max(0.0, remaining)

    def snapshot(self) -> TestSnapshot:
        payload = self._build_payload() if self._phase is Phase.SCORED else None
        state = self._classifier.state()
        return TestSnapshot(
            title="Psychomotor Vigilance Test",
            phase=self._phase,
            prompt=self.current_prompt(),
            input_hint="SPACE / click = respond   Shift+Esc = quit",
            time_remaining_s=self.time_remaining_s(),
            trials_completed=len(self._trials),
            lpfs_count=state.lpfs_count,
            payload=payload,
        )

    def current_prompt(self) -> str:
        if self._phase is Phase.INSTRUCTIONS:
            return "\n".join(
                [
                    "Psychomotor Vigilance Test",
                    "",
                    "A counter will appear in the box.",
                    "Respond as quickly as possible when the counter appears.",
                    "Do NOT respond while the box is empty.",
                    "",
                    "The test takes about 3 minutes or less.",
                    "Press Enter to begin.",
                ]
            )

        if self._phase is Phase.CANCELLED:
            return "Test cancelled. No classification was produced."

        if self._phase is Phase.RESULTS:
            state = self._classifier.state()
            assert self._final_classification is not None
            elapsed = self.elapsed_ms() or 0.0
            return "\n".join(
                [
                    "Test Complete",
                    "",
                    f"Vigilance: {self._final_classification.value}",
                    f"Trials: {state.trial_count}  |  LpFS: {state.lpfs_count}  |  Time: {elapsed / 1000.0:.1f}s",
                    "",
                    "Press Enter to return.",
                ]
            )

        if self._trial_state is TrialState.FEEDBACK and self._trials:
            last = self._trials[-1]
            if last.kind is TrialKind.FALSE_START:
                return "TOO EARLY\nWait for the counter"
            if last.kind is TrialKind.TIMEOUT:
                return "---"
            assert last.rt_ms is not None
            return f"{round_half_up(last.rt_ms)} ms"

        return ""

    def _advance(self, now: float, *, reveal_stimulus: bool = True) -> None:
        while True:
            state = self._trial_state
            live = self._current

            if state is TrialState.WAITING_FOR_STIMULUS:
                assert live is not None
                if not reveal_stimulus or now < live.stimulus_due_s:
                    return
                self._show_stimulus(now)
                continue

            if state is TrialState.STIMULUS_VISIBLE:
                assert live is not None and live.onset_s is not None
                if to_ms(now - live.onset_s) < self._cfg.response_timeout_ms:
                    return
                self._record_trial(
                    now,
                    kind=TrialKind.TIMEOUT,
                    rt_ms=float(self._cfg.response_timeout_ms),
                    response_s=None,
                )
                continue

            if state is TrialState.FEEDBACK:
                assert self._feedback_started_at_s is not None
                shown_ms = to_ms(now - self._feedback_started_at_s)
                if shown_ms < self._cfg.feedback_duration_ms:
                    return
                self._finish_feedback(now, shown_ms=shown_ms)
                continue

            return

    def _begin_trial(self, now: float, *, feedback_consumed_ms: float) -> None:
        assert self._session_started_at_s is not None
        elapsed_ms = to_ms(now - self._session_started_at_s)
        if elapsed_ms >= to_ms(self._cfg.max_duration_s):
            self._terminate(now, reason=StopReason.TIME_LIMIT)
            return

        isi_ms = int(self._rng.randint(self._cfg.min_isi_ms, self._cfg.max_isi_ms))
        # The drawn ISI already covers the feedback that was just on screen.
        wait_ms = max(0.0, isi_ms - feedback_consumed_ms)
        self._current = _LiveTrial(
            index=len(self._trials),
            isi_ms=isi_ms,
            stimulus_due_s=now + (wait_ms / 1000.0),
        )
        self._trial_state = TrialState.WAITING_FOR_STIMULUS

    def _show_stimulus(self, now: float) -> None:
        assert self._current is not None
        self._current.onset_s = now
        self._trial_state = TrialState.STIMULUS_VISIBLE
        logger.debug("trial %d stimulus onset (isi=%d ms)", self._current.index, self._current.isi_ms)

    def _record_trial(
        self,
        now: float,
        *,
        kind: TrialKind,
        rt_ms: float | None,
        response_s: float | None,
    ) -> None:
        live = self._current
        assert live is not None
        assert self._session_started_at_s is not None

        elapsed_ms = to_ms(now - self._session_started_at_s)
        time_bin = time_bin_from_elapsed_ms(elapsed_ms)

        is_false_start = kind is TrialKind.FALSE_START
        is_lapse = kind in (TrialKind.LAPSE, TrialKind.TIMEOUT)

        self._classifier.update(is_lapse or is_false_start, time_bin)
        state = self._classifier.state()

        if state.stopped:
            self._pending_stop = state.stop_reason
        elif elapsed_ms >= to_ms(self._cfg.max_duration_s):
            self._pending_stop = StopReason.TIME_LIMIT
        else:
            self._pending_stop = None

        outcome = TrialOutcome(
            trial_index=live.index,
            kind=kind,
            isi_ms=live.isi_ms,
            stimulus_onset_ms=None if live.onset_s is None else to_ms(live.onset_s),
            response_ms=None if response_s is None else to_ms(response_s),
            rt_ms=rt_ms,
            is_lapse=is_lapse,
            is_false_start=is_false_start,
            is_timeout=kind is TrialKind.TIMEOUT,
            cumulative_lpfs=state.lpfs_count,
            elapsed_test_time_ms=round_half_up(elapsed_ms),
            time_bin=time_bin,
            posteriors=state.posteriors,
            classification=None if self._pending_stop is None else self._classifier.classification(),
        )
        self._trials.append(outcome)
        logger.debug(
            "trial %d %s rt=%s bin=%d lpfs=%d",
            outcome.trial_index,
            kind.value,
            "null" if rt_ms is None else f"{rt_ms:.1f}",
            time_bin,
            state.lpfs_count,
        )

        self._current = None
        self._trial_state = TrialState.FEEDBACK
        self._feedback_started_at_s = now

    def _finish_feedback(self, now: float, *, shown_ms: float) -> None:
        self._feedback_started_at_s = None
        self._trial_state = TrialState.IDLE
        if self._pending_stop is not None:
            self._terminate(now, reason=self._pending_stop)
            return
        self._begin_trial(now, feedback_consumed_ms=shown_ms)

    def _terminate(self, now: float, *, reason: StopReason) -> None:
        self._phase = Phase.RESULTS
        self._trial_state = TrialState.TERMINATED
        self._current = None
        self._pending_stop = None
        self._ended_at_s = now
        self._stop_reason = reason
        self._final_classification = self._classifier.classification()
        state = self._classifier.state()
        logger.info(
            "PVT session ended by %s: %s after %d trials (lpfs=%d)",
            reason.value,
            self._final_classification.value,
            state.trial_count,
            state.lpfs_count,
        )

    def _build_payload(self) -> PvtPayload:
        now = self._clock.now()
        live = self._current
        counter_ms: int | None = None
        if self._trial_state is TrialState.STIMULUS_VISIBLE and live is not None and live.onset_s is not None:
            counter_ms = round_half_up(to_ms(max(0.0, now - live.onset_s)))

        feedback_kind: TrialKind | None = None
        feedback_rt: int | None = None
        fast = False
        if self._trial_state is TrialState.FEEDBACK and self._trials:
            last = self._trials[-1]
            feedback_kind = last.kind
            if last.rt_ms is not None and last.kind is not TrialKind.TIMEOUT:
                feedback_rt = round_half_up(last.rt_ms)
            if last.kind is TrialKind.NORMAL and last.rt_ms is not None:
                fast = last.rt_ms < self._cfg.lapse_threshold_ms * FAST_FEEDBACK_RATIO

        return PvtPayload(
            trial_state=self._trial_state,
            trial_index=len(self._trials) if live is None else live.index,
            counter_ms=counter_ms,
            feedback_kind=feedback_kind,
            feedback_rt_ms=feedback_rt,
            feedback_fast=fast,
            trials_completed=len(self._trials),
            lpfs_count=self._classifier.lpfs_count,
        )


def build_pvt_test(
    *,
    clock: Clock,
    seed: int,
    config: PvtConfig | None = None,
) -> PvtEngine:
    return PvtEngine(clock=clock, seed=seed, config=config)
