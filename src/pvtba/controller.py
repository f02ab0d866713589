"""
Test controller: the trial loop, the test clock and the time-cap fallback.

Each step() runs one trial (ISI → stimulus → response → classification →
posterior update → record → feedback) or finalises the test. The overall
duration cap is an absolute deadline from test start and also bounds the
waits inside a trial; a trial cut short before its outcome is known is
discarded.

Records without a classification are handed to the sinks one step late so
that, when the cap ends the test between trials, the fallback classification
can still go on the last completed trial.
"""
from __future__ import annotations

import random
from dataclasses import dataclass, replace
from enum import Enum
from typing import Sequence

from psychopy import logging

from pvtba.classifier import Response, classify_response
from pvtba.config import TaskConfig
from pvtba.devices import Clock, InputSource, StimulusPresenter
from pvtba.posterior import Category, PosteriorEngine, fallback_classification, time_bin
from pvtba.recorder import ResultsSink, TrialRecord
from pvtba.timer import TrialTimer


class ControllerState(str, Enum):
    RUNNING = "running"
    FINALIZED = "finalized"


@dataclass(frozen=True)
class TestResult:
    __test__ = False

    classification: Category
    trials: tuple[TrialRecord, ...]
    cumulative_lpfs: int
    decided_early: bool          # True: posterior stopping rule; False: time-cap fallback
    elapsed_test_time_ms: int
    posteriors: dict[Category, float]


class TestController:
    __test__ = False

    def __init__(
        self,
        cfg: TaskConfig,
        timer: TrialTimer,
        presenter: StimulusPresenter,
        engine: PosteriorEngine | None = None,
        sinks: Sequence[ResultsSink] = (),
    ) -> None:
        self._cfg = cfg
        self._timer = timer
        self._presenter = presenter
        self._engine = engine if engine is not None else PosteriorEngine.from_config(cfg)
        self._sinks = list(sinks)
        self._state = ControllerState.RUNNING
        self._start_ms: float | None = None
        self._feedback_consumed_ms = 0.0
        self._records: list[TrialRecord] = []
        self._pending: TrialRecord | None = None
        self._trial_index = 0
        self._result: TestResult | None = None

    @property
    def state(self) -> ControllerState:
        return self._state

    @property
    def finalized(self) -> bool:
        return self._state is ControllerState.FINALIZED

    @property
    def engine(self) -> PosteriorEngine:
        return self._engine

    @property
    def records(self) -> tuple[TrialRecord, ...]:
        """Records handed to the sinks so far."""
        return tuple(self._records)

    @property
    def result(self) -> TestResult | None:
        return self._result

    def start(self) -> None:
        """Start the test clock. run() and step() call this if needed."""
        if self._start_ms is None:
            self._start_ms = self._timer.now_ms()
            logging.exp(f"Test started (cap {self._cfg.max_duration_ms / 1000:.0f} s)")

    def run(self) -> TestResult:
        self.start()
        try:
            while not self.finalized:
                self.step()
        finally:
            # A quit mid-test must not lose the last completed trial
            self._flush_pending()
        assert self._result is not None
        return self._result

    def step(self) -> TrialRecord | None:
        """Run one trial and return its record, or finalise. No-op once finalised."""
        if self.finalized:
            return None
        self.start()
        if self._elapsed_ms() >= self._cfg.max_duration_ms:
            self._finalize_by_fallback()
            return None
        record = self._run_trial()
        if record is None:
            self._finalize_by_fallback()
        return record

    def _elapsed_ms(self) -> float:
        assert self._start_ms is not None
        return self._timer.now_ms() - self._start_ms

    def _run_trial(self) -> TrialRecord | None:
        cfg = self._cfg
        assert self._start_ms is not None
        deadline = self._start_ms + cfg.max_duration_ms

        isi = self._timer.next_isi()
        # Feedback from the previous trial counts towards this ISI
        onset, early_tap = self._timer.schedule_stimulus(isi - self._feedback_consumed_ms, deadline)
        if onset is None and early_tap is None:
            logging.exp("  time cap reached before stimulus onset, attempt discarded")
            return None

        if onset is not None:
            tap = self._timer.await_response(onset, cfg.response_timeout_ms, deadline)
            if tap is None and self._timer.now_ms() - onset < cfg.lapse_threshold_ms:
                logging.exp("  time cap reached inside the response window, attempt discarded")
                return None
            if tap is not None and tap < onset:
                # Tapped between the last blank-frame poll and the onset flip
                logging.exp(f"  tap at {tap:.1f} ms preceded onset, counted as pre-stimulus")
                onset = None
        else:
            tap = early_tap

        response = classify_response(onset, tap, cfg.lapse_threshold_ms, cfg.false_start_threshold_ms)
        event_ms = onset if onset is not None else tap
        elapsed = event_ms - self._start_ms
        bin_n = time_bin(elapsed)

        self._engine.update(bin_n, response.outcome)
        posteriors = self._engine.posteriors()

        classification: Category | None = None
        if self._engine.decided:
            classification = self._engine.classification
        elif self._elapsed_ms() >= cfg.max_duration_ms:
            classification = fallback_classification(self._engine.cumulative_lpfs)

        record = TrialRecord(
            trial_index=self._trial_index,
            rt_ms=round(response.rt_ms, 3) if response.rt_ms is not None else None,
            isi_ms=isi,
            stimulus_onset_timestamp=round(onset, 3) if onset is not None else None,
            response_timestamp=(
                round(response.response_timestamp, 3) if response.response_timestamp is not None else None
            ),
            is_lapse=response.is_lapse,
            is_false_start=response.is_false_start,
            cumulative_lpfs=self._engine.cumulative_lpfs,
            elapsed_test_time_ms=int(round(elapsed)),
            time_bin=bin_n,
            posterior_high=round(posteriors[Category.HIGH], 6),
            posterior_medium=round(posteriors[Category.MEDIUM], 6),
            posterior_low=round(posteriors[Category.LOW], 6),
            classification=classification.value if classification is not None else None,
        )
        self._trial_index += 1
        _log_trial(record, response)
        self._emit(record)

        self._presenter.show_feedback(
            response, f"Trial {record.trial_index + 1} | LpFS: {record.cumulative_lpfs}"
        )
        self._feedback_consumed_ms = cfg.feedback_duration_ms

        if classification is not None:
            self._finalize(classification, decided_early=self._engine.decided)
        return record

    def _emit(self, record: TrialRecord) -> None:
        self._flush_pending()
        if record.classification is None:
            self._pending = record
        else:
            self._publish(record)

    def _flush_pending(self) -> None:
        if self._pending is not None:
            self._publish(self._pending)
            self._pending = None

    def _publish(self, record: TrialRecord) -> None:
        self._records.append(record)
        for sink in self._sinks:
            sink.append(record)

    def _finalize_by_fallback(self) -> None:
        classification = fallback_classification(self._engine.cumulative_lpfs)
        logging.exp(
            f"Time cap reached: {classification.value} by fallback "
            f"(LpFS={self._engine.cumulative_lpfs})"
        )
        if self._pending is not None:
            self._pending = replace(self._pending, classification=classification.value)
        self._flush_pending()
        self._finalize(classification, decided_early=False)

    def _finalize(self, classification: Category, decided_early: bool) -> None:
        self._state = ControllerState.FINALIZED
        self._result = TestResult(
            classification=classification,
            trials=tuple(self._records),
            cumulative_lpfs=self._engine.cumulative_lpfs,
            decided_early=decided_early,
            elapsed_test_time_ms=int(round(self._elapsed_ms())),
            posteriors=self._engine.posteriors(),
        )
        logging.exp(
            f"Test finalised: {classification.value} after {len(self._records)} trials "
            f"({self._result.elapsed_test_time_ms / 1000:.1f} s)"
        )
        for sink in self._sinks:
            sink.finish(self._result)


def _log_trial(record: TrialRecord, response: Response) -> None:
    rt_str = f"{record.rt_ms:.0f} ms" if record.rt_ms is not None else "—"
    logging.exp(
        f"Trial {record.trial_index:3d}  {response.outcome.value:<11}  RT={rt_str:>7}  "
        f"isi={record.isi_ms} ms  bin={record.time_bin}  LpFS={record.cumulative_lpfs:2d}  "
        f"P(H/M/L)={record.posterior_high:.3f}/{record.posterior_medium:.3f}/{record.posterior_low:.3f}"
    )
    logging.data(f"trial {record.to_dict()}")


def build_controller(
    cfg: TaskConfig,
    clock: Clock,
    presenter: StimulusPresenter,
    inputs: InputSource,
    sinks: Sequence[ResultsSink] = (),
    rng: random.Random | None = None,
) -> TestController:
    """Wire a TrialTimer and a fresh PosteriorEngine into a TestController."""
    timer = TrialTimer(cfg, clock, presenter, inputs, rng=rng)
    return TestController(cfg, timer, presenter, PosteriorEngine.from_config(cfg), sinks=sinks)
