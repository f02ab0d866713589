"""
Trial timing: inter-stimulus interval draws, the cancel-aware wait for stimulus
onset, and the wait for the response.

Both waits are frame-by-frame polling loops bounded by an absolute test deadline.
Nothing here classifies responses or touches the posterior.
"""
from __future__ import annotations

import random

from psychopy import logging

from pvtba.classifier import clean_timestamp
from pvtba.config import TaskConfig
from pvtba.devices import Clock, InputSource, StimulusPresenter


class TrialTimer:
    def __init__(
        self,
        cfg: TaskConfig,
        clock: Clock,
        presenter: StimulusPresenter,
        inputs: InputSource,
        rng: random.Random | None = None,
    ) -> None:
        self._cfg = cfg
        self._clock = clock
        self._presenter = presenter
        self._inputs = inputs
        self._rng = rng if rng is not None else random.Random()

    def now_ms(self) -> float:
        return self._clock.getTime() * 1000

    def next_isi(self) -> int:
        """Uniform whole-ms draw from [min_isi_ms, max_isi_ms]."""
        return self._rng.randint(self._cfg.min_isi_ms, self._cfg.max_isi_ms)

    def _first_tap(self) -> float | None:
        """Earliest well-formed tap reported since the last poll; malformed reports are dropped."""
        taps = []
        for raw in self._inputs.poll():
            ts = clean_timestamp(raw)
            if ts is None:
                logging.warning(f"Discarding malformed tap timestamp {raw!r}")
                continue
            taps.append(ts)
        return min(taps) if taps else None

    def schedule_stimulus(self, wait_ms: float, deadline_ms: float) -> tuple[float | None, float | None]:
        """
        Wait wait_ms with the box empty, then fire the stimulus.

        Returns (onset_ms, None) when the stimulus fired, (None, tap_ms) when a tap
        cancelled it, and (None, None) when the test deadline arrived first.
        """
        self._inputs.clear()
        fire_at = self.now_ms() + max(0.0, wait_ms)
        while True:
            tap = self._first_tap()
            if tap is not None:
                logging.exp(f"  early tap at {tap:.1f} ms, stimulus cancelled")
                return None, tap
            now = self.now_ms()
            if now >= deadline_ms:
                return None, None
            if now >= fire_at:
                break
            self._presenter.show_blank()
        return self._presenter.show_stimulus(), None

    def await_response(self, onset_ms: float, ceiling_ms: float, deadline_ms: float) -> float | None:
        """
        Run the counter until a tap, ceiling_ms after onset, or the deadline.
        Returns the tap timestamp, or None if nobody tapped.
        """
        give_up = min(onset_ms + ceiling_ms, deadline_ms)
        while True:
            tap = self._first_tap()
            if tap is not None:
                return tap
            now = self.now_ms()
            if now >= give_up:
                return None
            self._presenter.show_counter(now - onset_ms)
