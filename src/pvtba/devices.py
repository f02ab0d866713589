"""
Stimulus presenter and input source abstractions.

StimulusPresenter / InputSource – protocols consumed by the trial timer and controller.
  PsychoPyPresenter, PsychoPyInput – real window and keyboard
  EmulatedDevice                   – scripted participant on a VirtualClock, for
                                     headless runs and tests

All timestamps are milliseconds on the test clock.
"""
from __future__ import annotations

import math
from typing import Iterable, Protocol

from psychopy import core, event as psy_event, visual

from pvtba import config
from pvtba.classifier import Response
from pvtba.display import Stimuli, draw_box, draw_counter, draw_feedback

EARLY = "early"          # plan entry: tap before the stimulus appears
MALFORMED = "malformed"  # plan entry: the input source reports a garbage timestamp


class Clock(Protocol):
    """Anything with PsychoPy's Clock interface (seconds)."""

    def getTime(self) -> float:
        ...


class StimulusPresenter(Protocol):
    def show_blank(self) -> None:
        """Show the empty box for one frame."""
        ...

    def show_stimulus(self) -> float:
        """Show the counter; return the onset timestamp (ms)."""
        ...

    def show_counter(self, elapsed_ms: float) -> None:
        """Refresh the running counter for one frame."""
        ...

    def show_feedback(self, response: Response, status: str) -> None:
        """Show per-trial feedback; returns when the feedback period is over."""
        ...


class InputSource(Protocol):
    def clear(self) -> None:
        """Discard taps reported so far."""
        ...

    def poll(self) -> list[float]:
        """Return tap timestamps (ms) since the last poll, without blocking."""
        ...


def _check_quit() -> None:
    """Quit if escape is pressed."""
    if psy_event.getKeys(keyList=config.QUIT_KEYS):
        core.quit()


class PsychoPyPresenter:
    """Draws the PVT box and counter in a PsychoPy window."""

    def __init__(
        self,
        win: visual.Window,
        stimuli: Stimuli,
        clock: Clock,
        feedback_duration_ms: float,
        lapse_threshold_ms: float,
    ) -> None:
        self._win = win
        self._stimuli = stimuli
        self._clock = clock
        self._feedback_s = feedback_duration_ms / 1000
        self._lapse_threshold_ms = lapse_threshold_ms
        self._onset_s: float | None = None

    def _mark_onset(self) -> None:
        self._onset_s = self._clock.getTime()

    def show_blank(self) -> None:
        draw_box(self._stimuli)
        self._win.flip()

    def show_stimulus(self) -> float:
        # Onset is the flip that first shows the counter
        self._onset_s = None
        self._win.callOnFlip(self._mark_onset)
        draw_counter(self._stimuli, 0)
        self._win.flip()
        if self._onset_s is None:
            self._mark_onset()
        return self._onset_s * 1000

    def show_counter(self, elapsed_ms: float) -> None:
        draw_counter(self._stimuli, elapsed_ms)
        self._win.flip()

    def show_feedback(self, response: Response, status: str) -> None:
        if self._feedback_s <= 0:
            return
        timer = core.CountdownTimer(self._feedback_s)
        while timer.getTime() > 0:
            draw_feedback(self._stimuli, response, self._lapse_threshold_ms, status)
            self._win.flip()
            _check_quit()


class PsychoPyInput:
    """Keyboard taps, timestamped on the test clock. Escape quits."""

    def __init__(self, clock: Clock) -> None:
        self._clock = clock

    def clear(self) -> None:
        psy_event.clearEvents()

    def poll(self) -> list[float]:
        keys = psy_event.getKeys(keyList=config.RESPONSE_KEYS + config.QUIT_KEYS, timeStamped=self._clock)
        taps: list[float] = []
        for key_name, t in keys:
            if key_name in config.QUIT_KEYS:
                core.quit()
            taps.append(t * 1000)
        return taps


class VirtualClock:
    """Clock that only moves when advanced; used by EmulatedDevice."""

    def __init__(self, start_s: float = 0.0) -> None:
        self._t = start_s

    def getTime(self) -> float:
        return self._t

    def reset(self, new_t: float = 0.0) -> None:
        self._t = new_t

    def advance(self, seconds: float) -> None:
        self._t += seconds


class EmulatedDevice:
    """
    Presenter and input source for a scripted participant.

    Every displayed frame advances the VirtualClock by frame_ms, and feedback
    advances it by feedback_duration_ms. The plan holds one entry per trial:
      number     – tap that many ms after stimulus onset
      None       – never tap
      EARLY      – tap early_tap_ms into the waiting period; if the stimulus
                   comes first, the tap lands on the onset frame (anticipation)
      MALFORMED  – report a NaN timestamp one frame after onset
    Once the plan runs out every trial gets default_rt_ms.
    """

    def __init__(
        self,
        clock: VirtualClock,
        plan: Iterable[float | str | None] = (),
        default_rt_ms: float | None = 250.0,
        frame_ms: float = 1000 / config.FRAME_RATE_HZ,
        feedback_duration_ms: float = 0.0,
        early_tap_ms: float = 200.0,
    ) -> None:
        self._clock = clock
        self._plan = iter(plan)
        self._default_rt_ms = default_rt_ms
        self._frame_s = frame_ms / 1000
        self._feedback_s = feedback_duration_ms / 1000
        self._early_tap_ms = early_tap_ms
        self._entry: float | str | None = None
        self._tap_ms: float | None = None
        self.onsets: list[float] = []
        self.feedback: list[Response] = []

    def _now_ms(self) -> float:
        return self._clock.getTime() * 1000

    def _frame(self) -> None:
        self._clock.advance(self._frame_s)

    # InputSource
    def clear(self) -> None:
        """Start of a waiting period: the participant moves on to the next plan entry."""
        self._entry = next(self._plan, self._default_rt_ms)
        self._tap_ms = self._now_ms() + self._early_tap_ms if self._entry == EARLY else None

    def poll(self) -> list[float]:
        if self._tap_ms is None:
            return []
        if not math.isnan(self._tap_ms) and self._tap_ms > self._now_ms():
            return []
        tap, self._tap_ms = self._tap_ms, None
        return [tap]

    # StimulusPresenter
    def show_blank(self) -> None:
        self._frame()

    def show_stimulus(self) -> float:
        onset = self._now_ms()
        self.onsets.append(onset)
        if self._entry == EARLY:
            if self._tap_ms is not None:
                self._tap_ms = min(self._tap_ms, onset)
        elif self._entry == MALFORMED:
            self._tap_ms = float("nan")
        elif self._entry is not None:
            self._tap_ms = onset + float(self._entry)
        self._frame()
        return onset

    def show_counter(self, elapsed_ms: float) -> None:
        self._frame()

    def show_feedback(self, response: Response, status: str) -> None:
        self.feedback.append(response)
        self._clock.advance(self._feedback_s)
