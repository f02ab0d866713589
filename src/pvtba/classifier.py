"""
Per-trial response classification: valid, lapse or false start.
Pure functions only; deciding when to stop waiting for a tap is the controller's job.
"""
from __future__ import annotations

import math
from dataclasses import dataclass
from enum import Enum


class Outcome(str, Enum):
    VALID = "valid"
    LAPSE = "lapse"
    FALSE_START = "false_start"

    @property
    def is_lpfs(self) -> bool:
        """Lapses and false starts together drive the LpFS count."""
        return self is not Outcome.VALID


@dataclass(frozen=True)
class Response:
    outcome: Outcome
    rt_ms: float | None              # None for a pre-stimulus tap or no tap
    response_timestamp: float | None  # None when the participant never tapped

    @property
    def is_lapse(self) -> bool:
        return self.outcome is Outcome.LAPSE

    @property
    def is_false_start(self) -> bool:
        return self.outcome is Outcome.FALSE_START


def clean_timestamp(value: object) -> float | None:
    """Return value as a finite float, or None for a missing or malformed report."""
    if value is None or isinstance(value, bool):
        return None
    try:
        ts = float(value)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        return None
    return ts if math.isfinite(ts) else None


def classify_response(
    onset_ms: float | None,
    tap_ms: float | None,
    lapse_threshold_ms: float,
    false_start_threshold_ms: float,
) -> Response:
    """
    Classify one trial.

    onset_ms is None when a tap cancelled the stimulus before it appeared.
    tap_ms is None when nobody tapped before the response ceiling.
    """
    tap_ms = clean_timestamp(tap_ms)
    if onset_ms is None:
        if tap_ms is None:
            raise ValueError("a trial without a stimulus onset must have a tap")
        return Response(Outcome.FALSE_START, rt_ms=None, response_timestamp=tap_ms)

    if tap_ms is None:
        return Response(Outcome.LAPSE, rt_ms=None, response_timestamp=None)

    rt_ms = tap_ms - onset_ms
    if rt_ms < false_start_threshold_ms:
        outcome = Outcome.FALSE_START
    elif rt_ms >= lapse_threshold_ms:
        outcome = Outcome.LAPSE
    else:
        outcome = Outcome.VALID
    return Response(outcome, rt_ms=rt_ms, response_timestamp=tap_ms)
