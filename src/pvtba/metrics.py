"""Summary outcome metrics for a completed PVT-BA run."""
from __future__ import annotations

from typing import Any, Iterable

import numpy as np
import pandas as pd

from pvtba.recorder import TRIAL_COLUMNS, TrialRecord


def trials_frame(records: Iterable[TrialRecord]) -> pd.DataFrame:
    """Trial records as a DataFrame with the wire columns."""
    return pd.DataFrame([r.to_dict() for r in records], columns=TRIAL_COLUMNS)


def summarize(records: Iterable[TrialRecord]) -> dict[str, Any]:
    """
    Compute PVT summary metrics.

    Returns dict with:
      n_trials, lapse_count, false_start_count, lpfs_count,
      median_rt_ms, mean_rt_ms (valid responses only),
      mean_response_speed (mean 1/RT in 1/s),
      fastest_10pct_rt_ms (mean of the fastest 10% valid RTs),
      slowest_10pct_response_speed (mean 1/RT of the slowest 10% valid RTs),
      test_duration_ms (elapsed time at the last trial)
    """
    df = trials_frame(records)
    n_trials = len(df)
    lapse_count = int(df["is_lapse"].sum()) if n_trials else 0
    false_start_count = int(df["is_false_start"].sum()) if n_trials else 0

    summary: dict[str, Any] = {
        "n_trials": n_trials,
        "lapse_count": lapse_count,
        "false_start_count": false_start_count,
        "lpfs_count": lapse_count + false_start_count,
        "median_rt_ms": None,
        "mean_rt_ms": None,
        "mean_response_speed": None,
        "fastest_10pct_rt_ms": None,
        "slowest_10pct_response_speed": None,
        "test_duration_ms": int(df["elapsed_test_time_ms"].max()) if n_trials else 0,
    }

    valid = ~(df["is_lapse"].astype(bool) | df["is_false_start"].astype(bool))
    rts = np.sort(df.loc[valid, "rt_ms"].dropna().to_numpy(dtype=float))
    if rts.size == 0:
        return summary

    speed = 1000.0 / rts
    n_tail = max(1, int(round(rts.size * 0.1)))
    summary.update(
        median_rt_ms=round(float(np.median(rts)), 2),
        mean_rt_ms=round(float(rts.mean()), 2),
        mean_response_speed=round(float(speed.mean()), 4),
        fastest_10pct_rt_ms=round(float(rts[:n_tail].mean()), 2),
        slowest_10pct_response_speed=round(float(speed[-n_tail:].mean()), 4),
    )
    return summary
