"""
Data recording: TrialRecord, ResultsSink, CsvWriter, TrialCsvWriter, write_manifest.
"""
from __future__ import annotations

import csv
import json
from dataclasses import asdict, dataclass
from datetime import datetime
from pathlib import Path
from typing import TYPE_CHECKING, Any, Protocol

if TYPE_CHECKING:
    from pvtba.config import TaskConfig
    from pvtba.controller import TestResult
    from pvtba.session import SessionInfo


@dataclass(frozen=True)
class TrialRecord:
    trial_index: int
    rt_ms: float | None
    isi_ms: int
    stimulus_onset_timestamp: float | None   # None when an early tap cancelled the stimulus
    response_timestamp: float | None         # None when nobody tapped
    is_lapse: bool
    is_false_start: bool
    cumulative_lpfs: int
    elapsed_test_time_ms: int
    time_bin: int
    posterior_high: float
    posterior_medium: float
    posterior_low: float
    classification: str | None               # set on the final trial only

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


TRIAL_COLUMNS: list[str] = [
    "trial_index", "rt_ms", "isi_ms", "stimulus_onset_timestamp", "response_timestamp",
    "is_lapse", "is_false_start", "cumulative_lpfs", "elapsed_test_time_ms", "time_bin",
    "posterior_high", "posterior_medium", "posterior_low", "classification",
]


class ResultsSink(Protocol):
    """Receives each finalised trial record in order, then the test result."""

    def append(self, record: TrialRecord) -> None:
        ...

    def finish(self, result: "TestResult") -> None:
        ...


class CsvWriter:
    def __init__(self, path: Path, columns: list[str]) -> None:
        self._file = open(path, "w", newline="")
        self._writer = csv.DictWriter(self._file, fieldnames=columns)
        self._writer.writeheader()
        self._columns = columns

    def append(self, record: object) -> None:
        row = {k: getattr(record, k) for k in self._columns}
        self._writer.writerow(row)
        self._file.flush()

    def close(self) -> None:
        self._file.close()


class TrialCsvWriter(CsvWriter):
    """One row per trial, flushed as soon as the controller hands it over."""

    def __init__(self, path: Path) -> None:
        super().__init__(path, TRIAL_COLUMNS)

    def append(self, record: TrialRecord) -> None:  # type: ignore[override]
        super().append(record)

    def finish(self, result: "TestResult") -> None:
        self.close()


def write_manifest(
    run_dir: Path,
    session_info: "SessionInfo",
    session_time: datetime,
    frame_rate: float,
    cfg: "TaskConfig",
    result: "TestResult",
    summary: dict[str, Any],
) -> Path:
    from pvtba import __version__

    manifest = {
        "pvt_ba_version": __version__,
        "subject_id": session_info.subject_id,
        "session_time": session_time.isoformat(timespec="seconds"),
        "frame_rate_hz": round(frame_rate, 3),
        "parameters": cfg.as_parameters(),
        "result": {
            "classification": result.classification.value,
            "decided_early": result.decided_early,
            "n_trials": len(result.trials),
            "cumulative_lpfs": result.cumulative_lpfs,
            "elapsed_test_time_ms": result.elapsed_test_time_ms,
            "posteriors": {c.value: round(p, 6) for c, p in result.posteriors.items()},
        },
        "summary": summary,
    }
    path = run_dir / "manifest.json"
    with open(path, "w") as f:
        json.dump(manifest, f, indent=2)
    return path
