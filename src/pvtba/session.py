"""
Session initialisation: dialog, parameter loading, screen setup and output directory.
"""
from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any

import pyglet
from psychopy import core, gui, monitors, visual

from pvtba import config


@dataclass
class SessionInfo:
    subject_id: str
    parameters: dict[str, Any] = field(default_factory=dict)
    parameters_file: str = ""


def load_parameters(path: Path) -> dict[str, Any]:
    """Read a flat JSON object of task parameters."""
    if not path.exists():
        raise FileNotFoundError(f"Parameters file not found: {path}")
    with open(path) as f:
        params = json.load(f)
    if not isinstance(params, dict):
        raise ValueError(f"Parameters file must contain a JSON object; got {type(params).__name__}")
    return params


def show_dialog() -> SessionInfo:
    """Present the startup dialog and return a SessionInfo."""
    duration_default = config.DEFAULT_PARAMETERS["max_duration_seconds"]
    duration_key = f"Max duration (s) [default {duration_default}]"
    fields = {
        "Subject ID": "XXX000",
        duration_key: str(duration_default),
        "Parameters file (JSON, optional)": "",
    }
    dlg = gui.DlgFromDict(dictionary=fields, title="PVT-BA")
    if not dlg.OK:
        core.quit()

    params: dict[str, Any] = {}
    params_file = str(fields["Parameters file (JSON, optional)"]).strip()
    if params_file:
        params.update(load_parameters(Path(params_file)))

    # An untouched dialog default does not override the parameters file
    raw_duration = str(fields[duration_key]).strip()
    if raw_duration != str(duration_default) or "max_duration_seconds" not in params:
        try:
            params["max_duration_seconds"] = float(raw_duration)
        except ValueError:
            params.setdefault("max_duration_seconds", duration_default)

    return SessionInfo(
        subject_id=str(fields["Subject ID"]),
        parameters=params,
        parameters_file=params_file,
    )


def setup_screen() -> tuple[list[int], visual.Window]:
    """Create and return (win_res, win)."""
    display = pyglet.canvas.get_display()
    screens = display.get_screens()
    win_res = [screens[-1].width, screens[-1].height]
    exp_mon = monitors.Monitor("exp_mon")
    exp_mon.setSizePix(win_res)
    win = visual.Window(
        size=win_res,
        screen=len(screens) - 1,
        allowGUI=True,
        fullscr=True,
        monitor=exp_mon,
        units="height",
        color=config.COLORS["background"],
    )
    return win_res, win


def make_run_dir(data_dir: Path, session_info: SessionInfo, session_time: datetime) -> Path:
    """Create and return data/{subject_id}_{YYYYMMDDTHHMMSS}/."""
    ts = session_time.strftime("%Y%m%dT%H%M%S")
    run_dir = data_dir / f"{session_info.subject_id}_{ts}"
    run_dir.mkdir(parents=True, exist_ok=True)
    return run_dir
