"""
Entry point: `python -m pvtba` or `pvt-ba` script.
Wires all modules together.
"""
from __future__ import annotations


def run() -> None:
    # Disable pyglet event checking in background threads (prevents macOS crash)
    from psychopy import core
    core.checkPygletDuringWait = False

    from datetime import datetime
    from pathlib import Path

    from psychopy import event as psy_event, logging
    from rich.console import Console
    from rich.live import Live
    from rich.table import Table
    import rich.box

    from pvtba import config, controller, devices, display, metrics, recorder, session

    rcon = Console(stderr=True)

    # ── INITIALISE SESSION ───────────────────────────────────────────────────
    session_info = session.show_dialog()
    session_time = datetime.now()
    try:
        cfg = config.load_config(session_info.parameters)
    except config.ConfigError as exc:
        rcon.print(f"[bold red]Invalid parameters:[/bold red] {exc}")
        core.quit()
        return

    win_res, win = session.setup_screen()

    measured_fps = win.getActualFrameRate()
    frame_rate = measured_fps if (measured_fps is not None and measured_fps < 200) else config.FRAME_RATE_HZ

    # ── LOGGING ──────────────────────────────────────────────────────────────
    data_dir = Path("data")
    run_dir = session.make_run_dir(data_dir, session_info, session_time)
    logging.LogFile(str(run_dir / "experiment.log"), level=logging.EXP)
    logging.console.setLevel(logging.WARNING)  # rich handles terminal output

    rcon.print(f"[bold]Session:[/bold] subject=[cyan]{session_info.subject_id}[/cyan]")
    rcon.print(f"[bold]Frame rate:[/bold] {frame_rate:.1f} Hz")
    rcon.print(
        f"[bold]Parameters:[/bold] cap=[cyan]{cfg.max_duration_ms / 1000:.0f} s[/cyan]  "
        f"ISI=[cyan]{cfg.min_isi_ms}-{cfg.max_isi_ms} ms[/cyan]  "
        f"lapse=[cyan]{cfg.lapse_threshold_ms:.0f} ms[/cyan]  "
        f"false start=[cyan]{cfg.false_start_threshold_ms:.0f} ms[/cyan]  "
        f"threshold=[cyan]{cfg.decision_threshold}[/cyan]  rule=[cyan]{cfg.update_rule}[/cyan]"
    )
    logging.exp(f"Session: subject={session_info.subject_id}  parameters_file={session_info.parameters_file!r}")
    logging.exp(f"Frame rate: {frame_rate:.1f} Hz")
    logging.exp(f"Parameters: {cfg.as_parameters()}")

    # ── BUILD STIMULI & DEVICES ──────────────────────────────────────────────
    stimuli_obj = display.build_stimuli(win)
    global_clock = core.Clock()
    presenter = devices.PsychoPyPresenter(
        win, stimuli_obj, global_clock, cfg.feedback_duration_ms, cfg.lapse_threshold_ms,
    )
    inputs = devices.PsychoPyInput(global_clock)

    # ── SETUP OUTPUT FILES ───────────────────────────────────────────────────
    trial_writer = recorder.TrialCsvWriter(run_dir / f"trials_{session_info.subject_id}.csv")

    # ── LIVE TABLE ───────────────────────────────────────────────────────────
    table = Table(box=rich.box.SIMPLE_HEAD)
    table.add_column("#", justify="right")
    table.add_column("Result")
    table.add_column("RT", justify="right")
    table.add_column("ISI", justify="right")
    table.add_column("Bin", justify="right")
    table.add_column("LpFS", justify="right")
    table.add_column("P(H/M/L)", justify="right")
    table.add_column("Class")

    class LiveTableSink:
        def __init__(self, live: Live) -> None:
            self._live = live

        def append(self, rec: recorder.TrialRecord) -> None:
            if rec.is_false_start:
                result_cell = "[yellow]false start[/yellow]"
            elif rec.is_lapse:
                result_cell = "[red]lapse[/red]"
            else:
                result_cell = "[green]valid[/green]"
            table.add_row(
                str(rec.trial_index),
                result_cell,
                f"{rec.rt_ms:.0f} ms" if rec.rt_ms is not None else "—",
                f"{rec.isi_ms} ms",
                str(rec.time_bin),
                str(rec.cumulative_lpfs),
                f"{rec.posterior_high:.3f}/{rec.posterior_medium:.3f}/{rec.posterior_low:.3f}",
                f"[bold]{rec.classification}[/bold]" if rec.classification else "",
            )
            self._live.refresh()

        def finish(self, result: controller.TestResult) -> None:
            self._live.refresh()

    # ── HIDE MOUSE & WAIT FOR START ──────────────────────────────────────────
    win.mouseVisible = False
    stimuli_obj.wait.draw()
    win.flip()
    psy_event.waitKeys(keyList=[config.START_KEY])

    # ── RUN TEST ─────────────────────────────────────────────────────────────
    global_clock.reset()
    # auto_refresh=False prevents a background timer thread during trials
    with Live(table, console=rcon, auto_refresh=False) as live:
        test = controller.build_controller(
            cfg, global_clock, presenter, inputs, sinks=[trial_writer, LiveTableSink(live)],
        )
        result = test.run()

    summary = metrics.summarize(result.trials)
    recorder.write_manifest(
        run_dir=run_dir,
        session_info=session_info,
        session_time=session_time,
        frame_rate=frame_rate,
        cfg=cfg,
        result=result,
        summary=summary,
    )

    how = "posterior threshold" if result.decided_early else "time-cap fallback"
    rcon.print(
        f"\n[bold]Test complete:[/bold] [bold cyan]{result.classification.value}[/bold cyan] "
        f"by {how} after {len(result.trials)} trials "
        f"({result.elapsed_test_time_ms / 1000:.1f} s)  LpFS={result.cumulative_lpfs}"
    )
    if summary["median_rt_ms"] is not None:
        rcon.print(
            f"median RT=[cyan]{summary['median_rt_ms']:.0f} ms[/cyan]  "
            f"mean speed=[cyan]{summary['mean_response_speed']:.2f}/s[/cyan]  "
            f"lapses={summary['lapse_count']}  false starts={summary['false_start_count']}"
        )
    logging.exp(f"Summary: {summary}")

    # ── END SCREEN ───────────────────────────────────────────────────────────
    stimuli_obj.end.draw()
    win.flip()
    psy_event.waitKeys(keyList=[config.END_KEY])

    # ── CLEANUP ──────────────────────────────────────────────────────────────
    logging.flush()
    win.close()
    core.quit()


if __name__ == "__main__":
    run()
