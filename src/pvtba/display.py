"""
PsychoPy visual component construction and draw helpers.
No clocks, no response logic, no I/O.
"""
from __future__ import annotations

from dataclasses import dataclass

from psychopy import visual

from pvtba import config
from pvtba.classifier import Outcome, Response


@dataclass
class Stimuli:
    win: visual.Window
    box: visual.Rect
    counter: visual.TextStim
    feedback: visual.TextStim
    status: visual.TextStim
    wait: visual.TextStim
    end: visual.TextStim


def build_stimuli(win: visual.Window) -> Stimuli:
    """Construct all visual stimuli and return a Stimuli dataclass."""
    y_scr = 1.0
    win_res = win.size
    x_scr = float(win_res[0]) / float(win_res[1])
    font_h = y_scr / 25
    wrap_w = x_scr / 1.5
    text_col = config.COLORS["text"]

    box = visual.Rect(
        win, name="box", width=0.5, height=0.2, pos=(0, 0),
        fillColor=config.COLORS["box"], lineColor=config.COLORS["box_border"], lineWidth=3,
        autoLog=False,
    )

    counter = visual.TextStim(
        win, name="counter", pos=(0, 0), text="", height=font_h * 2.5,
        color=config.COLORS["fast"], bold=True,
        autoLog=False,
    )

    feedback = visual.TextStim(
        win, name="feedback", pos=(0, -y_scr / 6), text="", height=font_h,
        color=text_col,
        autoLog=False,
    )

    status = visual.TextStim(
        win, name="status", pos=(0, -y_scr / 2.5), text="", height=font_h * 0.6,
        color="grey",
        autoLog=False,
    )

    wait = visual.TextStim(
        win, name="wait", pos=(0, 0),
        text=(
            "Tap the space bar as quickly as possible when the counter appears.\n"
            "Do NOT tap while the box is empty.\n\n"
            f"Press {config.START_KEY} to begin."
        ),
        height=font_h, color=text_col, wrapWidth=wrap_w,
        autoLog=False,
    )

    end = visual.TextStim(
        win, name="end", pos=(0, 0), text="Thank you for participating.", height=font_h,
        color=text_col, wrapWidth=wrap_w,
        autoLog=False,
    )

    return Stimuli(win=win, box=box, counter=counter, feedback=feedback, status=status, wait=wait, end=end)


def draw_box(stimuli: Stimuli) -> None:
    stimuli.box.lineColor = config.COLORS["box_border"]
    stimuli.box.draw()


def draw_counter(stimuli: Stimuli, elapsed_ms: float) -> None:
    stimuli.box.draw()
    stimuli.counter.text = str(int(round(elapsed_ms)))
    stimuli.counter.color = config.COLORS["fast"]
    stimuli.counter.draw()


def feedback_color(response: Response, lapse_threshold_ms: float) -> str:
    """Red for lapses and false starts; green for fast valid RTs, yellow otherwise."""
    if response.outcome is not Outcome.VALID:
        return config.COLORS["bad"]
    if response.rt_ms is not None and response.rt_ms < lapse_threshold_ms * config.FAST_RT_FRACTION:
        return config.COLORS["fast"]
    return config.COLORS["slow"]


def draw_feedback(stimuli: Stimuli, response: Response, lapse_threshold_ms: float, status: str) -> None:
    color = feedback_color(response, lapse_threshold_ms)
    if response.is_false_start:
        stimuli.counter.text = "TOO EARLY"
        stimuli.feedback.text = "Wait for the counter"
    elif response.rt_ms is None:
        stimuli.counter.text = "---"
        stimuli.feedback.text = ""
    else:
        stimuli.counter.text = str(int(round(response.rt_ms)))
        stimuli.feedback.text = "ms"
    stimuli.counter.color = color
    stimuli.feedback.color = color
    stimuli.box.lineColor = color
    stimuli.status.text = status
    stimuli.box.draw()
    stimuli.counter.draw()
    stimuli.feedback.draw()
    stimuli.status.draw()
