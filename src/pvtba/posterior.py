"""
Sequential Bayesian classification of vigilance: HIGH, MEDIUM or LOW.

PosteriorEngine owns the PosteriorState and is the only thing that mutates it.
One update() per completed trial; once DECIDED every further update() is a no-op.
"""
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Sequence

from psychopy import logging

from pvtba import config
from pvtba.classifier import Outcome


class Category(str, Enum):
    HIGH = "HIGH"
    MEDIUM = "MEDIUM"
    LOW = "LOW"


class EngineState(str, Enum):
    ACTIVE = "active"
    DECIDED = "decided"


def time_bin(elapsed_ms: float) -> int:
    """Return the 30 s bin (0-5) for elapsed test time; everything after 150 s is bin 5."""
    if elapsed_ms <= 0:
        return 0
    return min(int(elapsed_ms // config.BIN_WIDTH_MS), config.N_BINS - 1)


def fallback_classification(cumulative_lpfs: int) -> Category:
    """Classification when the full test duration ran out without a decision."""
    if cumulative_lpfs <= config.ELIMINATE_HIGH_ABOVE:
        return Category.HIGH
    if cumulative_lpfs <= config.FORCE_LOW_ABOVE:
        return Category.MEDIUM
    return Category.LOW


def _row_ratios(row: dict[str, dict[str, float]], outcome: str, bin_n: int) -> dict[Category, float]:
    if outcome not in row:
        raise ValueError(f"time bin {bin_n} has no {outcome!r} ratios")
    ratios = {Category(c): float(r) for c, r in row[outcome].items()}
    ratios.setdefault(Category.MEDIUM, 1.0)
    missing = [c.value for c in Category if c not in ratios]
    if missing:
        raise ValueError(f"time bin {bin_n} {outcome!r} ratios missing {missing}")
    return ratios


class LikelihoodTable:
    """
    Likelihood ratios indexed by (time bin, LpFS or not, category).

    MEDIUM is the reference category: a row that omits it gets ratio 1.0.
    """

    def __init__(self, rows: Sequence[dict[str, dict[str, float]]]) -> None:
        if len(rows) != config.N_BINS:
            raise ValueError(f"expected {config.N_BINS} time bins, got {len(rows)}")
        self._rows = tuple(
            {outcome: _row_ratios(row, outcome, bin_n) for outcome in ("lpfs", "non_lpfs")}
            for bin_n, row in enumerate(rows)
        )

    def ratios(self, bin_n: int, is_lpfs: bool) -> dict[Category, float]:
        row = self._rows[min(max(bin_n, 0), config.N_BINS - 1)]
        return dict(row["lpfs" if is_lpfs else "non_lpfs"])


@dataclass
class PosteriorState:
    high: float
    medium: float
    low: float
    cumulative_lpfs: int = 0
    high_eliminated: bool = False
    trial_count: int = 0

    def probabilities(self) -> dict[Category, float]:
        return {Category.HIGH: self.high, Category.MEDIUM: self.medium, Category.LOW: self.low}

    def set_probabilities(self, probs: dict[Category, float]) -> None:
        self.high = probs[Category.HIGH]
        self.medium = probs[Category.MEDIUM]
        self.low = probs[Category.LOW]


def _normalized(probs: dict[Category, float]) -> dict[Category, float]:
    total = sum(probs.values())
    if total <= 0:
        return probs
    return {c: p / total for c, p in probs.items()}


def _odds_update(p: float, ratio: float) -> float:
    if p <= 0.0 or p >= 1.0:
        return p
    odds = p / (1 - p) * ratio
    return odds / (1 + odds)


class PosteriorEngine:
    """
    Per-trial posterior update with the HIGH-elimination, immediate-LOW and
    decision-threshold stopping rules.

    update_rule "bayes" multiplies every surviving category by its ratio and
    renormalises. "odds" follows the published equations: odds-form updates for
    HIGH and LOW, MEDIUM taking the residual probability.
    """

    def __init__(
        self,
        table: LikelihoodTable,
        decision_threshold: float,
        prior: Sequence[float] = (1 / 3, 1 / 3, 1 / 3),
        update_rule: str = "bayes",
    ) -> None:
        if update_rule not in config.UPDATE_RULES:
            raise ValueError(f"unknown update rule {update_rule!r}")
        high, medium, low = prior
        self._table = table
        self._threshold = decision_threshold
        self._rule = update_rule
        self._state = PosteriorState(high=high, medium=medium, low=low)
        self._status = EngineState.ACTIVE
        self._classification: Category | None = None

    @classmethod
    def from_config(cls, cfg: config.TaskConfig) -> "PosteriorEngine":
        return cls(
            LikelihoodTable(cfg.likelihood_ratios),
            decision_threshold=cfg.decision_threshold,
            prior=cfg.prior,
            update_rule=cfg.update_rule,
        )

    @property
    def status(self) -> EngineState:
        return self._status

    @property
    def decided(self) -> bool:
        return self._status is EngineState.DECIDED

    @property
    def classification(self) -> Category | None:
        return self._classification

    @property
    def cumulative_lpfs(self) -> int:
        return self._state.cumulative_lpfs

    @property
    def high_eliminated(self) -> bool:
        return self._state.high_eliminated

    @property
    def trial_count(self) -> int:
        return self._state.trial_count

    def posteriors(self) -> dict[Category, float]:
        """Copy of the current probabilities."""
        return self._state.probabilities()

    def update(self, bin_n: int, outcome: Outcome) -> EngineState:
        """Apply one trial's outcome and return the resulting engine state."""
        if self.decided:
            return self._status

        state = self._state
        state.trial_count += 1
        if outcome.is_lpfs:
            state.cumulative_lpfs += 1

        ratios = self._table.ratios(bin_n, outcome.is_lpfs)
        probs = state.probabilities()
        if self._rule == "odds":
            probs[Category.HIGH] = _odds_update(probs[Category.HIGH], ratios[Category.HIGH])
            probs[Category.LOW] = _odds_update(probs[Category.LOW], ratios[Category.LOW])
            probs[Category.MEDIUM] = max(0.0, 1.0 - probs[Category.HIGH] - probs[Category.LOW])
            probs = _normalized(probs)
        else:
            probs = _normalized({c: p * ratios[c] for c, p in probs.items()})

        if state.high_eliminated:
            probs[Category.HIGH] = 0.0
            probs = _normalized(probs)
        elif state.cumulative_lpfs > config.ELIMINATE_HIGH_ABOVE:
            probs[Category.HIGH] = 0.0
            probs = _normalized(probs)
            state.high_eliminated = True
            logging.exp(f"HIGH eliminated at trial {state.trial_count} (LpFS={state.cumulative_lpfs})")
        state.set_probabilities(probs)

        if state.cumulative_lpfs > config.FORCE_LOW_ABOVE:
            state.set_probabilities({Category.HIGH: 0.0, Category.MEDIUM: 0.0, Category.LOW: 1.0})
            self._decide(Category.LOW, reason=f"LpFS={state.cumulative_lpfs} > {config.FORCE_LOW_ABOVE}")
            return self._status

        for category in Category:
            if probs[category] > self._threshold:
                self._decide(category, reason=f"P({category.value})={probs[category]:.5f} > {self._threshold}")
                break
        return self._status

    def _decide(self, category: Category, reason: str) -> None:
        self._classification = category
        self._status = EngineState.DECIDED
        logging.exp(f"Decided {category.value} after {self._state.trial_count} trials: {reason}")
