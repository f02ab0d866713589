"""
Task constants, the TaskConfig dataclass and load_config(). No imports from other pvtba modules.
All time values are in milliseconds unless the name includes a unit suffix.
"""
from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Any, Mapping

from psychopy import logging

# Defaults for the recognised parameter keys
DEFAULT_PARAMETERS: dict[str, Any] = {
    "max_duration_seconds": 180,
    "min_isi_ms": 1000,
    "max_isi_ms": 4000,
    "lapse_threshold_ms": 355,
    "false_start_threshold_ms": 100,
    "decision_threshold": 0.99619,
    "feedback_duration_ms": 1000,
    "response_timeout_ms": 30000,
    "update_rule": "bayes",
}

CATEGORIES: tuple[str, ...] = ("HIGH", "MEDIUM", "LOW")
UPDATE_RULES: tuple[str, ...] = ("bayes", "odds")

# Time bins
BIN_WIDTH_MS: int = 30000
N_BINS: int = 6

# LpFS count rules
ELIMINATE_HIGH_ABOVE: int = 6    # cumulative LpFS > 6 → HIGH impossible
FORCE_LOW_ABOVE: int = 16        # cumulative LpFS > 16 → LOW, stop

# Likelihood ratios per 30 s bin (Basner 2022, Sleep Advances 3(1):zpac038, Fig. 1).
# MEDIUM is the reference category.
LIKELIHOOD_RATIOS: tuple[dict[str, dict[str, float]], ...] = (
    {"lpfs": {"HIGH": 0.25, "MEDIUM": 1.0, "LOW": 3.00}, "non_lpfs": {"HIGH": 1.22, "MEDIUM": 1.0, "LOW": 0.78}},
    {"lpfs": {"HIGH": 0.18, "MEDIUM": 1.0, "LOW": 3.80}, "non_lpfs": {"HIGH": 1.30, "MEDIUM": 1.0, "LOW": 0.68}},
    {"lpfs": {"HIGH": 0.15, "MEDIUM": 1.0, "LOW": 4.20}, "non_lpfs": {"HIGH": 1.35, "MEDIUM": 1.0, "LOW": 0.62}},
    {"lpfs": {"HIGH": 0.15, "MEDIUM": 1.0, "LOW": 4.50}, "non_lpfs": {"HIGH": 1.38, "MEDIUM": 1.0, "LOW": 0.58}},
    {"lpfs": {"HIGH": 0.15, "MEDIUM": 1.0, "LOW": 4.80}, "non_lpfs": {"HIGH": 1.40, "MEDIUM": 1.0, "LOW": 0.57}},
    {"lpfs": {"HIGH": 0.15, "MEDIUM": 1.0, "LOW": 5.00}, "non_lpfs": {"HIGH": 1.40, "MEDIUM": 1.0, "LOW": 0.57}},
)

# Display
FRAME_RATE_HZ: float = 60.0
FAST_RT_FRACTION: float = 0.7    # valid RTs below lapse_threshold * 0.7 get green feedback
COLORS: dict[str, str] = {
    "background": "white",
    "text": "black",
    "box": "#E6E6F0",
    "box_border": "#B4B4C8",
    "fast": "#4CAF50",
    "slow": "#C8A000",
    "bad": "#F44336",
}

# Keyboard
RESPONSE_KEYS: list[str] = ["space"]
QUIT_KEYS: list[str] = ["escape"]
START_KEY: str = "space"
END_KEY: str = "return"


class ConfigError(ValueError):
    """Raised for parameter values that must stop the test before it starts."""


@dataclass(frozen=True)
class TaskConfig:
    max_duration_ms: float
    min_isi_ms: int
    max_isi_ms: int
    lapse_threshold_ms: float
    false_start_threshold_ms: float
    decision_threshold: float
    feedback_duration_ms: float
    response_timeout_ms: float
    prior: tuple[float, float, float]
    likelihood_ratios: tuple[dict[str, dict[str, float]], ...]
    update_rule: str

    def as_parameters(self) -> dict[str, Any]:
        """Flat parameter mapping, suitable for the manifest or load_config()."""
        return {
            "max_duration_seconds": self.max_duration_ms / 1000,
            "min_isi_ms": self.min_isi_ms,
            "max_isi_ms": self.max_isi_ms,
            "lapse_threshold_ms": self.lapse_threshold_ms,
            "false_start_threshold_ms": self.false_start_threshold_ms,
            "decision_threshold": self.decision_threshold,
            "feedback_duration_ms": self.feedback_duration_ms,
            "response_timeout_ms": self.response_timeout_ms,
            "prior_high": self.prior[0],
            "prior_medium": self.prior[1],
            "prior_low": self.prior[2],
            "likelihood_ratios": [
                {outcome: dict(ratios) for outcome, ratios in row.items()}
                for row in self.likelihood_ratios
            ],
            "update_rule": self.update_rule,
        }


def _number(params: Mapping[str, Any], key: str) -> float:
    value = params.get(key, DEFAULT_PARAMETERS.get(key))
    if isinstance(value, bool):
        raise ConfigError(f"{key} must be a number, got {value!r}")
    try:
        number = float(value)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"{key} must be a number, got {value!r}") from exc
    if not math.isfinite(number):
        raise ConfigError(f"{key} must be finite, got {value!r}")
    return number


def _positive(params: Mapping[str, Any], key: str, allow_zero: bool = False) -> float:
    number = _number(params, key)
    if number < 0 or (number == 0 and not allow_zero):
        bound = ">= 0" if allow_zero else "> 0"
        raise ConfigError(f"{key} must be {bound}, got {number}")
    return number


def _prior(params: Mapping[str, Any]) -> tuple[float, float, float]:
    keys = ("prior_high", "prior_medium", "prior_low")
    if not any(k in params for k in keys):
        return (1 / 3, 1 / 3, 1 / 3)
    missing = [k for k in keys if k not in params]
    if missing:
        raise ConfigError(f"prior must give all of {list(keys)}; missing {missing}")
    values = tuple(_positive(params, k, allow_zero=True) for k in keys)
    total = sum(values)
    if not math.isclose(total, 1.0, abs_tol=1e-6):
        raise ConfigError(f"prior probabilities must sum to 1, got {total}")
    return tuple(v / total for v in values)  # type: ignore[return-value]


def _likelihood_ratios(params: Mapping[str, Any]) -> tuple[dict[str, dict[str, float]], ...]:
    rows = params.get("likelihood_ratios", LIKELIHOOD_RATIOS)
    if isinstance(rows, (str, bytes)) or not hasattr(rows, "__len__") or len(rows) != N_BINS:
        raise ConfigError(f"likelihood_ratios must have exactly {N_BINS} time bins")
    table = []
    for bin_n, row in enumerate(rows):
        if not isinstance(row, Mapping):
            raise ConfigError(f"likelihood_ratios[{bin_n}] must be a mapping")
        clean_row: dict[str, dict[str, float]] = {}
        for outcome in ("lpfs", "non_lpfs"):
            ratios = row.get(outcome)
            if not isinstance(ratios, Mapping):
                raise ConfigError(f"likelihood_ratios[{bin_n}] needs a '{outcome}' mapping")
            clean: dict[str, float] = {}
            for category in CATEGORIES:
                # MEDIUM is the reference category when a row omits it
                raw = ratios.get(category, 1.0 if category == "MEDIUM" else None)
                try:
                    ratio = float(raw)
                except (TypeError, ValueError) as exc:
                    raise ConfigError(
                        f"likelihood_ratios[{bin_n}][{outcome!r}][{category!r}] must be a number"
                    ) from exc
                if not math.isfinite(ratio) or ratio <= 0:
                    raise ConfigError(
                        f"likelihood_ratios[{bin_n}][{outcome!r}][{category!r}] must be > 0, got {raw!r}"
                    )
                clean[category] = ratio
            clean_row[outcome] = clean
        table.append(clean_row)
    return tuple(table)


def load_config(params: Mapping[str, Any] | None = None) -> TaskConfig:
    """
    Build a validated TaskConfig from a flat parameter mapping.

    Missing keys take DEFAULT_PARAMETERS; unrecognised keys are ignored.
    Out-of-range values raise ConfigError rather than being clamped.
    """
    params = dict(params or {})
    known = set(DEFAULT_PARAMETERS) | {"prior_high", "prior_medium", "prior_low", "likelihood_ratios"}
    for key in sorted(set(params) - known):
        logging.debug(f"Ignoring unrecognised parameter {key!r}")

    max_duration_ms = _positive(params, "max_duration_seconds") * 1000
    min_isi_ms = _positive(params, "min_isi_ms", allow_zero=True)
    max_isi_ms = _positive(params, "max_isi_ms", allow_zero=True)
    if min_isi_ms > max_isi_ms:
        raise ConfigError(f"min_isi_ms ({min_isi_ms}) must not exceed max_isi_ms ({max_isi_ms})")
    if min_isi_ms != int(min_isi_ms) or max_isi_ms != int(max_isi_ms):
        raise ConfigError("min_isi_ms and max_isi_ms must be whole milliseconds")

    lapse_threshold_ms = _positive(params, "lapse_threshold_ms")
    false_start_threshold_ms = _positive(params, "false_start_threshold_ms", allow_zero=True)
    if false_start_threshold_ms >= lapse_threshold_ms:
        raise ConfigError(
            f"false_start_threshold_ms ({false_start_threshold_ms}) must be below "
            f"lapse_threshold_ms ({lapse_threshold_ms})"
        )

    decision_threshold = _number(params, "decision_threshold")
    if not 0 < decision_threshold < 1:
        raise ConfigError(f"decision_threshold must be in (0, 1), got {decision_threshold}")

    response_timeout_ms = _positive(params, "response_timeout_ms")
    if response_timeout_ms <= lapse_threshold_ms:
        raise ConfigError(
            f"response_timeout_ms ({response_timeout_ms}) must exceed "
            f"lapse_threshold_ms ({lapse_threshold_ms})"
        )

    update_rule = str(params.get("update_rule", DEFAULT_PARAMETERS["update_rule"])).lower()
    if update_rule not in UPDATE_RULES:
        raise ConfigError(f"update_rule must be one of {UPDATE_RULES}, got {update_rule!r}")

    return TaskConfig(
        max_duration_ms=max_duration_ms,
        min_isi_ms=int(min_isi_ms),
        max_isi_ms=int(max_isi_ms),
        lapse_threshold_ms=lapse_threshold_ms,
        false_start_threshold_ms=false_start_threshold_ms,
        decision_threshold=decision_threshold,
        feedback_duration_ms=_positive(params, "feedback_duration_ms", allow_zero=True),
        response_timeout_ms=response_timeout_ms,
        prior=_prior(params),
        likelihood_ratios=_likelihood_ratios(params),
        update_rule=update_rule,
    )
