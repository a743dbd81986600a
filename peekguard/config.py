"""
peekguard.config
================

Tunable parameters of the monitoring engine.

Every threshold the decision policy uses lives here so that a deployment can
tighten or relax it without touching code. `MonitoringConfig.from_env()`
applies `PEEKGUARD_*` environment overrides on top of the defaults.

Examples
--------
>>> from peekguard.config import MonitoringConfig
>>> cfg = MonitoringConfig()
>>> cfg.early_stop_guard_days(14)
4.2
>>> cfg.early_stop_guard_days(5)
2.0
"""

from __future__ import annotations
import os
from dataclasses import dataclass, fields
from typing import Mapping, Optional

ENV_PREFIX = "PEEKGUARD_"


@dataclass
class MonitoringConfig:
    """Parameters for statistics, policy and scheduling."""

    # === statistics ===
    alpha: float = 0.05
    """Significance level for isSignificant and early stopping"""

    target_power: float = 0.8
    """Power the horizon estimator plans for"""

    confidence_level: float = 0.95
    """Level of reported confidence intervals"""

    min_exposed_for_z: int = 30
    """Per-variant minimum for the two-proportion normal approximation"""

    min_expected_cell: float = 5.0
    """Chi-square validity: smallest admissible expected cell count"""

    min_exposed_continuous: int = 2
    """Per-variant minimum for Welch's t and Mann-Whitney U"""

    power_stability_samples: int = 200
    """Below this many samples per arm power estimates are flagged unstable"""

    enrollment_window_days: int = 7
    """Trailing window for the daily enrollment rate"""

    # === policy ===
    early_stop_floor_days: float = 2.0
    """Absolute floor of the early-stop duration guard"""

    early_stop_min_fraction: float = 0.3
    """Fraction of the planned duration that must elapse before early stop"""

    negative_trend_min_fraction: float = 0.2
    """Negative-trend warnings are suppressed in this leading fraction of the run"""

    # === scheduling ===
    evaluation_interval_seconds: float = 30.0
    """Period of the monitoring pass"""

    fetch_timeout_seconds: float = 10.0
    """Bound on a single aggregate fetch"""

    publish_timeout_seconds: float = 5.0
    """Bound on a single notification publish"""

    rollout_timeout_seconds: float = 10.0
    """Bound on a single rollout push"""

    max_workers: int = 4
    """Experiments evaluated concurrently"""

    def __post_init__(self) -> None:
        if not 0 < self.alpha < 1:
            raise ValueError(f"alpha must be in (0, 1), got {self.alpha}")
        if not 0 < self.target_power < 1:
            raise ValueError(f"target_power must be in (0, 1), got {self.target_power}")
        if not 0 < self.confidence_level < 1:
            raise ValueError(f"confidence_level must be in (0, 1), got {self.confidence_level}")
        if self.max_workers < 1:
            raise ValueError("max_workers must be >= 1")

    def early_stop_guard_days(self, planned_duration_days: int) -> float:
        """Duration guard: max(2, 0.3 x planned) with the default settings."""
        return max(
            self.early_stop_floor_days,
            self.early_stop_min_fraction * planned_duration_days,
        )

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "MonitoringConfig":
        """Build a config from `PEEKGUARD_<FIELD>` variables (e.g. PEEKGUARD_ALPHA)."""
        env = os.environ if environ is None else environ
        overrides = {}
        for f in fields(cls):
            raw = env.get(ENV_PREFIX + f.name.upper())
            if raw is None:
                continue
            caster = int if f.type in (int, "int") else float
            overrides[f.name] = caster(raw)
        return cls(**overrides)
