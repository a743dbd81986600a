"""
peekguard.stats.horizon
=======================

Achieved power, samples remaining and time-to-significance.

The estimator plugs the *observed* effect size into the normal-approximation
power formula. Early in an experiment the observed effect is noisy and biased
away from zero, so the resulting power is optimistic; `HorizonEstimate.is_stable`
is False until every arm has `stability_samples` observations and callers
should present the numbers as indicative only until then.

Effect sizes are converted to a common scale per test family:

- Cohen's h and Cohen's d feed the two-sample normal formula directly.
- Cramer's V is Cohen's w; power comes from the noncentral chi-square.
- Rank-biserial r is mapped to the d with the same AUC and the sample is
  discounted by the Mann-Whitney asymptotic relative efficiency (3/pi).

Examples
--------
>>> from peekguard.core.names import TestType
>>> est = PowerAndHorizonEstimator()
>>> h = est.estimate([1000, 1000], 0.1, daily_enrollment_rate=100.0,
...                  test_type=TestType.TWO_PROPORTION_Z)
>>> h.required_sample_size
3140
>>> h.samples_remaining, h.eta_days
(1140, 12)
"""

from __future__ import annotations
import math
from dataclasses import dataclass
from typing import Iterable, Optional, Sequence

import polars as pl

from peekguard.core.models import HorizonEstimate
from peekguard.core.names import TestType
from peekguard.stats.common.effect_size import rank_biserial_to_d
from peekguard.stats.common.power import (
    MANN_WHITNEY_ARE,
    chi_square_power,
    chi_square_required_sample_size,
    required_total_sample_size,
    two_sample_power,
)


@dataclass(kw_only=True)
class PowerAndHorizonEstimator:
    """
    Attributes:
        stability_samples: Per-arm sample size below which estimates are unstable
        enrollment_window_days: Trailing window for `trailing_enrollment_rate`
    """

    stability_samples: int = 200
    enrollment_window_days: int = 7

    def estimate(
        self,
        current_sample_sizes: Sequence[int],
        observed_effect_size: float,
        target_power: float = 0.8,
        alpha: float = 0.05,
        daily_enrollment_rate: Optional[float] = None,
        test_type: TestType = TestType.TWO_PROPORTION_Z,
    ) -> HorizonEstimate:
        """
        Power now, and how many more samples reach `target_power`.

        `current_sample_sizes` lists the arms being compared, control first.
        For chi-square that is every arm; for the pairwise tests it is the
        control and the treatment the effect belongs to.
        """
        sizes = [int(n) for n in current_sample_sizes]
        if len(sizes) < 2:
            raise ValueError("Power needs at least two arms")
        total = sum(sizes)
        test_type = TestType(test_type)

        if test_type is TestType.CHI_SQUARE:
            dof = len(sizes) - 1
            power = chi_square_power(observed_effect_size, total, dof, alpha)
            required = chi_square_required_sample_size(
                observed_effect_size, dof, alpha, target_power
            )
        else:
            effect = observed_effect_size
            efficiency = 1.0
            if test_type is TestType.MANN_WHITNEY_U:
                effect = rank_biserial_to_d(observed_effect_size)
                efficiency = MANN_WHITNEY_ARE
            n_a, n_b = sizes[0], sum(sizes[1:])
            power = two_sample_power(effect, n_a * efficiency, n_b * efficiency, alpha)
            share_a = n_a / total if total > 0 else 0.5
            required = required_total_sample_size(effect, share_a, alpha, target_power)
            if required is not None and efficiency != 1.0:
                required = int(math.ceil(required / efficiency))

        remaining: Optional[int] = None
        eta: Optional[int] = None
        if required is not None:
            remaining = max(0, required - total)
            if remaining == 0:
                eta = 0
            elif daily_enrollment_rate:
                eta = int(math.ceil(remaining / daily_enrollment_rate))

        return HorizonEstimate(
            achieved_power=power,
            samples_remaining=remaining,
            eta_days=eta,
            required_sample_size=required,
            daily_enrollment_rate=daily_enrollment_rate,
            is_stable=min(sizes) >= self.stability_samples,
        )

    def trailing_enrollment_rate(self, daily_exposures: Iterable[int]) -> Optional[float]:
        """Average new exposures per day over the trailing window (None if no days)."""
        window = list(daily_exposures)[-self.enrollment_window_days :]
        if not window:
            return None
        return sum(window) / len(window)

    def power_curve(
        self,
        effect_size: float,
        total_sample_sizes: Iterable[int],
        alpha: float = 0.05,
        test_type: TestType = TestType.TWO_PROPORTION_Z,
        n_arms: int = 2,
    ) -> pl.DataFrame:
        """Power at each planned total sample size, assuming an even split."""
        rows = []
        for total in total_sample_sizes:
            if TestType(test_type) is TestType.CHI_SQUARE:
                power = chi_square_power(effect_size, total, n_arms - 1, alpha)
            else:
                effect, efficiency = effect_size, 1.0
                if TestType(test_type) is TestType.MANN_WHITNEY_U:
                    effect, efficiency = rank_biserial_to_d(effect_size), MANN_WHITNEY_ARE
                per_arm = total / n_arms * efficiency
                power = two_sample_power(effect, per_arm, per_arm * (n_arms - 1), alpha)
            rows.append({"total_sample_size": int(total), "power": power})
        return pl.DataFrame(
            rows, schema={"total_sample_size": pl.Int64, "power": pl.Float64}
        )
