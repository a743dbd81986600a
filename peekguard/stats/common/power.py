"""
peekguard.stats.common.power
============================

Generic power and sample-size formulas.

All formulas are normal (or noncentral chi-square) approximations on a
standardized effect size. Plugging in an *observed* effect makes the result an
estimate of post-hoc power, which is biased upwards for effects that happened
to come out large; callers must treat it as a planning aid.

Examples
--------
>>> round(two_sample_power(0.5, 64, 64), 2)
0.81
>>> required_total_sample_size(0.5, 0.5)
126
"""

from __future__ import annotations
import math
from typing import Optional

from scipy.optimize import brentq
from scipy.stats import chi2, ncx2, norm

# Asymptotic relative efficiency of Mann-Whitney U vs the t-test under normality.
MANN_WHITNEY_ARE = 3 / math.pi


def two_sample_power(effect_size: float, n_a: float, n_b: float, alpha: float = 0.05) -> float:
    """Two-sided power for a standardized difference between two groups."""
    if n_a <= 0 or n_b <= 0:
        return 0.0
    if math.isinf(effect_size):
        return 1.0
    z_alpha = norm.ppf(1 - alpha / 2)
    ncp = abs(effect_size) / math.sqrt(1 / n_a + 1 / n_b)
    return float(norm.cdf(ncp - z_alpha) + norm.cdf(-ncp - z_alpha))


def required_total_sample_size(
    effect_size: float,
    share_a: float,
    alpha: float = 0.05,
    power: float = 0.8,
) -> Optional[int]:
    """
    Total N over both groups to reach `power` with the given allocation split.

    `share_a` is group A's share of the pair (0.5 for an even split). Returns
    None when the effect is zero, because no finite sample detects it.
    """
    if effect_size == 0 or math.isnan(effect_size) or not 0 < share_a < 1:
        return None
    if math.isinf(effect_size):
        return 2
    z_alpha = norm.ppf(1 - alpha / 2)
    z_beta = norm.ppf(power)
    n = (z_alpha + z_beta) ** 2 / effect_size**2 * (1 / share_a + 1 / (1 - share_a))
    return int(math.ceil(n))


def chi_square_power(w: float, n_total: float, dof: int, alpha: float = 0.05) -> float:
    """Power of the chi-square test of independence for Cohen's w (Cramer's V)."""
    if n_total <= 0:
        return 0.0
    critical = chi2.ppf(1 - alpha, dof)
    return float(ncx2.sf(critical, dof, n_total * w * w))


def chi_square_required_sample_size(
    w: float, dof: int, alpha: float = 0.05, power: float = 0.8
) -> Optional[int]:
    """Total N for the chi-square test to reach `power`; None for w == 0."""
    if w == 0 or math.isnan(w):
        return None
    critical = chi2.ppf(1 - alpha, dof)
    noncentrality = brentq(lambda lam: ncx2.sf(critical, dof, lam) - power, 1e-9, 1e6)
    return int(math.ceil(noncentrality / (w * w)))
