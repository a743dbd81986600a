"""
peekguard.stats.common.statistical
==================================

Core statistical operations and utilities.

Provides mathematical building blocks for the test engine: standard errors
for proportions and means, Welch-Satterthwaite degrees of freedom, critical
values and two-sided p-values. These functions are test-agnostic.
"""

from __future__ import annotations
import math
from typing import Tuple

from scipy.stats import norm, t as student_t


def pooled_proportion_se(nA: int, nB: int, mA: int, mB: int) -> float:
    """Compute pooled standard error for two proportions.

    Uses pooled variance estimator assuming equal population proportions,
    which is the null hypothesis of the two-proportion z-test.

    Args:
        nA: Total trials in group A
        nB: Total trials in group B
        mA: Successes in group A
        mB: Successes in group B

    Returns:
        Pooled standard error (0.0 when every or no trial succeeded)
    """
    if min(nA, nB) == 0:
        return float("inf")

    p_pooled = (mA + mB) / (nA + nB)
    var_pooled = p_pooled * (1 - p_pooled) * (1 / nA + 1 / nB)
    return math.sqrt(max(var_pooled, 0.0))


def unpooled_proportion_se(nA: int, nB: int, mA: int, mB: int) -> float:
    """Compute unpooled standard error for two proportions.

    Uses separate variance estimators for each group; this is the standard
    error of the difference used for Wald confidence intervals.
    """
    if min(nA, nB) == 0:
        return float("inf")

    pA_hat = mA / nA
    pB_hat = mB / nB
    var = pA_hat * (1 - pA_hat) / nA + pB_hat * (1 - pB_hat) / nB
    return math.sqrt(max(var, 0.0))


def mean_difference_se(var_a: float, n_a: int, var_b: float, n_b: int) -> float:
    """Standard error of a difference of means with unequal variances."""
    return math.sqrt(var_a / n_a + var_b / n_b)


def welch_dof(var_a: float, n_a: int, var_b: float, n_b: int) -> float:
    """Welch-Satterthwaite degrees of freedom.

    Falls back to the pooled n_a + n_b - 2 when both variances are zero.
    """
    qa = var_a / n_a
    qb = var_b / n_b
    denom = qa * qa / (n_a - 1) + qb * qb / (n_b - 1)
    if denom == 0:
        return float(n_a + n_b - 2)
    return (qa + qb) ** 2 / denom


def pooled_sd(var_a: float, n_a: int, var_b: float, n_b: int) -> float:
    """Pooled unbiased standard deviation (denominator of Cohen's d)."""
    dof = n_a + n_b - 2
    if dof <= 0:
        return 0.0
    return math.sqrt(((n_a - 1) * var_a + (n_b - 1) * var_b) / dof)


def z_critical(level: float) -> float:
    """Two-sided normal critical value, e.g. 1.96 for level 0.95."""
    return float(norm.ppf(1 - (1 - level) / 2))


def t_critical(level: float, dof: float) -> float:
    """Two-sided Student t critical value."""
    return float(student_t.ppf(1 - (1 - level) / 2, dof))


def two_sided_p_from_z(z: float) -> float:
    if math.isnan(z):
        return 1.0
    return float(min(1.0, 2 * norm.sf(abs(z))))


def two_sided_p_from_t(t_stat: float, dof: float) -> float:
    if math.isnan(t_stat):
        return 1.0
    return float(min(1.0, 2 * student_t.sf(abs(t_stat), dof)))


def ratio(numerator: float, denominator: float) -> float:
    """Signed ratio that maps x/0 to 0 (x == 0) or +/-inf."""
    if denominator == 0:
        if numerator == 0:
            return 0.0
        return math.copysign(float("inf"), numerator)
    return numerator / denominator


def interval(estimate: float, se: float, critical: float) -> Tuple[float, float]:
    half_width = critical * se
    return estimate - half_width, estimate + half_width
