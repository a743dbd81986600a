"""
peekguard.stats.common.effect_size
==================================

Standardized effect sizes and their verbal labels.

Each test family reports a different effect-size measure, and each measure
has its own conventional boundaries:

- Cohen's h (two-proportion z), Cohen's d (Welch t) and Cramer's V / phi
  (chi-square) use Cohen's 0.2 / 0.5 / 0.8 table.
- Rank-biserial correlation (Mann-Whitney U), like Cliff's delta, uses the
  0.11 / 0.28 / 0.43 table.

Boundaries are lower-inclusive: an effect of exactly 0.8 is "large".

Examples
--------
>>> from peekguard.core.names import TestType
>>> label_effect_size(0.8, TestType.WELCH_T)
'large'
>>> label_effect_size(0.79999, TestType.WELCH_T)
'medium'
>>> label_effect_size(-0.3, TestType.MANN_WHITNEY_U)
'medium'
"""

from __future__ import annotations
import math
from typing import Dict, Tuple

from scipy.stats import norm

from peekguard.core.names import TestType

NEGLIGIBLE = "negligible"
SMALL = "small"
MEDIUM = "medium"
LARGE = "large"

COHEN_BOUNDARIES: Tuple[float, float, float] = (0.2, 0.5, 0.8)
CLIFF_BOUNDARIES: Tuple[float, float, float] = (0.11, 0.28, 0.43)

BOUNDARY_TABLES: Dict[TestType, Tuple[float, float, float]] = {
    TestType.TWO_PROPORTION_Z: COHEN_BOUNDARIES,
    TestType.CHI_SQUARE: COHEN_BOUNDARIES,
    TestType.WELCH_T: COHEN_BOUNDARIES,
    TestType.MANN_WHITNEY_U: CLIFF_BOUNDARIES,
}


def label_effect_size(effect: float, test_type: TestType) -> str:
    """Verbal label for |effect| using the boundary table of `test_type`."""
    small, medium, large = BOUNDARY_TABLES[test_type]
    magnitude = abs(effect)
    if math.isnan(magnitude) or magnitude < small:
        return NEGLIGIBLE
    if magnitude < medium:
        return SMALL
    if magnitude < large:
        return MEDIUM
    return LARGE


def cohens_h(p_control: float, p_treatment: float) -> float:
    """Cohen's h, signed treatment minus control."""
    return 2 * math.asin(math.sqrt(p_treatment)) - 2 * math.asin(math.sqrt(p_control))


def cohens_d(mean_difference: float, pooled_sd: float) -> float:
    """Cohen's d with pooled unbiased standard deviation."""
    if pooled_sd == 0:
        if mean_difference == 0:
            return 0.0
        return math.copysign(float("inf"), mean_difference)
    return mean_difference / pooled_sd


def cramers_v(chi2: float, n_total: int, n_rows: int, n_cols: int) -> float:
    """Cramer's V; equals |phi| for a 2 x 2 table."""
    k = min(n_rows, n_cols) - 1
    if n_total <= 0 or k <= 0:
        return 0.0
    return math.sqrt(chi2 / (n_total * k))


def rank_biserial(u_treatment: float, n_treatment: int, n_control: int) -> float:
    """Rank-biserial correlation from the treatment's U statistic.

    Positive when treatment values tend to exceed control values.
    """
    return 2 * u_treatment / (n_treatment * n_control) - 1


def rank_biserial_to_d(r: float) -> float:
    """Cohen's d with the same common-language effect size as `r`.

    Used by the power estimator to put rank effects on the d scale:
    AUC = (r + 1) / 2 and d = sqrt(2) * Phi^-1(AUC).
    """
    auc = min(max((r + 1) / 2, 1e-12), 1 - 1e-12)
    return float(math.sqrt(2) * norm.ppf(auc))
