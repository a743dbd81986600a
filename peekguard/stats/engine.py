"""
peekguard.stats.engine
======================

Test-type-polymorphic statistical test engine.

`StatisticalTestEngine.evaluate(test_type, aggregates)` turns cumulative
per-variant aggregates into a `StatisticalTestResult`. The first entry of
`aggregates` is the control; every other entry is compared against it, and
deltas are always *treatment minus control* so that a better treatment gives
a positive statistic.

Supported families:

- **two-proportion z**: exactly two variants, pooled-SE z statistic,
  Cohen's h. Needs >= 30 exposed per variant.
- **chi-square (2 x k)**: omnibus test of independence with k - 1 degrees
  of freedom, Cramer's V. Needs every expected cell >= 5, otherwise
  `DegenerateTable` is raised and `evaluate_with_fallback` switches to the
  rank test on the 0/1 outcomes.
- **Welch t**: means from running sums, Welch-Satterthwaite df, Cohen's d
  with pooled variance.
- **Mann-Whitney U**: raw observation lists, rank-biserial correlation.

Confidence intervals are normal (or t) approximations around the difference.

Examples
--------
>>> from peekguard.core.models import VariantAggregate
>>> from peekguard.core.names import TestType
>>> engine = StatisticalTestEngine()
>>> result = engine.evaluate(
...     TestType.TWO_PROPORTION_Z,
...     {"Control": VariantAggregate(exposed=1000, successes=100),
...      "Variant": VariantAggregate(exposed=1000, successes=130)},
... )
>>> round(result.statistic, 2)
2.1
>>> result.p_value < 0.05
True
"""

from __future__ import annotations
import math
from dataclasses import dataclass, replace
from datetime import datetime
from typing import List, Mapping, Optional, Tuple

import numpy as np
from scipy.stats import chi2_contingency, mannwhitneyu

from peekguard.core.errors import DegenerateTable, InsufficientSample
from peekguard.core.models import (
    ConfidenceInterval,
    MetricSpec,
    StatisticalTestResult,
    VariantAggregate,
    VariantComparison,
    utcnow,
)
from peekguard.core.names import TestType
from peekguard.stats.common.effect_size import (
    cohens_d,
    cohens_h,
    cramers_v,
    label_effect_size,
    rank_biserial,
)
from peekguard.stats.common.statistical import (
    interval,
    mean_difference_se,
    pooled_proportion_se,
    pooled_sd,
    ratio,
    t_critical,
    two_sided_p_from_t,
    two_sided_p_from_z,
    unpooled_proportion_se,
    welch_dof,
    z_critical,
)

Aggregates = Mapping[str, VariantAggregate]


@dataclass(kw_only=True)
class StatisticalTestEngine:
    """
    Pure evaluator of the four supported test families.

    Attributes:
        confidence_level: Default level for confidence intervals
        min_exposed_for_z: Per-variant minimum for the z approximation
        min_expected_cell: Smallest admissible expected chi-square cell
        min_exposed_continuous: Per-variant minimum for t and U tests
    """

    confidence_level: float = 0.95
    min_exposed_for_z: int = 30
    min_expected_cell: float = 5.0
    min_exposed_continuous: int = 2

    def evaluate(
        self,
        test_type: TestType,
        aggregates: Aggregates,
        confidence_level: Optional[float] = None,
        computed_at: Optional[datetime] = None,
    ) -> StatisticalTestResult:
        """Run `test_type` on the aggregates (first entry is the control)."""
        if len(aggregates) < 2:
            raise ValueError("At least two variants are required for a test")
        level = confidence_level if confidence_level is not None else self.confidence_level
        now = computed_at or utcnow()
        test_type = TestType(test_type)

        if test_type is TestType.TWO_PROPORTION_Z:
            return self._two_proportion_z(aggregates, level, now)
        if test_type is TestType.CHI_SQUARE:
            return self._chi_square(aggregates, level, now)
        if test_type is TestType.WELCH_T:
            return self._pairwise(test_type, aggregates, level, now, self._welch_comparison)
        return self._pairwise(test_type, aggregates, level, now, self._mann_whitney_comparison)

    def evaluate_with_fallback(
        self,
        metric: MetricSpec,
        aggregates: Aggregates,
        confidence_level: Optional[float] = None,
        computed_at: Optional[datetime] = None,
    ) -> StatisticalTestResult:
        """
        Evaluate `metric`'s test, falling back to Mann-Whitney U on a
        degenerate table.

        Conversion counts are expanded to 0/1 observation lists, which is the
        non-parametric test for the same metric.
        """
        test_type = metric.resolve_test_type(len(aggregates))
        try:
            return self.evaluate(test_type, aggregates, confidence_level, computed_at)
        except DegenerateTable:
            binary = {name: _as_binary_observations(agg) for name, agg in aggregates.items()}
            result = self.evaluate(
                TestType.MANN_WHITNEY_U, binary, confidence_level, computed_at
            )
            return replace(result, fallback_from=TestType(test_type))

    # --- proportions ---

    def _two_proportion_z(
        self, aggregates: Aggregates, level: float, now: datetime
    ) -> StatisticalTestResult:
        if len(aggregates) != 2:
            raise ValueError(
                f"two-proportion z compares exactly two variants, got {len(aggregates)}"
            )
        for name, agg in aggregates.items():
            if agg.exposed < self.min_exposed_for_z:
                raise InsufficientSample(
                    f"Variant '{name}' has {agg.exposed} exposed users; "
                    f"the z approximation needs at least {self.min_exposed_for_z}",
                    required=self.min_exposed_for_z,
                )
        (_, control), (name, treatment) = list(aggregates.items())
        comparison = self._proportion_comparison(
            name, control, treatment, level, effect="h"
        )
        return StatisticalTestResult(
            test_type=TestType.TWO_PROPORTION_Z,
            statistic=comparison.statistic,
            p_value=comparison.p_value,
            effect_size=comparison.effect_size,
            effect_size_label=comparison.effect_size_label,
            confidence_interval=comparison.confidence_interval,
            sample_size_used=comparison.sample_size,
            computed_at=now,
            comparisons=(comparison,),
        )

    def _proportion_comparison(
        self,
        name: str,
        control: VariantAggregate,
        treatment: VariantAggregate,
        level: float,
        effect: str,
    ) -> VariantComparison:
        nA, mA = control.exposed, control.successes
        nB, mB = treatment.exposed, treatment.successes
        pA, pB = control.rate, treatment.rate
        delta = pB - pA
        z = ratio(delta, pooled_proportion_se(nA, nB, mA, mB))
        if effect == "h":
            effect_size = cohens_h(pA, pB)
            family = TestType.TWO_PROPORTION_Z
        else:
            # signed phi of the 2 x 2 table: chi2 = z^2, phi = z / sqrt(N)
            effect_size = z / math.sqrt(nA + nB) if not math.isinf(z) else math.copysign(1.0, z)
            family = TestType.CHI_SQUARE
        lower, upper = interval(delta, unpooled_proportion_se(nA, nB, mA, mB), z_critical(level))
        return VariantComparison(
            variant=name,
            control_estimate=pA,
            treatment_estimate=pB,
            delta=delta,
            statistic=z,
            p_value=two_sided_p_from_z(z),
            effect_size=effect_size,
            effect_size_label=label_effect_size(effect_size, family),
            confidence_interval=ConfidenceInterval(lower, upper, level),
            sample_size=nA + nB,
        )

    def _chi_square(
        self, aggregates: Aggregates, level: float, now: datetime
    ) -> StatisticalTestResult:
        for name, agg in aggregates.items():
            if agg.exposed <= 0:
                raise InsufficientSample(f"Variant '{name}' has no exposed users", required=1)
        table = np.array(
            [[agg.successes, agg.exposed - agg.successes] for agg in aggregates.values()],
            dtype=float,
        )
        n_total = table.sum()
        expected = np.outer(table.sum(axis=1), table.sum(axis=0)) / n_total
        min_expected = float(expected.min())
        if min_expected < self.min_expected_cell:
            raise DegenerateTable(
                f"Smallest expected cell count is {min_expected:.2f} "
                f"(< {self.min_expected_cell:g}); chi-square approximation invalid",
                min_expected=min_expected,
            )
        chi2_stat, p_value, dof, _ = chi2_contingency(table, correction=False)
        v = cramers_v(float(chi2_stat), int(n_total), table.shape[0], table.shape[1])

        items = list(aggregates.items())
        control = items[0][1]
        comparisons = tuple(
            self._proportion_comparison(name, control, agg, level, effect="phi")
            for name, agg in items[1:]
        )
        headline = max(comparisons, key=lambda c: (c.effect_size, c.sample_size))
        return StatisticalTestResult(
            test_type=TestType.CHI_SQUARE,
            statistic=float(chi2_stat),
            p_value=float(p_value),
            effect_size=v,
            effect_size_label=label_effect_size(v, TestType.CHI_SQUARE),
            confidence_interval=headline.confidence_interval,
            sample_size_used=int(n_total),
            computed_at=now,
            comparisons=comparisons,
            degrees_of_freedom=float(dof),
        )

    # --- continuous ---

    def _pairwise(
        self, test_type: TestType, aggregates: Aggregates, level: float, now: datetime, compare
    ) -> StatisticalTestResult:
        for name, agg in aggregates.items():
            if agg.exposed < self.min_exposed_continuous:
                raise InsufficientSample(
                    f"Variant '{name}' has {agg.exposed} observations; "
                    f"{test_type.value} needs at least {self.min_exposed_continuous}",
                    required=self.min_exposed_continuous,
                )
        items = list(aggregates.items())
        control = items[0][1]
        pairs: List[Tuple[VariantComparison, Optional[float]]] = [
            compare(name, control, agg, level) for name, agg in items[1:]
        ]
        comparisons = tuple(c for c, _ in pairs)
        headline, dof = max(pairs, key=lambda p: (p[0].effect_size, p[0].sample_size))
        return StatisticalTestResult(
            test_type=test_type,
            statistic=headline.statistic,
            p_value=headline.p_value,
            effect_size=headline.effect_size,
            effect_size_label=headline.effect_size_label,
            confidence_interval=headline.confidence_interval,
            sample_size_used=sum(agg.exposed for agg in aggregates.values()),
            computed_at=now,
            comparisons=comparisons,
            degrees_of_freedom=dof,
        )

    def _welch_comparison(
        self, name: str, control: VariantAggregate, treatment: VariantAggregate, level: float
    ) -> Tuple[VariantComparison, Optional[float]]:
        nA, nB = control.exposed, treatment.exposed
        vA, vB = control.variance, treatment.variance
        delta = treatment.mean - control.mean
        se = mean_difference_se(vA, nA, vB, nB)
        dof = welch_dof(vA, nA, vB, nB)
        t_stat = ratio(delta, se)
        d = cohens_d(delta, pooled_sd(vA, nA, vB, nB))
        lower, upper = interval(delta, se, t_critical(level, dof))
        comparison = VariantComparison(
            variant=name,
            control_estimate=control.mean,
            treatment_estimate=treatment.mean,
            delta=delta,
            statistic=t_stat,
            p_value=two_sided_p_from_t(t_stat, dof),
            effect_size=d,
            effect_size_label=label_effect_size(d, TestType.WELCH_T),
            confidence_interval=ConfidenceInterval(lower, upper, level),
            sample_size=nA + nB,
        )
        return comparison, dof

    def _mann_whitney_comparison(
        self, name: str, control: VariantAggregate, treatment: VariantAggregate, level: float
    ) -> Tuple[VariantComparison, Optional[float]]:
        if control.values is None or treatment.values is None:
            raise InsufficientSample(
                "Mann-Whitney U needs per-observation values for every variant"
            )
        a = np.asarray(control.values, dtype=float)
        b = np.asarray(treatment.values, dtype=float)
        if min(a.size, b.size) < self.min_exposed_continuous:
            raise InsufficientSample(
                f"Mann-Whitney U needs at least {self.min_exposed_continuous} "
                "observations per variant",
                required=self.min_exposed_continuous,
            )
        if np.ptp(np.concatenate([a, b])) == 0:
            u_stat, p_value = a.size * b.size / 2, 1.0
        else:
            res = mannwhitneyu(b, a, alternative="two-sided")
            u_stat, p_value = float(res.statistic), float(res.pvalue)
            if math.isnan(p_value):
                p_value = 1.0
        r = rank_biserial(u_stat, b.size, a.size)
        delta = float(b.mean() - a.mean())
        var_a = float(a.var(ddof=1)) if a.size > 1 else 0.0
        var_b = float(b.var(ddof=1)) if b.size > 1 else 0.0
        se = mean_difference_se(var_a, a.size, var_b, b.size)
        lower, upper = interval(delta, se, z_critical(level))
        comparison = VariantComparison(
            variant=name,
            control_estimate=float(a.mean()),
            treatment_estimate=float(b.mean()),
            delta=delta,
            statistic=float(u_stat),
            p_value=min(1.0, p_value),
            effect_size=r,
            effect_size_label=label_effect_size(r, TestType.MANN_WHITNEY_U),
            confidence_interval=ConfidenceInterval(lower, upper, level),
            sample_size=int(a.size + b.size),
        )
        return comparison, None


def _as_binary_observations(agg: VariantAggregate) -> VariantAggregate:
    ones = agg.successes
    zeros = agg.exposed - agg.successes
    values = (1.0,) * ones + (0.0,) * zeros
    return VariantAggregate(
        exposed=agg.exposed,
        successes=agg.successes,
        sum_value=float(ones),
        sum_squares=float(ones),
        values=values,
    )


_DEFAULT_ENGINE = StatisticalTestEngine()


def evaluate(test_type: TestType, aggregates: Aggregates) -> StatisticalTestResult:
    """Module-level shortcut using default thresholds."""
    return _DEFAULT_ENGINE.evaluate(test_type, aggregates)
