"""
peekguard.core.models
=====================

Data model for experiments, statistical results and derived summaries.

Records are immutable: the lifecycle replaces an `Experiment` wholesale
(`dataclasses.replace`) and bumps its `version`, which is what the record
store compares-and-sets on. Allocation is therefore frozen once running simply
because nothing mutates a `Variant`.

Examples
--------
>>> from peekguard.core.models import Experiment, Variant, MetricSpec
>>> exp = Experiment(
...     id="exp-1", name="Checkout CTA", hypothesis="Green converts better",
...     variants=(Variant("Control", 50), Variant("Green", 50)),
...     primary_metric=MetricSpec("conversion_rate"),
...     planned_duration_days=14,
... )
>>> exp.status.value
'draft'
>>> exp.control.name
'Control'
"""

from __future__ import annotations
import math
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Tuple

from peekguard.core.errors import InvalidExperiment
from peekguard.core.names import ExperimentStatus, MetricType, TestType

SECONDS_PER_DAY = 86400.0

_COMPATIBLE_TESTS: Dict[MetricType, Tuple[TestType, ...]] = {
    MetricType.CONVERSION: (
        TestType.TWO_PROPORTION_Z,
        TestType.CHI_SQUARE,
        TestType.MANN_WHITNEY_U,
    ),
    MetricType.CONTINUOUS: (TestType.WELCH_T, TestType.MANN_WHITNEY_U),
    MetricType.SKEWED_CONTINUOUS: (TestType.MANN_WHITNEY_U, TestType.WELCH_T),
}


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# --- Configuration records ---


@dataclass(frozen=True)
class Variant:
    """One arm of an experiment. The first variant is the control."""

    name: str
    allocation_percent: float


@dataclass(frozen=True)
class Audience:
    """Whole population (cohort None) or a named cohort with an exposure share."""

    cohort: Optional[str] = None
    exposure_fraction: float = 1.0

    def __post_init__(self) -> None:
        if not 0.0 <= self.exposure_fraction <= 1.0:
            raise InvalidExperiment(
                f"exposure_fraction must be in [0, 1], got {self.exposure_fraction}"
            )

    @property
    def is_whole_population(self) -> bool:
        return self.cohort is None


@dataclass(frozen=True)
class MetricSpec:
    """
    A metric and the test family that analyses it.

    The test family is declared, never inferred from the data shape, so that
    the engine stays deterministic. When `test_type` is omitted the default for
    the metric type is used: conversion metrics get the two-proportion z-test
    (or chi-square for more than two variants), continuous metrics Welch's t,
    skewed metrics Mann-Whitney U.
    """

    name: str
    metric_type: MetricType = MetricType.CONVERSION
    test_type: Optional[TestType] = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "metric_type", MetricType(self.metric_type))
        if self.test_type is None:
            return
        object.__setattr__(self, "test_type", TestType(self.test_type))
        if self.test_type not in _COMPATIBLE_TESTS[self.metric_type]:
            raise InvalidExperiment(
                f"Test '{self.test_type.value}' cannot analyse "
                f"{self.metric_type.value} metric '{self.name}'"
            )

    def resolve_test_type(self, n_variants: int) -> TestType:
        if self.test_type is not None:
            return self.test_type
        if self.metric_type is MetricType.CONVERSION:
            return TestType.TWO_PROPORTION_Z if n_variants == 2 else TestType.CHI_SQUARE
        if self.metric_type is MetricType.CONTINUOUS:
            return TestType.WELCH_T
        return TestType.MANN_WHITNEY_U


@dataclass(frozen=True)
class RolloutRecord:
    """A winner pushed to the remote-config provider."""

    provider: str
    flag_key: str
    value: str
    pushed_at: datetime


# --- Aggregates consumed from the provider ---


@dataclass(frozen=True)
class VariantAggregate:
    """
    Cumulative per-variant aggregate.

    Which fields are populated depends on the metric type: `successes` for
    conversion metrics, `sum_value`/`sum_squares` for continuous metrics, and
    `values` (the raw observation list) for rank tests.
    """

    exposed: int
    successes: int = 0
    sum_value: float = 0.0
    sum_squares: float = 0.0
    values: Optional[Tuple[float, ...]] = None

    @property
    def rate(self) -> float:
        return self.successes / self.exposed if self.exposed > 0 else 0.0

    @property
    def mean(self) -> float:
        return self.sum_value / self.exposed if self.exposed > 0 else 0.0

    @property
    def variance(self) -> float:
        """Unbiased sample variance from the running sums."""
        n = self.exposed
        if n < 2:
            return 0.0
        var = (self.sum_squares - self.sum_value * self.sum_value / n) / (n - 1)
        return max(var, 0.0)

    @classmethod
    def from_values(cls, values: List[float]) -> "VariantAggregate":
        return cls(
            exposed=len(values),
            sum_value=float(sum(values)),
            sum_squares=float(sum(v * v for v in values)),
            values=tuple(float(v) for v in values),
        )


# --- Statistical results ---


@dataclass(frozen=True)
class ConfidenceInterval:
    lower: float
    upper: float
    level: float

    def contains(self, value: float) -> bool:
        return self.lower <= value <= self.upper

    def to_dict(self) -> Dict[str, float]:
        return {"lower": self.lower, "upper": self.upper, "level": self.level}


@dataclass(frozen=True)
class VariantComparison:
    """One treatment compared against the control."""

    variant: str
    control_estimate: float
    treatment_estimate: float
    delta: float
    statistic: float
    p_value: float
    effect_size: float
    effect_size_label: str
    confidence_interval: ConfidenceInterval
    sample_size: int

    @property
    def relative_lift(self) -> Optional[float]:
        if self.control_estimate == 0:
            return None
        return self.delta / abs(self.control_estimate)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "variant": self.variant,
            "controlEstimate": self.control_estimate,
            "treatmentEstimate": self.treatment_estimate,
            "delta": self.delta,
            "relativeLift": self.relative_lift,
            "statistic": self.statistic,
            "pValue": self.p_value,
            "effectSize": self.effect_size,
            "effectSizeLabel": self.effect_size_label,
            "confidenceInterval": self.confidence_interval.to_dict(),
            "sampleSize": self.sample_size,
        }


@dataclass(frozen=True)
class StatisticalTestResult:
    """
    Outcome of one test evaluation.

    The headline fields (`statistic`, `p_value`, `effect_size`,
    `confidence_interval`) describe the omnibus test for chi-square and the
    leading treatment otherwise. `comparisons` holds one entry per treatment.
    """

    test_type: TestType
    statistic: float
    p_value: float
    effect_size: float
    effect_size_label: str
    confidence_interval: ConfidenceInterval
    sample_size_used: int
    computed_at: datetime
    comparisons: Tuple[VariantComparison, ...] = ()
    degrees_of_freedom: Optional[float] = None
    fallback_from: Optional[TestType] = None

    @property
    def leading(self) -> Optional[VariantComparison]:
        """Treatment with the largest signed effect vs control."""
        if not self.comparisons:
            return None
        return max(self.comparisons, key=lambda c: (c.effect_size, c.sample_size))

    def comparison_for(self, variant: str) -> Optional[VariantComparison]:
        for c in self.comparisons:
            if c.variant == variant:
                return c
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "testType": self.test_type.value,
            "statistic": self.statistic,
            "pValue": self.p_value,
            "effectSize": self.effect_size,
            "effectSizeLabel": self.effect_size_label,
            "confidenceInterval": self.confidence_interval.to_dict(),
            "sampleSizeUsed": self.sample_size_used,
            "computedAt": self.computed_at.isoformat(),
            "degreesOfFreedom": self.degrees_of_freedom,
            "fallbackFrom": self.fallback_from.value if self.fallback_from else None,
            "comparisons": [c.to_dict() for c in self.comparisons],
        }


@dataclass(frozen=True)
class HorizonEstimate:
    """
    Achieved power and projected time to reach the power target.

    Power is computed with the observed effect as a plug-in estimate, which is
    biased upwards and noisy early in a run; `is_stable` is False while any arm
    has fewer than the stability threshold (200 by default) samples.
    """

    achieved_power: float
    samples_remaining: Optional[int]
    eta_days: Optional[int]
    required_sample_size: Optional[int] = None
    daily_enrollment_rate: Optional[float] = None
    is_stable: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "achievedPower": self.achieved_power,
            "samplesRemaining": self.samples_remaining,
            "etaDays": self.eta_days,
            "requiredSampleSize": self.required_sample_size,
            "dailyEnrollmentRate": self.daily_enrollment_rate,
            "isStable": self.is_stable,
        }


# --- Derived summary ---


@dataclass(frozen=True)
class KeyMetrics:
    delta: float
    delta_label: str
    p_value: float
    p_value_label: str
    significance_band: str
    power: float
    is_significant: bool

    def to_dict(self) -> Dict[str, Any]:
        return {
            "delta": self.delta_label,
            "deltaValue": self.delta,
            "pValue": self.p_value,
            "pValueLabel": self.p_value_label,
            "significanceBand": self.significance_band,
            "power": self.power,
            "isSignificant": self.is_significant,
        }


@dataclass(frozen=True)
class ExperimentSummary:
    """Derived, recomputed every evaluation cycle. Never hand-edited."""

    elapsed_days: int
    planned_days: int
    progress_percent: float
    winner_variant: Optional[str]
    banner_warning: Optional[str]
    allowed_actions: Tuple[str, ...]
    key_metrics: KeyMetrics
    samples_remaining: Optional[int]
    eta_days: Optional[int]
    computed_at: datetime
    eligible_for_completion: bool = False
    data_quality_note: Optional[str] = None
    stale: bool = False

    def allows(self, action: str) -> bool:
        return action in self.allowed_actions

    def to_dict(self) -> Dict[str, Any]:
        return {
            "elapsedDays": self.elapsed_days,
            "plannedDays": self.planned_days,
            "progressPercent": self.progress_percent,
            "winnerVariant": self.winner_variant,
            "bannerWarning": self.banner_warning,
            "actions": list(self.allowed_actions),
            "keyMetrics": self.key_metrics.to_dict(),
            "samplesRemaining": self.samples_remaining,
            "etaDays": self.eta_days,
            "eligibleForCompletion": self.eligible_for_completion,
            "dataQualityNote": self.data_quality_note,
            "stale": self.stale,
            "computedAt": self.computed_at.isoformat(),
        }


@dataclass(frozen=True)
class KpiRow:
    """Per-variant line of the results table."""

    variant: str
    value: float
    absolute_change: Optional[float]
    relative_change: Optional[float]
    p_value: Optional[float]
    sample_size: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "group": self.variant,
            "value": self.value,
            "absoluteChange": self.absolute_change,
            "relativeChange": self.relative_change,
            "pValue": self.p_value,
            "sampleSize": self.sample_size,
        }


@dataclass(frozen=True)
class Results:
    """Final results, frozen when the experiment completes."""

    outcome: str  # "winner" | "no_difference" | "inconclusive"
    winning_variant: Optional[str]
    reason: str  # "stop_early" | "duration_elapsed"
    summary: ExperimentSummary
    test_result: Optional[StatisticalTestResult]
    metrics: Tuple[KpiRow, ...]
    interpretation: str
    frozen_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        return {
            "outcome": self.outcome,
            "winningVariant": self.winning_variant,
            "reason": self.reason,
            "summary": self.summary.to_dict(),
            "testResult": self.test_result.to_dict() if self.test_result else None,
            "metrics": [m.to_dict() for m in self.metrics],
            "interpretation": self.interpretation,
            "frozenAt": self.frozen_at.isoformat(),
        }


# --- Experiment record ---


@dataclass(frozen=True)
class Experiment:
    """An experiment record as held by the record store."""

    id: str
    name: str
    hypothesis: str
    variants: Tuple[Variant, ...]
    primary_metric: MetricSpec
    planned_duration_days: int
    secondary_metrics: Tuple[str, ...] = ()
    observation_window_days: int = 0
    audience: Audience = field(default_factory=Audience)
    status: ExperimentStatus = ExperimentStatus.DRAFT
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    paused_at: Optional[datetime] = None
    last_action: Optional[str] = None
    version: int = 0
    latest_summary: Optional[ExperimentSummary] = None
    latest_result: Optional[StatisticalTestResult] = None
    latest_aggregates: Optional[Dict[str, VariantAggregate]] = None
    results: Optional[Results] = None
    rollout: Optional[RolloutRecord] = None
    created_at: datetime = field(default_factory=utcnow)

    def __post_init__(self) -> None:
        if self.planned_duration_days < 1:
            raise InvalidExperiment("planned_duration_days must be >= 1")
        if self.observation_window_days < 0:
            raise InvalidExperiment("observation_window_days must be >= 0")
        names = [v.name for v in self.variants]
        if len(names) != len(set(names)):
            raise InvalidExperiment("Variant names must be unique")
        for v in self.variants:
            if not 0 <= v.allocation_percent <= 100:
                raise InvalidExperiment(
                    f"Allocation for '{v.name}' must be in [0, 100], got {v.allocation_percent}"
                )

    @property
    def control(self) -> Variant:
        return self.variants[0]

    @property
    def treatments(self) -> Tuple[Variant, ...]:
        return self.variants[1:]

    @property
    def total_allocation(self) -> float:
        return sum(v.allocation_percent for v in self.variants)

    @property
    def test_type(self) -> TestType:
        return self.primary_metric.resolve_test_type(len(self.variants))

    def allocation_problems(self) -> List[str]:
        """Reasons this configuration cannot start (empty when it can)."""
        problems = []
        if len(self.variants) < 2:
            problems.append("Experiment must have at least 2 variants")
        if abs(self.total_allocation - 100) > 1e-9:  # float representation only
            problems.append(
                f"Variant allocations must sum to 100, got {self.total_allocation:g}"
            )
        return problems

    def elapsed_days(self, now: Optional[datetime] = None) -> int:
        """
        Whole days of active running time.

        The clock is frozen while paused (measured to `paused_at`) and after
        completion (measured to `end_date`). Resume shifts `start_date`
        forward by the paused duration, so paused time is never counted.
        """
        if self.start_date is None:
            return 0
        if self.status is ExperimentStatus.PAUSED and self.paused_at is not None:
            reference = self.paused_at
        elif self.status is ExperimentStatus.COMPLETED and self.end_date is not None:
            reference = self.end_date
        else:
            reference = now or utcnow()
        seconds = (reference - self.start_date).total_seconds()
        return max(0, int(math.floor(seconds / SECONDS_PER_DAY)))

    def progress_percent(self, now: Optional[datetime] = None) -> float:
        fraction = min(self.elapsed_days(now) / self.planned_duration_days, 1.0)
        return round(fraction * 100.0, 1)

    def paused_duration(self, now: datetime) -> timedelta:
        if self.paused_at is None:
            return timedelta(0)
        return max(now - self.paused_at, timedelta(0))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "hypothesis": self.hypothesis,
            "variants": [
                {"name": v.name, "allocation": v.allocation_percent} for v in self.variants
            ],
            "audience": {
                "type": "all" if self.audience.is_whole_population else "cohort",
                "cohortId": self.audience.cohort,
                "exposurePct": self.audience.exposure_fraction * 100,
            },
            "primaryMetric": self.primary_metric.name,
            "metricType": self.primary_metric.metric_type.value,
            "testType": self.test_type.value,
            "secondaryMetrics": list(self.secondary_metrics),
            "duration": self.planned_duration_days,
            "observationWindow": self.observation_window_days,
            "status": self.status.value,
            "startDate": self.start_date.isoformat() if self.start_date else None,
            "endDate": self.end_date.isoformat() if self.end_date else None,
            "version": self.version,
        }
