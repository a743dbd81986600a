"""Shared fixtures and builders for the peekguard test-suite."""

from datetime import date, datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Sequence, Tuple

import pytest

from peekguard.core.models import (
    ConfidenceInterval,
    Experiment,
    MetricSpec,
    StatisticalTestResult,
    Variant,
    VariantComparison,
)
from peekguard.core.names import ExperimentStatus, TestType

NOW = datetime(2024, 6, 15, 12, 0, tzinfo=timezone.utc)


class FixedClock:
    """Settable clock passed to components instead of `utcnow`."""

    def __init__(self, now: datetime = NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


def make_experiment(
    status: ExperimentStatus = ExperimentStatus.DRAFT,
    *,
    experiment_id: str = "exp-1",
    planned_days: int = 14,
    elapsed_days: float = 0,
    variants: Sequence[Tuple[str, float]] = (("Control", 50), ("Green", 50)),
    metric: Optional[MetricSpec] = None,
    now: datetime = NOW,
    **overrides: Any,
) -> Experiment:
    """An experiment already sitting in `status`, started `elapsed_days` ago."""
    start = now - timedelta(days=elapsed_days) if status is not ExperimentStatus.DRAFT else None
    fields: Dict[str, Any] = dict(
        id=experiment_id,
        name="Checkout CTA",
        hypothesis="A green button converts better",
        variants=tuple(Variant(name, pct) for name, pct in variants),
        primary_metric=metric or MetricSpec("conversion_rate"),
        planned_duration_days=planned_days,
        status=status,
        start_date=start,
        created_at=now - timedelta(days=30),
    )
    if status is ExperimentStatus.PAUSED:
        fields["paused_at"] = now
    if status is ExperimentStatus.COMPLETED:
        fields["end_date"] = now
    fields.update(overrides)
    return Experiment(**fields)


def make_comparison(
    variant: str,
    *,
    delta: float,
    p_value: float,
    effect_size: Optional[float] = None,
    sample_size: int = 2000,
) -> VariantComparison:
    effect = delta if effect_size is None else effect_size
    return VariantComparison(
        variant=variant,
        control_estimate=0.10,
        treatment_estimate=0.10 + delta,
        delta=delta,
        statistic=delta * 100,
        p_value=p_value,
        effect_size=effect,
        effect_size_label="small",
        confidence_interval=ConfidenceInterval(delta - 0.01, delta + 0.01, 0.95),
        sample_size=sample_size,
    )


def make_result(
    comparisons: List[VariantComparison],
    *,
    test_type: TestType = TestType.TWO_PROPORTION_Z,
    p_value: Optional[float] = None,
) -> StatisticalTestResult:
    leading = max(comparisons, key=lambda c: (c.effect_size, c.sample_size))
    return StatisticalTestResult(
        test_type=test_type,
        statistic=leading.statistic,
        p_value=leading.p_value if p_value is None else p_value,
        effect_size=leading.effect_size,
        effect_size_label=leading.effect_size_label,
        confidence_interval=leading.confidence_interval,
        sample_size_used=sum(c.sample_size for c in comparisons),
        computed_at=NOW,
        comparisons=tuple(comparisons),
    )


def daily_rows(
    experiment_id: str,
    metric: str,
    per_variant: Dict[str, Tuple[int, int]],
    days: int,
    end: date = NOW.date(),
) -> List[Dict[str, Any]]:
    """`days` daily rows per variant, each with (exposed, successes)."""
    rows = []
    for offset in range(days):
        day = end - timedelta(days=days - 1 - offset)
        for variant, (exposed, successes) in per_variant.items():
            rows.append(
                {
                    "experiment_id": experiment_id,
                    "metric": metric,
                    "variant": variant,
                    "day": day,
                    "exposed": exposed,
                    "successes": successes,
                }
            )
    return rows


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock()
