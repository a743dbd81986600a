"""
peekguard.runtime.policy
========================

Decision rules that turn a test result and a horizon estimate into the
`ExperimentSummary` shown to users, and freeze `Results` at completion.

Guard rails against peeking:

- `stop_early` needs p < alpha **and** achieved power >= target **and** at
  least max(2, 0.3 x planned) elapsed days. A small p-value alone never
  unlocks it.
- The negative-trend banner stays quiet during the first 20% of the run.

Examples
--------
>>> PolicyEvaluator().allowed_actions(ExperimentStatus.PAUSED)
('resume', 'delete')
"""

from __future__ import annotations
import logging
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Mapping, Optional, Tuple

from peekguard.config import MonitoringConfig
from peekguard.core.models import (
    Experiment,
    ExperimentSummary,
    HorizonEstimate,
    KeyMetrics,
    KpiRow,
    Results,
    StatisticalTestResult,
    VariantAggregate,
    VariantComparison,
    utcnow,
)
from peekguard.core.names import Action, ExperimentStatus, MetricType, TestType
from peekguard.stats.common.formatting import (
    NO_SIGNAL,
    format_delta,
    format_p_value,
    significance_band,
)

logger = logging.getLogger(__name__)

OUTCOME_WINNER = "winner"
OUTCOME_NO_DIFFERENCE = "no_difference"
OUTCOME_INCONCLUSIVE = "inconclusive"

REASON_STOP_EARLY = "stop_early"
REASON_DURATION_ELAPSED = "duration_elapsed"

_PROPORTION_TESTS = (TestType.TWO_PROPORTION_Z, TestType.CHI_SQUARE)


@dataclass(kw_only=True)
class PolicyEvaluator:
    """
    Attributes:
        alpha: Significance level
        target_power: Power required before early stopping
        early_stop_floor_days: Absolute minimum elapsed days for early stop
        early_stop_min_fraction: Minimum elapsed fraction of the plan for early stop
        negative_trend_min_fraction: Elapsed fraction before negative warnings show
    """

    alpha: float = 0.05
    target_power: float = 0.8
    early_stop_floor_days: float = 2.0
    early_stop_min_fraction: float = 0.3
    negative_trend_min_fraction: float = 0.2

    @classmethod
    def from_config(cls, config: MonitoringConfig) -> "PolicyEvaluator":
        return cls(
            alpha=config.alpha,
            target_power=config.target_power,
            early_stop_floor_days=config.early_stop_floor_days,
            early_stop_min_fraction=config.early_stop_min_fraction,
            negative_trend_min_fraction=config.negative_trend_min_fraction,
        )

    # --- building blocks ---

    def allowed_actions(
        self, status: ExperimentStatus, can_stop_early: bool = False
    ) -> Tuple[str, ...]:
        if status is ExperimentStatus.DRAFT:
            return (Action.DUPLICATE.value, Action.DELETE.value)
        if status is ExperimentStatus.RUNNING:
            actions = [Action.PAUSE.value, Action.DELETE.value]
            if can_stop_early:
                actions.append(Action.STOP_EARLY.value)
            return tuple(actions)
        if status is ExperimentStatus.PAUSED:
            return (Action.RESUME.value, Action.DELETE.value)
        return (Action.DUPLICATE.value, Action.DELETE.value)

    def early_stop_guard_days(self, planned_days: int) -> float:
        return max(self.early_stop_floor_days, self.early_stop_min_fraction * planned_days)

    def can_stop_early(
        self, elapsed_days: int, planned_days: int, p_value: float, power: float
    ) -> bool:
        return (
            p_value < self.alpha
            and power >= self.target_power
            and elapsed_days >= self.early_stop_guard_days(planned_days)
        )

    def winner(self, test_result: StatisticalTestResult) -> Optional[str]:
        """
        Treatment with the largest effect among significant improvements.

        Ties go to the larger sample, then to the lexically smaller name.
        """
        candidates = [
            c for c in test_result.comparisons if c.p_value < self.alpha and c.delta > 0
        ]
        if not candidates:
            return None
        best = min(candidates, key=lambda c: (-c.effect_size, -c.sample_size, c.variant))
        return best.variant

    def negative_trend_warning(
        self,
        metric_name: str,
        leading: Optional[VariantComparison],
        elapsed_days: int,
        planned_days: int,
    ) -> Optional[str]:
        if leading is None:
            return None
        if elapsed_days / planned_days <= self.negative_trend_min_fraction:
            return None
        if leading.delta < 0 and leading.p_value < self.alpha:
            return f"Potential negative impact on {metric_name} - consider pausing."
        return None

    # --- summaries ---

    def summarize(
        self,
        experiment: Experiment,
        test_result: StatisticalTestResult,
        estimate: HorizonEstimate,
        now: Optional[datetime] = None,
    ) -> ExperimentSummary:
        """Summary of a running experiment after a successful evaluation."""
        now = now or utcnow()
        elapsed = experiment.elapsed_days(now)
        planned = experiment.planned_duration_days
        leading = test_result.leading
        delta = leading.delta if leading is not None else 0.0
        p_value = test_result.p_value
        power = estimate.achieved_power

        running = experiment.status is ExperimentStatus.RUNNING
        stop_ok = running and self.can_stop_early(elapsed, planned, p_value, power)
        note = None
        if test_result.fallback_from is not None:
            note = (
                f"{test_result.fallback_from.value} approximation invalid; "
                f"reporting {test_result.test_type.value} instead"
            )
        elif not estimate.is_stable:
            note = "Power estimate is unstable at the current sample size"

        return ExperimentSummary(
            elapsed_days=elapsed,
            planned_days=planned,
            progress_percent=experiment.progress_percent(now),
            winner_variant=self.winner(test_result),
            banner_warning=self.negative_trend_warning(
                experiment.primary_metric.name, leading, elapsed, planned
            ),
            allowed_actions=self.allowed_actions(experiment.status, stop_ok),
            key_metrics=KeyMetrics(
                delta=delta,
                delta_label=format_delta(
                    delta, as_percentage_points=_is_rate(experiment, test_result)
                ),
                p_value=p_value,
                p_value_label=format_p_value(p_value),
                significance_band=significance_band(p_value),
                power=power,
                is_significant=p_value < self.alpha,
            ),
            samples_remaining=estimate.samples_remaining,
            eta_days=estimate.eta_days,
            computed_at=now,
            eligible_for_completion=running and elapsed >= planned,
            data_quality_note=note,
        )

    def summarize_unavailable(
        self,
        experiment: Experiment,
        note: str,
        stale: bool = False,
        previous: Optional[ExperimentSummary] = None,
        now: Optional[datetime] = None,
    ) -> ExperimentSummary:
        """
        Summary when no fresh test result exists.

        Used for insufficient samples and fetch timeouts. With `previous`, the
        last known metrics are carried over; either way the result is never
        significant enough to allow `stop_early`.
        """
        now = now or utcnow()
        elapsed = experiment.elapsed_days(now)
        planned = experiment.planned_duration_days
        running = experiment.status is ExperimentStatus.RUNNING
        actions = self.allowed_actions(experiment.status, can_stop_early=False)
        if previous is not None:
            return replace(
                previous,
                elapsed_days=elapsed,
                progress_percent=experiment.progress_percent(now),
                allowed_actions=actions,
                eligible_for_completion=running and elapsed >= planned,
                data_quality_note=note,
                stale=stale,
                computed_at=now,
            )
        return ExperimentSummary(
            elapsed_days=elapsed,
            planned_days=planned,
            progress_percent=experiment.progress_percent(now),
            winner_variant=None,
            banner_warning=None,
            allowed_actions=actions,
            key_metrics=KeyMetrics(
                delta=0.0,
                delta_label="n/a",
                p_value=1.0,
                p_value_label=format_p_value(1.0),
                significance_band=NO_SIGNAL,
                power=0.0,
                is_significant=False,
            ),
            samples_remaining=None,
            eta_days=None,
            computed_at=now,
            eligible_for_completion=running and elapsed >= planned,
            data_quality_note=note,
            stale=stale,
        )

    # --- results ---

    def build_results(
        self,
        experiment: Experiment,
        test_result: Optional[StatisticalTestResult],
        summary: ExperimentSummary,
        reason: str,
        aggregates: Optional[Mapping[str, VariantAggregate]] = None,
        now: Optional[datetime] = None,
    ) -> Results:
        """Freeze the final results of a completing experiment."""
        now = now or utcnow()
        control = experiment.control.name
        winner = self.winner(test_result) if test_result is not None else None
        if test_result is None:
            outcome = OUTCOME_INCONCLUSIVE
        elif winner is not None:
            outcome = OUTCOME_WINNER
        elif any(c.p_value < self.alpha and c.delta < 0 for c in test_result.comparisons):
            # every significant treatment is worse, so the control wins
            outcome, winner = OUTCOME_WINNER, control
        elif test_result.p_value >= self.alpha:
            outcome = OUTCOME_NO_DIFFERENCE
        else:
            outcome = OUTCOME_INCONCLUSIVE

        rows = _kpi_rows(experiment, test_result, aggregates)
        results = Results(
            outcome=outcome,
            winning_variant=winner,
            reason=reason,
            summary=replace(
                summary, allowed_actions=self.allowed_actions(ExperimentStatus.COMPLETED)
            ),
            test_result=test_result,
            metrics=rows,
            interpretation=_interpret(experiment, test_result, outcome, winner, summary),
            frozen_at=now,
        )
        logger.info(
            "Froze results of %s: outcome=%s winner=%s reason=%s",
            experiment.id,
            outcome,
            winner,
            reason,
        )
        return results


def _is_rate(experiment: Experiment, test_result: StatisticalTestResult) -> bool:
    tests = (test_result.test_type, test_result.fallback_from)
    if any(t in _PROPORTION_TESTS for t in tests):
        return True
    return experiment.primary_metric.metric_type is MetricType.CONVERSION


def _kpi_rows(
    experiment: Experiment,
    test_result: Optional[StatisticalTestResult],
    aggregates: Optional[Mapping[str, VariantAggregate]],
) -> Tuple[KpiRow, ...]:
    if aggregates is None:
        return ()
    rate = experiment.primary_metric.metric_type is MetricType.CONVERSION
    control_name = experiment.control.name
    control = aggregates.get(control_name)
    control_value = (control.rate if rate else control.mean) if control else None
    rows = []
    for name, agg in aggregates.items():
        value = agg.rate if rate else agg.mean
        comparison = test_result.comparison_for(name) if test_result else None
        if name == control_name or control_value is None:
            absolute = relative = None
        else:
            absolute = value - control_value
            relative = absolute / abs(control_value) * 100 if control_value else None
        rows.append(
            KpiRow(
                variant=name,
                value=value,
                absolute_change=absolute,
                relative_change=relative,
                p_value=comparison.p_value if comparison else None,
                sample_size=agg.exposed,
            )
        )
    return tuple(rows)


def _interpret(
    experiment: Experiment,
    test_result: Optional[StatisticalTestResult],
    outcome: str,
    winner: Optional[str],
    summary: ExperimentSummary,
) -> str:
    metric = experiment.primary_metric.name.replace("_", " ")
    control = experiment.control.name
    if test_result is None:
        return (
            f"Not enough data was collected to test {metric}. "
            "Consider a longer run or a larger audience."
        )
    stats_line = (
        f"{test_result.test_type.value}, p {format_p_value(test_result.p_value)}, "
        f"effect {test_result.effect_size:.2f} ({test_result.effect_size_label})"
    )
    if outcome == OUTCOME_WINNER and winner != control:
        return (
            f"{winner} increased {metric} by {summary.key_metrics.delta_label} "
            f"compared to {control} (statistically significant; {stats_line}). "
            f"Roll out {winner} and keep monitoring {metric}."
        )
    if outcome == OUTCOME_WINNER:
        return (
            f"Every significant treatment decreased {metric} compared to {control} "
            f"({stats_line}). Do not roll out the treatments."
        )
    if outcome == OUTCOME_NO_DIFFERENCE:
        return (
            f"No statistically significant difference in {metric} between the "
            f"variants and {control} ({stats_line}). Test more differentiated variants."
        )
    return (
        f"The overall test on {metric} is significant but no single treatment "
        f"beats {control} ({stats_line}). Consider extending the test."
    )
