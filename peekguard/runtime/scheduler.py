"""
peekguard.runtime.scheduler
===========================

Periodic monitoring pass over running experiments.

Each cycle evaluates every running experiment concurrently, at most
`max_workers` at a time. Per experiment:

1. fetch aggregates and daily exposures (bounded by `fetch_timeout_seconds`)
   without holding any lock,
2. run the test engine and horizon estimator in a worker thread,
3. take the experiment's lock, re-read the record and discard the result if
   the experiment was deleted or left `running` meanwhile,
4. otherwise complete it when its planned duration elapsed, cache the
   summary, append the cycle to the ledger and publish notifications.

A failure in one experiment is logged and never affects the others. A fetch
timeout republishes the previous summary marked `stale`.

Examples
--------
>>> scheduler = MonitoringScheduler(...)  # doctest: +SKIP
>>> summaries = await scheduler.run_cycle()  # doctest: +SKIP
>>> asyncio.create_task(scheduler.run_forever())  # doctest: +SKIP
>>> scheduler.stop()  # doctest: +SKIP
"""

from __future__ import annotations
import asyncio
import itertools
import logging
from datetime import datetime
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

from peekguard.backends.polars.provider import AggregateProvider
from peekguard.config import MonitoringConfig
from peekguard.core.errors import AggregateFetchTimeout, InsufficientSample
from peekguard.core.ledger import Ledger
from peekguard.core.models import (
    Experiment,
    ExperimentSummary,
    HorizonEstimate,
    StatisticalTestResult,
    VariantAggregate,
    utcnow,
)
from peekguard.core.names import (
    AggregateTag,
    CompletionTag,
    ExperimentStatus,
    HorizonTag,
    Namespace,
    SummaryTag,
    TestResultTag,
    TestType,
)
from peekguard.core.store import ExperimentStore
from peekguard.runtime.lifecycle import ExperimentLifecycle
from peekguard.runtime.notifications import (
    NotificationChannel,
    experiment_completed,
    summary_update,
)
from peekguard.runtime.policy import PolicyEvaluator
from peekguard.stats.engine import StatisticalTestEngine
from peekguard.stats.horizon import PowerAndHorizonEstimator

logger = logging.getLogger(__name__)

STALE_NOTE = "Aggregate fetch timed out; showing the last known summary"


class MonitoringScheduler:
    """
    Drives evaluation cycles.

    Parameters
    ----------
    store : ExperimentStore
    lifecycle : ExperimentLifecycle
        Owns the per-experiment locks and the completion transition
    provider : AggregateProvider
    engine : StatisticalTestEngine
    estimator : PowerAndHorizonEstimator
    policy : PolicyEvaluator
    channel : NotificationChannel, optional
    ledger : Ledger, optional
    config : MonitoringConfig, optional
    clock : callable
        Returns the current time; injectable for tests
    """

    def __init__(
        self,
        *,
        store: ExperimentStore,
        lifecycle: ExperimentLifecycle,
        provider: AggregateProvider,
        engine: StatisticalTestEngine,
        estimator: PowerAndHorizonEstimator,
        policy: PolicyEvaluator,
        channel: Optional[NotificationChannel] = None,
        ledger: Optional[Ledger] = None,
        config: Optional[MonitoringConfig] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.lifecycle = lifecycle
        self.provider = provider
        self.engine = engine
        self.estimator = estimator
        self.policy = policy
        self.channel = channel
        self.ledger = ledger
        self.config = config or MonitoringConfig()
        self.clock = clock
        self._cycles = itertools.count(1)
        self._stop_event: Optional[asyncio.Event] = None

    # --- cycles ---

    async def run_cycle(
        self, now: Optional[datetime] = None
    ) -> Dict[str, Optional[ExperimentSummary]]:
        """
        Evaluate every running experiment once.

        Returns the summary written per experiment id (None when the
        evaluation failed or its result was discarded).
        """
        now = now or self.clock()
        cycle = next(self._cycles)
        running = self.store.list(ExperimentStatus.RUNNING)
        semaphore = asyncio.Semaphore(self.config.max_workers)

        async def guarded(experiment: Experiment) -> Optional[ExperimentSummary]:
            async with semaphore:
                return await self._evaluate_isolated(experiment.id, now, cycle)

        summaries = await asyncio.gather(*(guarded(e) for e in running))
        logger.debug("Cycle %d evaluated %d running experiments", cycle, len(running))
        return {e.id: s for e, s in zip(running, summaries)}

    async def run_forever(self, interval: Optional[float] = None) -> None:
        """Run cycles every `interval` seconds until `stop()` is called."""
        interval = self.config.evaluation_interval_seconds if interval is None else interval
        self._stop_event = asyncio.Event()
        logger.info("Monitoring scheduler started (interval=%.1fs)", interval)
        while not self._stop_event.is_set():
            try:
                await self.run_cycle()
            except Exception:
                logger.exception("Monitoring cycle failed")
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=interval)
            except asyncio.TimeoutError:
                pass
        logger.info("Monitoring scheduler stopped")

    def stop(self) -> None:
        if self._stop_event is not None:
            self._stop_event.set()

    # --- one experiment ---

    async def _evaluate_isolated(
        self, experiment_id: str, now: datetime, cycle: int
    ) -> Optional[ExperimentSummary]:
        try:
            return await self.evaluate(experiment_id, now=now, cycle=cycle)
        except Exception:
            logger.exception("Evaluation of experiment %s failed", experiment_id)
            return None

    async def evaluate(
        self, experiment_id: str, now: Optional[datetime] = None, cycle: int = 0
    ) -> Optional[ExperimentSummary]:
        """Evaluate one experiment; returns the summary written, if any."""
        now = now or self.clock()
        snapshot = self.store.find(experiment_id)
        if snapshot is None or snapshot.status is not ExperimentStatus.RUNNING:
            return None

        try:
            aggregates, daily = await self._fetch(snapshot, now)
        except AggregateFetchTimeout as e:
            logger.warning("%s", e)
            return await self._commit_unavailable(
                experiment_id, STALE_NOTE, stale=True, now=now, cycle=cycle
            )

        try:
            test_result, estimate = await asyncio.to_thread(
                self._compute, snapshot, aggregates, daily, now
            )
        except InsufficientSample as e:
            logger.warning("Experiment %s: %s", experiment_id, e)
            return await self._commit_unavailable(
                experiment_id,
                f"Insufficient sample: {e}",
                stale=False,
                now=now,
                cycle=cycle,
                aggregates=aggregates,
            )
        return await self._commit(experiment_id, test_result, estimate, aggregates, now, cycle)

    async def _fetch(
        self, experiment: Experiment, now: datetime
    ) -> Tuple[Dict[str, VariantAggregate], List[int]]:
        metric = experiment.primary_metric.name
        timeout = self.config.fetch_timeout_seconds

        async def fetch_both() -> Tuple[Dict[str, VariantAggregate], List[int]]:
            aggregates = await self.provider.get_aggregates(
                experiment.id,
                metric,
                as_of=now,
                variants=[v.name for v in experiment.variants],
            )
            daily = await self.provider.daily_exposures(experiment.id, metric, as_of=now)
            return aggregates, daily

        # one deadline covers both provider calls
        try:
            return await asyncio.wait_for(fetch_both(), timeout)
        except asyncio.TimeoutError:
            raise AggregateFetchTimeout(
                f"Aggregate fetch for {experiment.id} timed out after {timeout:.1f}s"
            ) from None

    def _compute(
        self,
        experiment: Experiment,
        aggregates: Mapping[str, VariantAggregate],
        daily: List[int],
        now: datetime,
    ) -> Tuple[StatisticalTestResult, HorizonEstimate]:
        result = self.engine.evaluate_with_fallback(
            experiment.primary_metric, aggregates, computed_at=now
        )
        control = aggregates[experiment.control.name]
        if result.test_type is TestType.CHI_SQUARE:
            sizes = [agg.exposed for agg in aggregates.values()]
            effect = result.effect_size
        else:
            leading = result.leading
            sizes = [control.exposed, aggregates[leading.variant].exposed]
            effect = leading.effect_size
        estimate = self.estimator.estimate(
            sizes,
            effect,
            target_power=self.config.target_power,
            alpha=self.config.alpha,
            daily_enrollment_rate=self.estimator.trailing_enrollment_rate(daily),
            test_type=result.test_type,
        )
        return result, estimate

    async def _commit(
        self,
        experiment_id: str,
        test_result: StatisticalTestResult,
        estimate: HorizonEstimate,
        aggregates: Mapping[str, VariantAggregate],
        now: datetime,
        cycle: int,
    ) -> Optional[ExperimentSummary]:
        async with self.lifecycle.lock_for(experiment_id):
            current = self._still_running(experiment_id)
            if current is None:
                return None
            summary = self.policy.summarize(current, test_result, estimate, now=now)
            self._record_cycle(current, cycle, now, aggregates, test_result, estimate, summary)
            return await self._finish(current, summary, test_result, aggregates, now)

    async def _commit_unavailable(
        self,
        experiment_id: str,
        note: str,
        *,
        stale: bool,
        now: datetime,
        cycle: int,
        aggregates: Optional[Mapping[str, VariantAggregate]] = None,
    ) -> Optional[ExperimentSummary]:
        async with self.lifecycle.lock_for(experiment_id):
            current = self._still_running(experiment_id)
            if current is None:
                return None
            previous = current.latest_summary if stale else None
            summary = self.policy.summarize_unavailable(
                current, note, stale=stale, previous=previous, now=now
            )
            self._record_cycle(current, cycle, now, aggregates, None, None, summary)
            return await self._finish(
                current, summary, current.latest_result if stale else None, aggregates, now
            )

    def _still_running(self, experiment_id: str) -> Optional[Experiment]:
        current = self.store.find(experiment_id)
        if current is None or current.status is not ExperimentStatus.RUNNING:
            state = "deleted" if current is None else current.status.value
            logger.info("Discarding evaluation of %s: experiment is %s", experiment_id, state)
            return None
        return current

    async def _finish(
        self,
        current: Experiment,
        summary: ExperimentSummary,
        test_result: Optional[StatisticalTestResult],
        aggregates: Optional[Mapping[str, VariantAggregate]],
        now: datetime,
    ) -> ExperimentSummary:
        if summary.eligible_for_completion:
            written = self.lifecycle.complete(
                current,
                summary=summary,
                test_result=test_result,
                aggregates=aggregates,
                now=now,
            )
            winner = written.results.winning_variant if written.results else None
            logger.info(
                "Experiment %s reached its planned duration; completed (winner=%s)",
                current.id,
                winner,
            )
            self._write(
                current.id, now, Namespace.SIGNALS, "completed", "Completion",
                {"winner": winner, "outcome": written.results.outcome}, CompletionTag,
            )
            await self.publish(summary_update(current.id, written.latest_summary.to_dict()))
            await self.publish(experiment_completed(current.id, winner))
            return written.latest_summary

        self.lifecycle.record_evaluation(
            current, summary=summary, test_result=test_result, aggregates=aggregates
        )
        if summary.stale:
            logger.warning("Published stale summary for %s", current.id)
        await self.publish(summary_update(current.id, summary.to_dict()))
        return summary

    # --- side effects ---

    async def publish(self, message: Dict[str, Any]) -> None:
        if self.channel is None:
            return
        try:
            await asyncio.wait_for(
                self.channel.publish(message), self.config.publish_timeout_seconds
            )
        except Exception:
            logger.warning(
                "Publishing %s for %s failed",
                message.get("type"),
                message.get("experimentId"),
                exc_info=True,
            )

    def _record_cycle(
        self,
        experiment: Experiment,
        cycle: int,
        now: datetime,
        aggregates: Optional[Mapping[str, VariantAggregate]],
        test_result: Optional[StatisticalTestResult],
        estimate: Optional[HorizonEstimate],
        summary: ExperimentSummary,
    ) -> None:
        if self.ledger is None:
            return
        if aggregates is not None:
            payload = {
                name: {
                    "exposed": agg.exposed,
                    "successes": agg.successes,
                    "sum_value": agg.sum_value,
                    "sum_squares": agg.sum_squares,
                    "n_values": len(agg.values) if agg.values is not None else None,
                }
                for name, agg in aggregates.items()
            }
            self._write(experiment.id, now, Namespace.OBS, "aggregates",
                        "VariantAggregates", payload, AggregateTag, cycle)
        if test_result is not None:
            self._write(experiment.id, now, Namespace.STATS, "test",
                        "StatisticalTestResult", test_result.to_dict(), TestResultTag, cycle)
        if estimate is not None:
            self._write(experiment.id, now, Namespace.CRITERIA, "horizon",
                        "HorizonEstimate", estimate.to_dict(), HorizonTag, cycle)
        self._write(experiment.id, now, Namespace.SIGNALS, "summary",
                    "ExperimentSummary", summary.to_dict(), SummaryTag, cycle)

    def _write(
        self,
        experiment_id: str,
        now: datetime,
        namespace: Namespace,
        kind: str,
        payload_type: str,
        payload: Dict[str, Any],
        tag: str,
        cycle: int = 0,
    ) -> None:
        if self.ledger is None:
            return
        self.ledger.write_event(
            time_index=now.isoformat(),
            namespace=namespace,
            kind=kind,
            experiment_id=experiment_id,
            step_key=f"cycle-{cycle}",
            payload_type=payload_type,
            payload=payload,
            tag=tag,
            ts=now,
        )
