"""
peekguard.api.service
=====================

Monitoring facade wiring the record store, audit ledger, statistics, policy,
lifecycle and scheduler together from one `MonitoringConfig`.

Examples
--------
>>> import asyncio
>>> from peekguard.api.service import MonitoringService
>>> from peekguard.backends.polars.provider import PolarsAggregateProvider
>>> service = MonitoringService(PolarsAggregateProvider())
>>> exp = service.create_experiment(
...     name="Onboarding", hypothesis="Shorter flow retains more",
...     variants=[("Control", 50), ("Short", 50)], primary_metric="retention_d7",
...     planned_duration_days=14,
... )
>>> asyncio.run(service.apply_action(exp.id, "start")).status.value
'running'
"""

from __future__ import annotations
from datetime import datetime
from typing import Any, Dict, List, Optional

from peekguard.backends.polars.provider import AggregateProvider
from peekguard.config import MonitoringConfig
from peekguard.core.ledger import Ledger, create_connection
from peekguard.core.models import Experiment, ExperimentSummary, utcnow
from peekguard.core.names import Action, ExperimentStatus
from peekguard.core.store import ExperimentStore
from peekguard.reporting.monitoring import MonitoringReporter
from peekguard.runtime.lifecycle import ActionLike, ActionResult, ExperimentLifecycle
from peekguard.runtime.notifications import (
    InMemoryChannel,
    NotificationChannel,
    experiment_completed,
    summary_update,
)
from peekguard.runtime.policy import PolicyEvaluator
from peekguard.runtime.rollout import RolloutClient, RolloutConfig
from peekguard.runtime.scheduler import MonitoringScheduler
from peekguard.stats.engine import StatisticalTestEngine
from peekguard.stats.horizon import PowerAndHorizonEstimator


class MonitoringService:
    """
    Caller-facing entry point.

    Parameters
    ----------
    provider : AggregateProvider
        Source of per-variant aggregates
    config : MonitoringConfig, optional
        Defaults to `MonitoringConfig.from_env()`
    channel : NotificationChannel, optional
        Defaults to an `InMemoryChannel`
    rollout_client : RolloutClient, optional
        Needed for `launch_winner` and releasing rollouts on delete
    ledger : Ledger, optional
        Defaults to a ledger over an in-memory duckdb connection
    clock : callable, optional
        Current time; injectable for tests
    """

    def __init__(
        self,
        provider: AggregateProvider,
        config: Optional[MonitoringConfig] = None,
        channel: Optional[NotificationChannel] = None,
        rollout_client: Optional[RolloutClient] = None,
        ledger: Optional[Ledger] = None,
        clock=utcnow,
    ):
        self.config = config or MonitoringConfig.from_env()
        self.channel = channel if channel is not None else InMemoryChannel()
        self.ledger = ledger if ledger is not None else Ledger(create_connection(), "peekguard")
        self.store = ExperimentStore()
        self.engine = StatisticalTestEngine(
            confidence_level=self.config.confidence_level,
            min_exposed_for_z=self.config.min_exposed_for_z,
            min_expected_cell=self.config.min_expected_cell,
            min_exposed_continuous=self.config.min_exposed_continuous,
        )
        self.estimator = PowerAndHorizonEstimator(
            stability_samples=self.config.power_stability_samples,
            enrollment_window_days=self.config.enrollment_window_days,
        )
        self.policy = PolicyEvaluator.from_config(self.config)
        self.lifecycle = ExperimentLifecycle(
            self.store,
            ledger=self.ledger,
            policy=self.policy,
            rollout_client=rollout_client,
            rollout_timeout=self.config.rollout_timeout_seconds,
            clock=clock,
        )
        self.scheduler = MonitoringScheduler(
            store=self.store,
            lifecycle=self.lifecycle,
            provider=provider,
            engine=self.engine,
            estimator=self.estimator,
            policy=self.policy,
            channel=self.channel,
            ledger=self.ledger,
            config=self.config,
            clock=clock,
        )

    # --- experiments ---

    def create_experiment(self, **kwargs: Any) -> Experiment:
        """Create a draft; see `ExperimentLifecycle.create` for the arguments."""
        return self.lifecycle.create(**kwargs)

    def get_experiment(self, experiment_id: str) -> Experiment:
        return self.store.get(experiment_id)

    def list_experiments(self, status: Optional[ExperimentStatus] = None) -> List[Experiment]:
        return self.store.list(status)

    def summary(self, experiment_id: str) -> Optional[ExperimentSummary]:
        return self.store.get(experiment_id).latest_summary

    async def apply_action(
        self, experiment_id: str, action: ActionLike, now: Optional[datetime] = None
    ) -> ActionResult:
        """
        Apply a lifecycle action.

        Raises `InvalidTransition` for actions the current state does not
        allow, `ExperimentNotFound` for unknown ids and
        `ExternalRolloutFailure` when a delete cannot release its rollout.
        """
        result = await self.lifecycle.apply_action(experiment_id, action, now=now)
        if result.action is Action.STOP_EARLY and not result.replayed:
            experiment = result.experiment
            await self.scheduler.publish(
                summary_update(experiment.id, experiment.latest_summary.to_dict())
            )
            await self.scheduler.publish(
                experiment_completed(experiment.id, experiment.results.winning_variant)
            )
        return result

    async def launch_winner(self, experiment_id: str, config: RolloutConfig) -> Experiment:
        return await self.lifecycle.launch_winner(experiment_id, config)

    # --- monitoring ---

    async def run_cycle(
        self, now: Optional[datetime] = None
    ) -> Dict[str, Optional[ExperimentSummary]]:
        return await self.scheduler.run_cycle(now)

    async def run_forever(self) -> None:
        await self.scheduler.run_forever()

    def stop(self) -> None:
        self.scheduler.stop()

    def reporter(self) -> MonitoringReporter:
        return MonitoringReporter.from_ledger(self.ledger)
