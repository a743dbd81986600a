"""
peekguard.runtime.lifecycle
===========================

Experiment state machine.

The transition table below is exhaustive: any `(status, action)` pair that is
not listed raises `InvalidTransition` and leaves the record untouched.

==========  ===========  ==========  ===========================================
From        Action       To          Guard
==========  ===========  ==========  ===========================================
draft       start        running     >= 2 variants, allocations sum to 100
running     pause        paused
paused      resume       running
running     stop_early   completed   cached summary allows stop_early
running     complete     completed   elapsed >= planned (scheduler)
any         delete       (removed)   rollout released first
draft       duplicate    (new draft)
completed   duplicate    (new draft)
==========  ===========  ==========  ===========================================

Actions are delivered at least once, so a replay is answered with the current
state instead of an error: when the record's `last_action` equals the request
and the record already sits in that action's target state. A delete replayed
on a tombstoned id returns the deletion result.

Writes are compare-and-set on the store. Callers go through `apply_action`,
which holds the experiment's asyncio lock; the scheduler takes the same lock
before it writes an evaluation, so at most one writer touches a record at a
time.

Examples
--------
>>> import asyncio
>>> from peekguard.core.store import ExperimentStore
>>> from peekguard.core.models import MetricSpec, Variant
>>> lifecycle = ExperimentLifecycle(ExperimentStore())
>>> exp = lifecycle.create(
...     name="CTA", hypothesis="Green wins",
...     variants=[Variant("Control", 50), Variant("Green", 50)],
...     primary_metric=MetricSpec("conversion_rate"), planned_duration_days=14,
... )
>>> asyncio.run(lifecycle.apply_action(exp.id, "start")).status.value
'running'
"""

from __future__ import annotations
import asyncio
import logging
import weakref
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Callable, Dict, Mapping, Optional, Sequence, Tuple, Union

from peekguard.core.errors import (
    ConcurrentModification,
    ExternalRolloutFailure,
    InvalidTransition,
)
from peekguard.core.ledger import Ledger
from peekguard.core.models import (
    Audience,
    Experiment,
    ExperimentSummary,
    MetricSpec,
    RolloutRecord,
    StatisticalTestResult,
    Variant,
    VariantAggregate,
    utcnow,
)
from peekguard.core.names import Action, ExperimentStatus, Namespace, TransitionTag
from peekguard.core.store import ExperimentStore, new_experiment_id
from peekguard.runtime.policy import (
    REASON_DURATION_ELAPSED,
    REASON_STOP_EARLY,
    PolicyEvaluator,
)
from peekguard.runtime.rollout import RolloutClient, RolloutConfig, push_or_raise

logger = logging.getLogger(__name__)

S = ExperimentStatus
A = Action

TRANSITIONS: Dict[Tuple[ExperimentStatus, Action], Optional[ExperimentStatus]] = {
    (S.DRAFT, A.START): S.RUNNING,
    (S.RUNNING, A.PAUSE): S.PAUSED,
    (S.PAUSED, A.RESUME): S.RUNNING,
    (S.RUNNING, A.STOP_EARLY): S.COMPLETED,
    (S.RUNNING, A.COMPLETE): S.COMPLETED,
    (S.DRAFT, A.DELETE): None,
    (S.RUNNING, A.DELETE): None,
    (S.PAUSED, A.DELETE): None,
    (S.COMPLETED, A.DELETE): None,
    # duplicate leaves the source as is and creates a new draft
    (S.DRAFT, A.DUPLICATE): S.DRAFT,
    (S.COMPLETED, A.DUPLICATE): S.COMPLETED,
}

# State a record is left in by each replayable action
_TARGETS: Dict[Action, ExperimentStatus] = {
    A.START: S.RUNNING,
    A.PAUSE: S.PAUSED,
    A.RESUME: S.RUNNING,
    A.STOP_EARLY: S.COMPLETED,
    A.COMPLETE: S.COMPLETED,
}

ActionLike = Union[Action, str]


@dataclass(frozen=True)
class ActionResult:
    """Outcome of `apply_action`."""

    experiment_id: str
    action: Action
    experiment: Optional[Experiment]
    replayed: bool = False
    created: Optional[Experiment] = None

    @property
    def deleted(self) -> bool:
        return self.action is Action.DELETE and self.experiment is None

    @property
    def status(self) -> Optional[ExperimentStatus]:
        return self.experiment.status if self.experiment is not None else None

    @property
    def summary(self) -> Optional[ExperimentSummary]:
        return self.experiment.latest_summary if self.experiment is not None else None


class ExperimentLifecycle:
    """
    Applies lifecycle actions to records in an `ExperimentStore`.

    Parameters
    ----------
    store : ExperimentStore
        Record store with compare-and-set writes
    ledger : Ledger, optional
        Audit ledger; transitions are appended when given
    policy : PolicyEvaluator, optional
        Used to freeze results and refresh allowed actions
    rollout_client : RolloutClient, optional
        Feature-flag provider for `launch_winner` and rollout release
    rollout_timeout : float
        Bound on a single rollout push in seconds
    clock : callable
        Returns the current time; injectable for tests
    """

    def __init__(
        self,
        store: ExperimentStore,
        ledger: Optional[Ledger] = None,
        policy: Optional[PolicyEvaluator] = None,
        rollout_client: Optional[RolloutClient] = None,
        rollout_timeout: float = 10.0,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.ledger = ledger
        self.policy = policy or PolicyEvaluator()
        self.rollout_client = rollout_client
        self.rollout_timeout = rollout_timeout
        self.clock = clock
        # a lock lives only while some caller holds or awaits it
        self._locks: weakref.WeakValueDictionary[str, asyncio.Lock] = (
            weakref.WeakValueDictionary()
        )

    def lock_for(self, experiment_id: str) -> asyncio.Lock:
        lock = self._locks.get(experiment_id)
        if lock is None:
            lock = self._locks[experiment_id] = asyncio.Lock()
        return lock

    # --- creation ---

    def create(
        self,
        *,
        name: str,
        hypothesis: str,
        variants: Sequence[Union[Variant, Tuple[str, float]]],
        primary_metric: Union[MetricSpec, str],
        planned_duration_days: int,
        secondary_metrics: Sequence[str] = (),
        observation_window_days: int = 0,
        audience: Optional[Audience] = None,
        experiment_id: Optional[str] = None,
    ) -> Experiment:
        """Validate and insert a new draft."""
        metric = primary_metric
        if not isinstance(metric, MetricSpec):
            metric = MetricSpec(metric)
        experiment = Experiment(
            id=experiment_id or new_experiment_id(),
            name=name,
            hypothesis=hypothesis,
            variants=tuple(v if isinstance(v, Variant) else Variant(*v) for v in variants),
            primary_metric=metric,
            planned_duration_days=planned_duration_days,
            secondary_metrics=tuple(secondary_metrics),
            observation_window_days=observation_window_days,
            audience=audience or Audience(),
            created_at=self.clock(),
        )
        self.store.insert(experiment)
        self._record(experiment, "create", None, S.DRAFT)
        logger.info("Created experiment %s (%s)", experiment.id, experiment.name)
        return experiment

    # --- caller-facing entry point ---

    async def apply_action(
        self, experiment_id: str, action: ActionLike, now: Optional[datetime] = None
    ) -> ActionResult:
        """Apply `action` under the experiment's lock."""
        action = Action(action)
        async with self.lock_for(experiment_id):
            if action is Action.DELETE:
                return await self._delete_locked(experiment_id, now or self.clock())
            if action is Action.DUPLICATE:
                return self._duplicate(self.store.get(experiment_id))
            return self._transition(experiment_id, action, now or self.clock())

    # --- transitions ---

    def _transition(self, experiment_id: str, action: Action, now: datetime) -> ActionResult:
        experiment = self.store.get(experiment_id)
        if (experiment.status, action) not in TRANSITIONS:
            return self._replay_or_reject(experiment, action)

        if action is Action.START:
            problems = experiment.allocation_problems()
            if problems:
                raise InvalidTransition(
                    experiment.id, experiment.status.value, action.value, "; ".join(problems)
                )
            new = replace(
                experiment, status=S.RUNNING, start_date=now, end_date=None, paused_at=None
            )
        elif action is Action.PAUSE:
            new = replace(experiment, status=S.PAUSED, paused_at=now)
        elif action is Action.RESUME:
            shifted = experiment.start_date + experiment.paused_duration(now)
            new = replace(experiment, status=S.RUNNING, start_date=shifted, paused_at=None)
        elif action is Action.STOP_EARLY:
            summary = experiment.latest_summary
            if summary is None or not summary.allows(Action.STOP_EARLY.value):
                raise InvalidTransition(
                    experiment.id,
                    experiment.status.value,
                    action.value,
                    "early-stop criteria are not met",
                )
            new = self._completed(experiment, REASON_STOP_EARLY, now)
            return self._write(experiment, new, action)
        else:
            if experiment.elapsed_days(now) < experiment.planned_duration_days:
                raise InvalidTransition(
                    experiment.id,
                    experiment.status.value,
                    action.value,
                    "planned duration has not elapsed",
                )
            return self._write(
                experiment, self._completed(experiment, REASON_DURATION_ELAPSED, now), action
            )

        new = replace(new, last_action=action.value)
        if new.latest_summary is not None:
            new = replace(
                new,
                latest_summary=replace(
                    new.latest_summary,
                    allowed_actions=self.policy.allowed_actions(new.status),
                ),
            )
        return self._write(experiment, new, action)

    def _replay_or_reject(self, experiment: Experiment, action: Action) -> ActionResult:
        if experiment.last_action == action.value and experiment.status is _TARGETS.get(action):
            logger.info("Replayed %s on %s; state unchanged", action.value, experiment.id)
            return ActionResult(experiment.id, action, experiment, replayed=True)
        raise InvalidTransition(experiment.id, experiment.status.value, action.value)

    def _write(self, expected: Experiment, new: Experiment, action: Action) -> ActionResult:
        try:
            written = self.store.compare_and_set(expected, new)
        except ConcurrentModification:
            current = self.store.get(expected.id)
            logger.warning("Lost write race on %s during %s", expected.id, action.value)
            return self._replay_or_reject(current, action)
        self._record(written, action.value, expected.status, written.status)
        logger.info(
            "Experiment %s: %s -> %s via %s",
            written.id,
            expected.status.value,
            written.status.value,
            action.value,
        )
        return ActionResult(written.id, action, written)

    def _completed(
        self,
        experiment: Experiment,
        reason: str,
        now: datetime,
        summary: Optional[ExperimentSummary] = None,
        test_result: Optional[StatisticalTestResult] = None,
        aggregates: Optional[Mapping[str, VariantAggregate]] = None,
    ) -> Experiment:
        summary = summary or experiment.latest_summary
        test_result = test_result or experiment.latest_result
        aggregates = aggregates if aggregates is not None else experiment.latest_aggregates
        if summary is None:
            summary = self.policy.summarize_unavailable(
                experiment, "No evaluation was recorded before completion", now=now
            )
        results = self.policy.build_results(
            experiment, test_result, summary, reason, aggregates, now=now
        )
        return replace(
            experiment,
            status=S.COMPLETED,
            end_date=now,
            paused_at=None,
            last_action=(
                Action.STOP_EARLY.value if reason == REASON_STOP_EARLY else Action.COMPLETE.value
            ),
            latest_summary=results.summary,
            latest_result=test_result,
            latest_aggregates=dict(aggregates) if aggregates is not None else None,
            results=results,
        )

    # --- writes made by the scheduler (caller holds the lock) ---

    def complete(
        self,
        experiment: Experiment,
        *,
        summary: ExperimentSummary,
        test_result: Optional[StatisticalTestResult],
        aggregates: Optional[Mapping[str, VariantAggregate]],
        now: Optional[datetime] = None,
    ) -> Experiment:
        """Natural completion of a running experiment whose duration elapsed."""
        now = now or self.clock()
        if (experiment.status, Action.COMPLETE) not in TRANSITIONS:
            raise InvalidTransition(experiment.id, experiment.status.value, Action.COMPLETE.value)
        new = self._completed(
            experiment, REASON_DURATION_ELAPSED, now, summary, test_result, aggregates
        )
        result = self._write(experiment, new, Action.COMPLETE)
        return result.experiment

    def record_evaluation(
        self,
        experiment: Experiment,
        *,
        summary: ExperimentSummary,
        test_result: Optional[StatisticalTestResult],
        aggregates: Optional[Mapping[str, VariantAggregate]],
    ) -> Experiment:
        """Cache the latest evaluation on the record without changing its state."""
        new = replace(
            experiment,
            latest_summary=summary,
            latest_result=test_result if test_result is not None else experiment.latest_result,
            latest_aggregates=(
                dict(aggregates) if aggregates is not None else experiment.latest_aggregates
            ),
        )
        return self.store.compare_and_set(experiment, new)

    # --- delete / duplicate ---

    async def _delete_locked(self, experiment_id: str, now: datetime) -> ActionResult:
        if self.store.is_deleted(experiment_id):
            logger.info("Replayed delete on %s; already removed", experiment_id)
            return ActionResult(experiment_id, Action.DELETE, None, replayed=True)
        experiment = self.store.get(experiment_id)
        if experiment.rollout is not None:
            await self._release_rollout(experiment)
        try:
            self.store.remove(experiment)
        except ConcurrentModification:
            experiment = self.store.get(experiment_id)
            self.store.remove(experiment)
        self._record(experiment, Action.DELETE.value, experiment.status, None, ts=now)
        logger.info("Deleted experiment %s (was %s)", experiment_id, experiment.status.value)
        return ActionResult(experiment_id, Action.DELETE, None)

    async def _release_rollout(self, experiment: Experiment) -> None:
        rollout = experiment.rollout
        if self.rollout_client is None:
            raise ExternalRolloutFailure(
                f"Experiment {experiment.id} holds rollout {rollout.flag_key} "
                "but no rollout client is configured"
            )
        await push_or_raise(
            self.rollout_client,
            RolloutConfig(provider=rollout.provider, flag_key=rollout.flag_key),
            experiment.control.name,
            self.rollout_timeout,
        )

    def _duplicate(self, experiment: Experiment) -> ActionResult:
        if (experiment.status, Action.DUPLICATE) not in TRANSITIONS:
            raise InvalidTransition(experiment.id, experiment.status.value, Action.DUPLICATE.value)
        copy = self.create(
            name=f"{experiment.name} (Copy)",
            hypothesis=experiment.hypothesis,
            variants=experiment.variants,
            primary_metric=experiment.primary_metric,
            planned_duration_days=experiment.planned_duration_days,
            secondary_metrics=experiment.secondary_metrics,
            observation_window_days=experiment.observation_window_days,
            audience=experiment.audience,
        )
        return ActionResult(experiment.id, Action.DUPLICATE, experiment, created=copy)

    # --- rollout ---

    async def launch_winner(self, experiment_id: str, config: RolloutConfig) -> Experiment:
        """
        Push the winning variant of a completed experiment to the flag provider.

        Completion is never reverted: a failed push raises
        `ExternalRolloutFailure` and leaves the record completed without a
        rollout.
        """
        if self.rollout_client is None:
            raise ExternalRolloutFailure("No rollout client is configured")
        async with self.lock_for(experiment_id):
            experiment = self.store.get(experiment_id)
            results = experiment.results
            if experiment.status is not S.COMPLETED or results is None:
                raise InvalidTransition(
                    experiment.id, experiment.status.value, "launch_winner", "not completed"
                )
            if results.winning_variant is None:
                raise InvalidTransition(
                    experiment.id, experiment.status.value, "launch_winner", "no winning variant"
                )
            await push_or_raise(
                self.rollout_client, config, results.winning_variant, self.rollout_timeout
            )
            record = RolloutRecord(
                provider=config.provider,
                flag_key=config.flag_key,
                value=results.winning_variant,
                pushed_at=self.clock(),
            )
            written = self.store.compare_and_set(experiment, replace(experiment, rollout=record))
            self._record(written, "launch_winner", written.status, written.status)
            return written

    # --- audit ---

    def _record(
        self,
        experiment: Experiment,
        action: str,
        source: Optional[ExperimentStatus],
        target: Optional[ExperimentStatus],
        ts: Optional[datetime] = None,
    ) -> None:
        if self.ledger is None:
            return
        ts = ts or self.clock()
        self.ledger.write_event(
            time_index=ts.isoformat(),
            namespace=Namespace.LIFECYCLE,
            kind="transition",
            experiment_id=experiment.id,
            step_key=action,
            payload_type="Transition",
            payload={
                "action": action,
                "from": source.value if source else None,
                "to": target.value if target else None,
                "version": experiment.version,
                "winner": (
                    experiment.results.winning_variant if experiment.results else None
                ),
            },
            tag=TransitionTag,
            ts=ts,
        )
