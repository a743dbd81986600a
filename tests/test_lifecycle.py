"""Tests for peekguard.runtime.lifecycle

Scope:
- exhaustive invalid (status, action) pairs leave the record untouched
- replays of start / pause / stop_early / delete under at-least-once delivery
- resume excludes paused time from the elapsed clock
- stop_early gated by the cached summary, results frozen at completion
- delete releases rollouts first; duplicate clones configuration only
- launch_winner never reverts completion
"""

import asyncio
import gc
from datetime import timedelta

import pytest

from peekguard.core.errors import (
    ExperimentNotFound,
    ExternalRolloutFailure,
    InvalidTransition,
)
from peekguard.core.ledger import Ledger, create_connection
from peekguard.core.models import RolloutRecord, VariantAggregate
from peekguard.core.names import ExperimentStatus, Namespace
from peekguard.core.store import ExperimentStore
from peekguard.runtime.lifecycle import ExperimentLifecycle
from peekguard.runtime.rollout import RecordingRolloutClient, RolloutConfig
from peekguard.stats.engine import StatisticalTestEngine
from peekguard.stats.horizon import PowerAndHorizonEstimator

from tests.conftest import NOW, make_experiment

S = ExperimentStatus


@pytest.fixture
def store() -> ExperimentStore:
    return ExperimentStore()


@pytest.fixture
def rollout() -> RecordingRolloutClient:
    return RecordingRolloutClient()


@pytest.fixture
def ledger() -> Ledger:
    return Ledger(create_connection())


@pytest.fixture
def lifecycle(store, rollout, ledger, clock) -> ExperimentLifecycle:
    return ExperimentLifecycle(store, ledger=ledger, rollout_client=rollout, clock=clock)


def draft(lifecycle, **overrides):
    fields = dict(
        name="Checkout CTA",
        hypothesis="A green button converts better",
        variants=[("Control", 50), ("Green", 50)],
        primary_metric="conversion_rate",
        planned_duration_days=14,
    )
    fields.update(overrides)
    return lifecycle.create(**fields)


def evaluate_into(lifecycle, experiment_id, control=(1000, 100), green=(1000, 200)):
    """Run a real evaluation and cache it on the record, as the scheduler does."""
    aggregates = {
        "Control": VariantAggregate(exposed=control[0], successes=control[1]),
        "Green": VariantAggregate(exposed=green[0], successes=green[1]),
    }
    experiment = lifecycle.store.get(experiment_id)
    result = StatisticalTestEngine().evaluate_with_fallback(
        experiment.primary_metric, aggregates, computed_at=lifecycle.clock()
    )
    leading = result.leading
    estimate = PowerAndHorizonEstimator().estimate(
        [control[0], green[0]], leading.effect_size, test_type=result.test_type
    )
    summary = lifecycle.policy.summarize(experiment, result, estimate, lifecycle.clock())
    return lifecycle.record_evaluation(
        experiment, summary=summary, test_result=result, aggregates=aggregates
    )


class TestTransitionTable:
    @pytest.mark.parametrize(
        "status,action",
        [
            (S.DRAFT, "pause"),
            (S.DRAFT, "resume"),
            (S.DRAFT, "stop_early"),
            (S.DRAFT, "complete"),
            (S.RUNNING, "start"),
            (S.RUNNING, "resume"),
            (S.RUNNING, "duplicate"),
            (S.PAUSED, "start"),
            (S.PAUSED, "pause"),
            (S.PAUSED, "stop_early"),
            (S.PAUSED, "complete"),
            (S.PAUSED, "duplicate"),
            (S.COMPLETED, "start"),
            (S.COMPLETED, "pause"),
            (S.COMPLETED, "resume"),
            (S.COMPLETED, "stop_early"),
            (S.COMPLETED, "complete"),
        ],
    )
    @pytest.mark.asyncio
    async def test_invalid_pairs_are_no_ops(self, store, lifecycle, status, action):
        before = store.insert(make_experiment(status, elapsed_days=3))
        with pytest.raises(InvalidTransition):
            await lifecycle.apply_action(before.id, action)
        assert store.get(before.id) == before

    @pytest.mark.asyncio
    async def test_unknown_action_is_rejected(self, lifecycle):
        exp = draft(lifecycle)
        with pytest.raises(ValueError):
            await lifecycle.apply_action(exp.id, "archive")

    @pytest.mark.asyncio
    async def test_running_stop_early_without_evaluation(self, store, lifecycle):
        exp = store.insert(make_experiment(S.RUNNING, elapsed_days=10))
        with pytest.raises(InvalidTransition, match="early-stop criteria"):
            await lifecycle.apply_action(exp.id, "stop_early")

    @pytest.mark.asyncio
    async def test_complete_before_planned_duration(self, store, lifecycle):
        exp = store.insert(make_experiment(S.RUNNING, elapsed_days=13))
        with pytest.raises(InvalidTransition, match="planned duration"):
            await lifecycle.apply_action(exp.id, "complete")


class TestStartPauseResume:
    @pytest.mark.asyncio
    async def test_start(self, lifecycle, clock):
        exp = draft(lifecycle)
        result = await lifecycle.apply_action(exp.id, "start")
        assert result.status is S.RUNNING
        assert result.experiment.start_date == clock.now
        assert result.experiment.version == 1
        assert not result.replayed

    @pytest.mark.asyncio
    async def test_start_replay_returns_current_state(self, lifecycle):
        exp = draft(lifecycle)
        first = await lifecycle.apply_action(exp.id, "start")
        second = await lifecycle.apply_action(exp.id, "start")
        assert second.replayed
        assert second.experiment == first.experiment

    @pytest.mark.asyncio
    async def test_start_rejects_bad_allocation(self, store, lifecycle):
        exp = draft(lifecycle, variants=[("Control", 60), ("Green", 30)])
        with pytest.raises(InvalidTransition, match="sum to 100"):
            await lifecycle.apply_action(exp.id, "start")
        assert store.get(exp.id).status is S.DRAFT

    @pytest.mark.asyncio
    async def test_start_rejects_single_variant(self, lifecycle):
        exp = draft(lifecycle, variants=[("Control", 100)])
        with pytest.raises(InvalidTransition, match="at least 2 variants"):
            await lifecycle.apply_action(exp.id, "start")

    @pytest.mark.asyncio
    async def test_pause_is_idempotent(self, lifecycle):
        exp = draft(lifecycle)
        await lifecycle.apply_action(exp.id, "start")
        once = await lifecycle.apply_action(exp.id, "pause")
        twice = await lifecycle.apply_action(exp.id, "pause")
        assert once.status is twice.status is S.PAUSED
        assert twice.replayed
        assert twice.experiment.version == once.experiment.version

    @pytest.mark.asyncio
    async def test_concurrent_duplicate_requests(self, lifecycle):
        exp = draft(lifecycle)
        await lifecycle.apply_action(exp.id, "start")
        a, b = await asyncio.gather(
            lifecycle.apply_action(exp.id, "pause"),
            lifecycle.apply_action(exp.id, "pause"),
        )
        assert {a.replayed, b.replayed} == {True, False}
        assert a.experiment == b.experiment

    @pytest.mark.asyncio
    async def test_resume_on_running_is_invalid(self, lifecycle):
        exp = draft(lifecycle)
        await lifecycle.apply_action(exp.id, "start")
        with pytest.raises(InvalidTransition):
            await lifecycle.apply_action(exp.id, "resume")

    @pytest.mark.asyncio
    async def test_start_after_resume_is_invalid(self, lifecycle):
        exp = draft(lifecycle)
        for action in ("start", "pause", "resume"):
            await lifecycle.apply_action(exp.id, action)
        with pytest.raises(InvalidTransition):
            await lifecycle.apply_action(exp.id, "start")

    @pytest.mark.asyncio
    async def test_paused_time_is_excluded(self, lifecycle, clock):
        exp = draft(lifecycle)
        await lifecycle.apply_action(exp.id, "start")
        clock.advance(days=3)
        await lifecycle.apply_action(exp.id, "pause")
        clock.advance(days=2)
        paused = lifecycle.store.get(exp.id)
        assert paused.elapsed_days(clock.now) == 3

        resumed = (await lifecycle.apply_action(exp.id, "resume")).experiment
        assert resumed.start_date == NOW + timedelta(days=2)
        assert resumed.paused_at is None
        assert resumed.elapsed_days(clock.now) == 3
        clock.advance(days=1)
        assert resumed.elapsed_days(clock.now) == 4


class TestCompletion:
    @pytest.mark.asyncio
    async def test_stop_early_freezes_results(self, store, lifecycle, clock):
        exp = store.insert(make_experiment(S.RUNNING, elapsed_days=7, last_action="start"))
        evaluated = evaluate_into(lifecycle, exp.id)
        assert evaluated.latest_summary.allows("stop_early")

        result = await lifecycle.apply_action(exp.id, "stop_early")
        done = result.experiment
        assert done.status is S.COMPLETED
        assert done.end_date == clock.now
        assert done.last_action == "stop_early"
        assert done.results.reason == "stop_early"
        assert done.results.outcome == "winner"
        assert done.results.winning_variant == "Green"
        assert done.latest_summary.allowed_actions == ("duplicate", "delete")
        assert [row.variant for row in done.results.metrics] == ["Control", "Green"]

    @pytest.mark.asyncio
    async def test_stop_early_replay(self, store, lifecycle):
        exp = store.insert(make_experiment(S.RUNNING, elapsed_days=7, last_action="start"))
        evaluate_into(lifecycle, exp.id)
        first = await lifecycle.apply_action(exp.id, "stop_early")
        second = await lifecycle.apply_action(exp.id, "stop_early")
        assert second.replayed
        assert second.experiment.version == first.experiment.version

    @pytest.mark.asyncio
    async def test_stop_early_blocked_before_guard(self, store, lifecycle):
        exp = store.insert(make_experiment(S.RUNNING, elapsed_days=3, last_action="start"))
        evaluate_into(lifecycle, exp.id)
        with pytest.raises(InvalidTransition):
            await lifecycle.apply_action(exp.id, "stop_early")
        assert store.get(exp.id).status is S.RUNNING

    @pytest.mark.asyncio
    async def test_natural_completion_without_data(self, store, lifecycle):
        exp = store.insert(make_experiment(S.RUNNING, elapsed_days=14, last_action="start"))
        result = await lifecycle.apply_action(exp.id, "complete")
        assert result.status is S.COMPLETED
        assert result.experiment.results.outcome == "inconclusive"
        assert result.experiment.results.reason == "duration_elapsed"
        assert result.experiment.elapsed_days() == 14


class TestDelete:
    @pytest.mark.asyncio
    async def test_delete_draft(self, store, lifecycle, rollout):
        exp = draft(lifecycle)
        result = await lifecycle.apply_action(exp.id, "delete")
        assert result.deleted
        assert rollout.calls == []
        assert store.is_deleted(exp.id)
        with pytest.raises(ExperimentNotFound):
            store.get(exp.id)

    @pytest.mark.asyncio
    async def test_delete_replay(self, lifecycle):
        exp = draft(lifecycle)
        await lifecycle.apply_action(exp.id, "delete")
        again = await lifecycle.apply_action(exp.id, "delete")
        assert again.replayed
        assert again.deleted

    @pytest.mark.asyncio
    async def test_lock_is_dropped_after_delete(self, lifecycle):
        exp = draft(lifecycle)
        held = lifecycle.lock_for(exp.id)
        assert lifecycle.lock_for(exp.id) is held
        del held

        await lifecycle.apply_action(exp.id, "delete")
        gc.collect()
        assert exp.id not in lifecycle._locks

    @pytest.mark.asyncio
    async def test_delete_unknown(self, lifecycle):
        with pytest.raises(ExperimentNotFound):
            await lifecycle.apply_action("missing", "delete")

    @pytest.mark.parametrize("status", list(S))
    @pytest.mark.asyncio
    async def test_delete_from_any_state(self, store, lifecycle, status):
        exp = store.insert(make_experiment(status, elapsed_days=5))
        assert (await lifecycle.apply_action(exp.id, "delete")).deleted

    @pytest.mark.asyncio
    async def test_delete_releases_rollout_first(self, store, lifecycle, rollout):
        record = RolloutRecord("launchdarkly", "cta-color", "Green", NOW)
        exp = store.insert(make_experiment(S.COMPLETED, elapsed_days=14, rollout=record))
        await lifecycle.apply_action(exp.id, "delete")
        assert rollout.calls == [("cta-color", "Control", "launchdarkly")]
        assert store.find(exp.id) is None

    @pytest.mark.asyncio
    async def test_failed_release_keeps_record(self, store, lifecycle, rollout):
        rollout.succeed = False
        record = RolloutRecord("launchdarkly", "cta-color", "Green", NOW)
        exp = store.insert(make_experiment(S.COMPLETED, elapsed_days=14, rollout=record))
        with pytest.raises(ExternalRolloutFailure):
            await lifecycle.apply_action(exp.id, "delete")
        assert store.get(exp.id) == exp
        assert not store.is_deleted(exp.id)


class TestDuplicate:
    @pytest.mark.asyncio
    async def test_copies_configuration_only(self, store, lifecycle):
        exp = store.insert(make_experiment(S.RUNNING, elapsed_days=14, last_action="start"))
        evaluate_into(lifecycle, exp.id)
        completed = (await lifecycle.apply_action(exp.id, "complete")).experiment

        result = await lifecycle.apply_action(exp.id, "duplicate")
        copy = result.created
        assert result.experiment == completed
        assert copy.id != exp.id
        assert copy.name == "Checkout CTA (Copy)"
        assert copy.status is S.DRAFT
        assert copy.variants == exp.variants
        assert copy.primary_metric == exp.primary_metric
        assert copy.start_date is None
        assert copy.latest_summary is None
        assert copy.results is None
        assert copy.version == 0

    @pytest.mark.asyncio
    async def test_duplicate_is_not_idempotent(self, store, lifecycle):
        exp = draft(lifecycle)
        await lifecycle.apply_action(exp.id, "duplicate")
        await lifecycle.apply_action(exp.id, "duplicate")
        assert len(store.list()) == 3


class TestLaunchWinner:
    @pytest.mark.asyncio
    async def test_pushes_winning_variant(self, store, lifecycle, rollout):
        exp = store.insert(make_experiment(S.RUNNING, elapsed_days=7, last_action="start"))
        evaluate_into(lifecycle, exp.id)
        await lifecycle.apply_action(exp.id, "stop_early")

        written = await lifecycle.launch_winner(exp.id, RolloutConfig("launchdarkly", "cta"))
        assert rollout.calls == [("cta", "Green", "launchdarkly")]
        assert written.rollout.value == "Green"
        assert written.status is S.COMPLETED

    @pytest.mark.asyncio
    async def test_failure_keeps_completion(self, store, lifecycle, rollout):
        exp = store.insert(make_experiment(S.RUNNING, elapsed_days=7, last_action="start"))
        evaluate_into(lifecycle, exp.id)
        await lifecycle.apply_action(exp.id, "stop_early")
        rollout.succeed = False

        with pytest.raises(ExternalRolloutFailure):
            await lifecycle.launch_winner(exp.id, RolloutConfig("launchdarkly", "cta"))
        kept = store.get(exp.id)
        assert kept.status is S.COMPLETED
        assert kept.rollout is None

    @pytest.mark.asyncio
    async def test_requires_completion(self, lifecycle):
        exp = draft(lifecycle)
        with pytest.raises(InvalidTransition):
            await lifecycle.launch_winner(exp.id, RolloutConfig("launchdarkly", "cta"))


@pytest.mark.asyncio
async def test_transitions_are_audited(lifecycle, ledger):
    exp = draft(lifecycle)
    await lifecycle.apply_action(exp.id, "start")
    await lifecycle.apply_action(exp.id, "pause")
    events = ledger.events(experiment_id=exp.id, namespace=Namespace.LIFECYCLE)
    assert [e["snapshot_id"] for e in events] == ["create", "start", "pause"]
    assert events[1]["payload"]["from"] == "draft"
    assert events[1]["payload"]["to"] == "running"
    assert events[2]["payload"]["version"] == 2
