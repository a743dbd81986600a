"""
peekguard.core.names
====================

Typed names shared across the package.

- `Namespace`: an Enum for well-known ledger namespaces.
- `ExperimentStatus`, `Action`: the lifecycle vocabulary.
- `TestType`, `MetricType`: the statistical vocabulary.
- `ExperimentId`, `StepKey`, `TimeIndex`: NewType wrappers for clarity.

Examples
--------
>>> from peekguard.core.names import Namespace, ExperimentStatus, TestType
>>> Namespace.STATS.value
'stats'
>>> ExperimentStatus("running") is ExperimentStatus.RUNNING
True
>>> TestType.WELCH_T.value
'welch-t'
"""

from __future__ import annotations
from enum import Enum
from typing import NewType


class Namespace(str, Enum):
    """Well-known ledger namespaces.

    - OBS: aggregates pulled from the metric provider
    - STATS: statistical test results (derived)
    - CRITERIA: power / horizon estimates
    - SIGNALS: published summaries and completion decisions
    - LIFECYCLE: state transitions
    """

    OBS = "obs"
    STATS = "stats"
    CRITERIA = "criteria"
    SIGNALS = "signals"
    LIFECYCLE = "lifecycle"

    def __str__(self) -> str:
        return self.value


class ExperimentStatus(str, Enum):
    """Visible lifecycle states. Deletion removes the record instead."""

    DRAFT = "draft"
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"


class Action(str, Enum):
    """Actions a caller (or the scheduler) can apply to an experiment."""

    START = "start"
    PAUSE = "pause"
    RESUME = "resume"
    STOP_EARLY = "stop_early"
    COMPLETE = "complete"  # natural completion, scheduler only
    DELETE = "delete"
    DUPLICATE = "duplicate"


class TestType(str, Enum):
    """Test families supported by the engine."""

    __test__ = False  # keep pytest from collecting this enum

    TWO_PROPORTION_Z = "two-proportion-z"
    CHI_SQUARE = "chi-square"
    WELCH_T = "welch-t"
    MANN_WHITNEY_U = "mann-whitney-u"


class MetricType(str, Enum):
    """Shape of a metric, declared when the experiment is created."""

    CONVERSION = "conversion"
    CONTINUOUS = "continuous"
    SKEWED_CONTINUOUS = "skewed_continuous"


ExperimentId = NewType("ExperimentId", str)
StepKey = NewType("StepKey", str)
TimeIndex = NewType("TimeIndex", str)

# Ledger tags
TestResultTag = "stat:test"
HorizonTag = "crit:horizon"
SummaryTag = "signal:summary"
CompletionTag = "signal:completed"
TransitionTag = "lifecycle:transition"
AggregateTag = "obs:aggregate"
