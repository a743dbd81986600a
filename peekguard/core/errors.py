"""
peekguard.core.errors
=====================

Error taxonomy.

Statistical preconditions (`InsufficientSample`, `DegenerateTable`) are
recoverable: wait for more data or fall back to another test. Lifecycle errors
(`InvalidTransition`) are surfaced to the caller and never change state.
External failures (`AggregateFetchTimeout`, `ExternalRolloutFailure`) are
isolated to the experiment they concern.
"""

from __future__ import annotations
from typing import Optional


class PeekguardError(Exception):
    """Base class for all package errors."""


class InsufficientSample(PeekguardError):
    """Test preconditions unmet; wait for more data."""

    def __init__(self, message: str, *, required: Optional[int] = None) -> None:
        super().__init__(message)
        self.required = required


class DegenerateTable(PeekguardError):
    """Contingency table violates chi-square validity (expected cell < 5)."""

    def __init__(self, message: str, *, min_expected: float) -> None:
        super().__init__(message)
        self.min_expected = min_expected


class InvalidTransition(PeekguardError):
    """Action is not permitted from the experiment's current state."""

    def __init__(self, experiment_id: str, status: str, action: str, reason: str = "") -> None:
        detail = f": {reason}" if reason else ""
        super().__init__(
            f"Cannot apply '{action}' to experiment {experiment_id} in state '{status}'{detail}"
        )
        self.experiment_id = experiment_id
        self.status = status
        self.action = action
        self.reason = reason


class AggregateFetchTimeout(PeekguardError):
    """Metric aggregate provider did not answer within the timeout."""


class ExternalRolloutFailure(PeekguardError):
    """Remote-config rollout could not be pushed or released."""


class ConcurrentModification(PeekguardError):
    """Compare-and-set on an experiment record lost a race."""


class ExperimentNotFound(PeekguardError, KeyError):
    """No experiment record for the given id."""

    def __str__(self) -> str:
        return f"Experiment not found: {self.args[0]}" if self.args else "Experiment not found"


class InvalidExperiment(PeekguardError, ValueError):
    """Experiment configuration is malformed."""
