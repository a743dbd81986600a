"""
peekguard.core
==============

Infrastructure shared by every layer: typed names, the data model, the error
taxonomy, the compare-and-set record store and the audit ledger.
"""

from peekguard.core.errors import (  # noqa: F401
    AggregateFetchTimeout,
    ConcurrentModification,
    DegenerateTable,
    ExperimentNotFound,
    ExternalRolloutFailure,
    InsufficientSample,
    InvalidExperiment,
    InvalidTransition,
    PeekguardError,
)
from peekguard.core.names import (  # noqa: F401
    Action,
    ExperimentStatus,
    MetricType,
    Namespace,
    TestType,
)
