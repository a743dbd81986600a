"""
peekguard.core.store
====================

In-memory durable-record-store stand-in keyed by experiment id.

State transitions are the only writes to shared experiment state and must be
atomic, so every write is a compare-and-set on the record's `(status,
version)`. Deleted ids are tombstoned so that a replayed delete can be told
apart from a delete on an id that never existed.

Examples
--------
>>> from peekguard.core.store import ExperimentStore
>>> from peekguard.core.models import Experiment, Variant, MetricSpec
>>> store = ExperimentStore()
>>> exp = Experiment(id="e1", name="n", hypothesis="h",
...                  variants=(Variant("A", 50), Variant("B", 50)),
...                  primary_metric=MetricSpec("cr"), planned_duration_days=7)
>>> _ = store.insert(exp)
>>> store.get("e1").version
0
"""

from __future__ import annotations
import threading
import uuid
from dataclasses import replace
from typing import Dict, List, Optional, Set

from peekguard.core.errors import ConcurrentModification, ExperimentNotFound, InvalidExperiment
from peekguard.core.models import Experiment
from peekguard.core.names import ExperimentStatus


def new_experiment_id() -> str:
    return str(uuid.uuid4())


class ExperimentStore:
    """Thread-safe record store with compare-and-set writes."""

    def __init__(self) -> None:
        self._records: Dict[str, Experiment] = {}
        self._tombstones: Set[str] = set()
        self._lock = threading.Lock()

    def insert(self, experiment: Experiment) -> Experiment:
        with self._lock:
            if experiment.id in self._records or experiment.id in self._tombstones:
                raise InvalidExperiment(f"Experiment id already used: {experiment.id}")
            self._records[experiment.id] = experiment
            return experiment

    def get(self, experiment_id: str) -> Experiment:
        with self._lock:
            try:
                return self._records[experiment_id]
            except KeyError:
                raise ExperimentNotFound(experiment_id) from None

    def find(self, experiment_id: str) -> Optional[Experiment]:
        with self._lock:
            return self._records.get(experiment_id)

    def list(self, status: Optional[ExperimentStatus] = None) -> List[Experiment]:
        with self._lock:
            records = list(self._records.values())
        if status is not None:
            records = [r for r in records if r.status is status]
        return sorted(records, key=lambda r: r.created_at)

    def is_deleted(self, experiment_id: str) -> bool:
        with self._lock:
            return experiment_id in self._tombstones

    def compare_and_set(self, expected: Experiment, new: Experiment) -> Experiment:
        """
        Replace `expected` with `new` if nobody wrote in between.

        The stored record must still have the expected status and version.
        The written record gets `version = expected.version + 1`.
        """
        with self._lock:
            current = self._records.get(expected.id)
            if current is None:
                raise ConcurrentModification(f"Experiment {expected.id} was removed")
            if current.status is not expected.status or current.version != expected.version:
                raise ConcurrentModification(
                    f"Experiment {expected.id} changed: expected "
                    f"{expected.status.value}@v{expected.version}, found "
                    f"{current.status.value}@v{current.version}"
                )
            written = replace(new, version=expected.version + 1)
            self._records[expected.id] = written
            return written

    def remove(self, expected: Experiment) -> None:
        """Compare-and-delete; leaves a tombstone."""
        with self._lock:
            current = self._records.get(expected.id)
            if current is None or current.version != expected.version:
                raise ConcurrentModification(f"Experiment {expected.id} changed before delete")
            del self._records[expected.id]
            self._tombstones.add(expected.id)
