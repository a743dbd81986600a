"""
peekguard.core.ledger
=====================

Append-only audit ledger built on ibis-framework.

Every evaluation cycle (aggregates, test result, horizon estimate, summary)
and every lifecycle transition is appended as a typed event. The ledger is the
audit trail of *why* an experiment did what it did; the record store holds
only the latest state.

- Backend-agnostic via ibis-framework (duckdb in memory by default)
- JSON payloads stored as strings, decoded by `unwrap_results`
- Automatic peekguard_version tracking

Examples
--------
>>> from peekguard.core.ledger import Ledger, create_connection
>>> from peekguard.core.names import Namespace
>>> ledger = Ledger(create_connection())
>>> ledger.write_event(
...     time_index="t1", namespace=Namespace.LIFECYCLE, kind="transition",
...     experiment_id="exp1", step_key="start", payload_type="Transition",
...     payload={"from": "draft", "to": "running"},
... )
>>> rows = ledger.unwrap_results(ledger.table.execute())
>>> rows[0]["payload"]["to"]
'running'
"""

from __future__ import annotations
import itertools
import json
import uuid as uuid_module
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Union

import ibis
import pandas as pd
from ibis import BaseBackend
from ibis.expr.types import Table

from peekguard.__version__ import __version__
from peekguard.core.names import ExperimentId, Namespace, StepKey, TimeIndex

NamespaceLike = Union[Namespace, str]


def get_ledger_schema() -> ibis.Schema:
    """Get the standardized ledger schema using ibis.Schema."""
    return ibis.schema(
        [
            ("uuid", "string"),
            ("seq", "int64"),
            ("ledger_name", "string"),
            ("time_index", "string"),
            ("ts", "timestamp"),
            ("namespace", "string"),
            ("kind", "string"),
            ("entity", "string"),
            ("snapshot_id", "string"),
            ("tag", "string"),
            ("payload_type", "string"),
            ("payload", "string"),  # JSON text
            ("peekguard_version", "string"),
        ]
    )


def _namespace_value(namespace: NamespaceLike) -> str:
    return namespace.value if isinstance(namespace, Namespace) else str(namespace)


class Ledger:
    """
    Append-only event table over an ibis connection.

    Responsibilities:
    - Schema guarantee and table lifecycle
    - Automatic ledger_name and peekguard_version injection
    - JSON payload wrapping/unwrapping

    Query construction is left to callers using ibis table expressions on
    `ledger.table`.
    """

    def __init__(
        self,
        connection: BaseBackend,
        ledger_name: str = "default",
        table_name: str = "ledger",
    ):
        """Initialize ledger with connection and names.

        Parameters
        ----------
        connection : BaseBackend
            Ibis backend connection
        ledger_name : str
            Name of this ledger instance (for multi-ledger support)
        table_name : str
            Name of the table in the backend
        """
        self.connection = connection
        self.ledger_name = ledger_name
        self.table_name = table_name
        self._seq = itertools.count()
        self._ensure_table_exists()

    def _ensure_table_exists(self) -> None:
        if self.table_name not in self.connection.list_tables():
            self.connection.create_table(self.table_name, schema=get_ledger_schema())

    @property
    def table(self) -> Table:
        """
        Ibis table filtered to this ledger's name.

        >>> ledger = Ledger(create_connection(), "audit")
        >>> ledger.table.filter(ledger.table.namespace == "stats").count().execute()
        0
        """
        table = self.connection.table(self.table_name)
        return table.filter(table.ledger_name == self.ledger_name)

    def write_event(
        self,
        *,
        time_index: Union[TimeIndex, str],
        namespace: NamespaceLike,
        kind: str,
        experiment_id: Union[ExperimentId, str],
        step_key: Union[StepKey, str],
        payload_type: str,
        payload: Dict[str, Any],
        tag: Optional[str] = None,
        ts: Optional[datetime] = None,
    ) -> None:
        """Append a typed event.

        Parameters
        ----------
        time_index : TimeIndex or str
            Evaluation cycle or logical clock the event belongs to
        namespace : NamespaceLike
            Event namespace
        kind : str
            Event kind
        experiment_id : ExperimentId or str
            Experiment identifier (stored in the `entity` column)
        step_key : StepKey or str
            Step key within the experiment
        payload_type : str
            Name of the payload shape
        payload : dict
            JSON-serialisable payload
        tag : str, optional
            Optional tag for filtering
        ts : datetime, optional
            Timestamp, defaults to now
        """
        if ts is None:
            ts = datetime.now(timezone.utc)
        elif ts.tzinfo is None:
            ts = ts.replace(tzinfo=timezone.utc)

        record = {
            "uuid": str(uuid_module.uuid4()),
            "seq": next(self._seq),
            "ledger_name": self.ledger_name,
            "time_index": str(time_index),
            "ts": ts.astimezone(timezone.utc).replace(tzinfo=None),
            "namespace": _namespace_value(namespace),
            "kind": kind,
            "entity": str(experiment_id),
            "snapshot_id": str(step_key),
            "tag": tag or "",
            "payload_type": payload_type,
            "payload": json.dumps(payload, separators=(",", ":"), default=str),
            "peekguard_version": __version__,
        }
        self.connection.insert(self.table_name, pd.DataFrame([record]))

    def events(
        self,
        *,
        experiment_id: Optional[str] = None,
        namespace: Optional[NamespaceLike] = None,
        tag: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        """Unwrapped events in insertion order, optionally filtered."""
        t = self.table
        if experiment_id is not None:
            t = t.filter(t.entity == str(experiment_id))
        if namespace is not None:
            t = t.filter(t.namespace == _namespace_value(namespace))
        if tag is not None:
            t = t.filter(t.tag == tag)
        return self.unwrap_results(t.order_by(t.seq).execute())

    def latest(
        self,
        *,
        experiment_id: str,
        namespace: NamespaceLike,
        tag: Optional[str] = None,
    ) -> Optional[Dict[str, Any]]:
        rows = self.events(experiment_id=experiment_id, namespace=namespace, tag=tag)
        return rows[-1] if rows else None

    def unwrap_results(self, df: Any) -> List[Dict[str, Any]]:
        """
        Decode the payload column of a query result.

        Takes a pandas DataFrame from ibis query execution and returns
        records with the JSON payload parsed.
        """
        records: List[Dict[str, Any]] = df.to_dict("records")
        for record in records:
            payload = record.get("payload")
            if isinstance(payload, str):
                try:
                    record["payload"] = json.loads(payload)
                except json.JSONDecodeError:
                    pass
        return records


def create_connection(backend: str = "duckdb") -> BaseBackend:
    """Create an in-memory ibis connection for the ledger.

    Parameters
    ----------
    backend : str
        Backend type; only "duckdb" supports inserts.
    """
    if backend == "duckdb":
        return ibis.duckdb.connect(":memory:")
    raise ValueError(f"Unsupported backend: {backend}. Use 'duckdb'.")
