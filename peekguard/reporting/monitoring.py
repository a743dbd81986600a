"""
peekguard.reporting.monitoring
==============================

Progress view of monitoring history, read back from the audit ledger.

The scheduler appends a `signals/summary` event per evaluation and a
`stats/test` event whenever a test could be run. This reporter turns them
into one Polars row per evaluation cycle and experiment.

Examples
--------
>>> from peekguard.core.ledger import Ledger, create_connection
>>> from peekguard.reporting.monitoring import MonitoringReporter
>>> rep = MonitoringReporter.from_ledger(Ledger(create_connection(), "test"))
>>> rep.progress_table().height
0
"""

from __future__ import annotations
from dataclasses import dataclass
from typing import Optional, TYPE_CHECKING

import polars as pl

from peekguard.core.names import SummaryTag, TestResultTag, TransitionTag

if TYPE_CHECKING:
    from peekguard.core.ledger import Ledger

PROGRESS_COLUMNS = [
    "experiment_id",
    "cycle",
    "ts",
    "elapsed_days",
    "progress_percent",
    "delta",
    "p_value",
    "significance_band",
    "power",
    "effect_size",
    "ci_lower",
    "ci_upper",
    "test_type",
    "samples_remaining",
    "eta_days",
    "winner",
    "stale",
]


def _json(path: str) -> pl.Expr:
    return pl.col("payload").str.json_path_match(path)


@dataclass
class MonitoringReporter:
    """Monitoring history view over a Polars frame of ledger rows."""

    df: pl.DataFrame

    @classmethod
    def from_ledger(cls, ledger: "Ledger") -> "MonitoringReporter":
        table = ledger.table
        table = table.mutate(uuid=table.uuid.cast("string"))
        return cls(table.to_polars())

    def _events(self, tag: str, experiment_id: Optional[str]) -> pl.DataFrame:
        df = self.df.filter(pl.col("tag") == tag)
        if experiment_id is not None:
            df = df.filter(pl.col("entity") == experiment_id)
        return df.sort("seq")

    def progress_table(self, experiment_id: Optional[str] = None) -> pl.DataFrame:
        """
        One row per evaluation with numeric columns:
        elapsed_days, progress_percent, delta, p_value, power, effect_size,
        ci_lower and ci_upper (interval around delta), samples_remaining,
        eta_days, plus winner, test_type and stale.
        """
        summaries = self._events(SummaryTag, experiment_id)
        if summaries.height == 0:
            return pl.DataFrame(schema={c: pl.Utf8 for c in PROGRESS_COLUMNS})

        summaries = summaries.select(
            pl.col("entity").alias("experiment_id"),
            pl.col("snapshot_id").alias("cycle"),
            pl.col("ts"),
            _json("$.elapsedDays").cast(pl.Int64).alias("elapsed_days"),
            _json("$.progressPercent").cast(pl.Float64).alias("progress_percent"),
            _json("$.keyMetrics.deltaValue").cast(pl.Float64).alias("delta"),
            _json("$.keyMetrics.pValue").cast(pl.Float64).alias("p_value"),
            _json("$.keyMetrics.significanceBand").alias("significance_band"),
            _json("$.keyMetrics.power").cast(pl.Float64).alias("power"),
            _json("$.samplesRemaining").cast(pl.Int64).alias("samples_remaining"),
            _json("$.etaDays").cast(pl.Int64).alias("eta_days"),
            _json("$.winnerVariant").alias("winner"),
            (_json("$.stale") == "true").alias("stale"),
        )
        tests = self._events(TestResultTag, experiment_id).select(
            pl.col("entity").alias("experiment_id"),
            pl.col("snapshot_id").alias("cycle"),
            _json("$.effectSize").cast(pl.Float64).alias("effect_size"),
            _json("$.confidenceInterval.lower").cast(pl.Float64).alias("ci_lower"),
            _json("$.confidenceInterval.upper").cast(pl.Float64).alias("ci_upper"),
            _json("$.testType").alias("test_type"),
        )
        joined = summaries.join(tests, on=["experiment_id", "cycle"], how="left")
        return joined.select(PROGRESS_COLUMNS)

    def transitions(self, experiment_id: Optional[str] = None) -> pl.DataFrame:
        """Lifecycle transitions in order: action, from, to, version."""
        events = self._events(TransitionTag, experiment_id)
        return events.select(
            pl.col("entity").alias("experiment_id"),
            pl.col("ts"),
            _json("$.action").alias("action"),
            _json("$.from").alias("from_status"),
            _json("$.to").alias("to_status"),
            _json("$.version").cast(pl.Int64).alias("version"),
        )
