"""
peekguard.backends.polars.provider
==================================

Metric aggregate provider over a Polars frame of daily rows.

The warehouse that produces the rows is external; this module only folds
them into cumulative per-variant aggregates. One row is one (experiment,
metric, variant, day) cell of *new* observations that day:

=============  ===========  ===============================================
column         dtype        meaning
=============  ===========  ===============================================
experiment_id  Utf8
metric         Utf8
variant        Utf8
day            Date
exposed        Int64        newly exposed users
successes      Int64        conversions among them (conversion metrics)
sum_value      Float64      sum of the metric (continuous metrics)
sum_squares    Float64      sum of squared values (continuous metrics)
values         List(Float)  optional raw observations (rank tests)
=============  ===========  ===============================================

Doctest (smoke):
>>> import asyncio, datetime as dt
>>> provider = PolarsAggregateProvider.from_rows([
...     {"experiment_id": "e1", "metric": "cr", "variant": "A",
...      "day": dt.date(2024, 1, 1), "exposed": 100, "successes": 10},
...     {"experiment_id": "e1", "metric": "cr", "variant": "B",
...      "day": dt.date(2024, 1, 1), "exposed": 100, "successes": 12},
... ])
>>> aggs = asyncio.run(provider.get_aggregates("e1", "cr", variants=["A", "B"]))
>>> aggs["B"].successes
12
"""

from __future__ import annotations
from datetime import date, datetime
from typing import Any, Dict, Iterable, List, Mapping, Optional, Protocol, Sequence, Union

import polars as pl

from peekguard.core.models import VariantAggregate

DateLike = Union[date, datetime]

DAILY_SCHEMA = {
    "experiment_id": pl.Utf8,
    "metric": pl.Utf8,
    "variant": pl.Utf8,
    "day": pl.Date,
    "exposed": pl.Int64,
    "successes": pl.Int64,
    "sum_value": pl.Float64,
    "sum_squares": pl.Float64,
    "values": pl.List(pl.Float64),
}


class AggregateProvider(Protocol):
    """Source of cumulative aggregates and daily enrollment."""

    async def get_aggregates(
        self,
        experiment_id: str,
        metric: str,
        as_of: Optional[DateLike] = None,
        variants: Optional[Sequence[str]] = None,
    ) -> Dict[str, VariantAggregate]: ...

    async def daily_exposures(
        self,
        experiment_id: str,
        metric: str,
        as_of: Optional[DateLike] = None,
    ) -> List[int]: ...


def _as_date(value: DateLike) -> date:
    return value.date() if isinstance(value, datetime) else value


class PolarsAggregateProvider:
    """In-memory provider backed by a Polars DataFrame of daily rows."""

    def __init__(self, frame: Optional[pl.DataFrame] = None) -> None:
        self._frame = _conform(frame) if frame is not None else pl.DataFrame(schema=DAILY_SCHEMA)

    @classmethod
    def from_rows(cls, rows: Iterable[Mapping[str, Any]]) -> "PolarsAggregateProvider":
        return cls(_rows_frame(rows))

    @property
    def frame(self) -> pl.DataFrame:
        return self._frame

    def append(self, rows: Iterable[Mapping[str, Any]]) -> None:
        """Add daily rows (e.g. the next day's warehouse export)."""
        self._frame = pl.concat([self._frame, _rows_frame(rows)], how="vertical")

    def _select(
        self, experiment_id: str, metric: str, as_of: Optional[DateLike]
    ) -> pl.DataFrame:
        df = self._frame.filter(
            (pl.col("experiment_id") == experiment_id) & (pl.col("metric") == metric)
        )
        if as_of is not None:
            df = df.filter(pl.col("day") <= _as_date(as_of))
        return df

    async def get_aggregates(
        self,
        experiment_id: str,
        metric: str,
        as_of: Optional[DateLike] = None,
        variants: Optional[Sequence[str]] = None,
    ) -> Dict[str, VariantAggregate]:
        """
        Cumulative aggregates per variant up to and including `as_of`.

        With `variants`, the result follows that order and variants without
        rows get empty aggregates; otherwise the order of first appearance.
        """
        df = self._select(experiment_id, metric, as_of)
        grouped = df.group_by("variant", maintain_order=True).agg(
            pl.col("exposed").sum(),
            pl.col("successes").sum(),
            pl.col("sum_value").sum(),
            pl.col("sum_squares").sum(),
            pl.col("values").explode().drop_nulls().alias("values"),
            pl.col("values").is_not_null().any().alias("has_values"),
        )
        found: Dict[str, VariantAggregate] = {}
        for row in grouped.iter_rows(named=True):
            found[row["variant"]] = VariantAggregate(
                exposed=int(row["exposed"] or 0),
                successes=int(row["successes"] or 0),
                sum_value=float(row["sum_value"] or 0.0),
                sum_squares=float(row["sum_squares"] or 0.0),
                values=tuple(row["values"]) if row["has_values"] else None,
            )
        if variants is None:
            return found
        return {name: found.get(name, VariantAggregate(exposed=0)) for name in variants}

    async def daily_exposures(
        self,
        experiment_id: str,
        metric: str,
        as_of: Optional[DateLike] = None,
    ) -> List[int]:
        """New exposures per calendar day (all variants), oldest first."""
        df = self._select(experiment_id, metric, as_of)
        if df.height == 0:
            return []
        daily = df.group_by("day").agg(pl.col("exposed").sum()).sort("day")
        # days without any rows still count toward the enrollment rate,
        # including the stalled tail up to as_of
        last_day = daily["day"].max() if as_of is None else _as_date(as_of)
        calendar = pl.DataFrame(
            {"day": pl.date_range(daily["day"].min(), last_day, "1d", eager=True)}
        )
        filled = calendar.join(daily, on="day", how="left").with_columns(
            pl.col("exposed").fill_null(0)
        )
        return [int(v) for v in filled["exposed"].to_list()]


def _rows_frame(rows: Iterable[Mapping[str, Any]]) -> pl.DataFrame:
    records = []
    for row in rows:
        record = {name: row.get(name) for name in DAILY_SCHEMA}
        if record["day"] is not None:
            record["day"] = _as_date(record["day"])
        records.append(record)
    return _conform(pl.DataFrame(records, schema=DAILY_SCHEMA))


def _conform(frame: pl.DataFrame) -> pl.DataFrame:
    """Add missing optional columns and cast to the daily schema."""
    missing = [name for name in DAILY_SCHEMA if name not in frame.columns]
    if missing:
        frame = frame.with_columns(
            [pl.lit(None, dtype=DAILY_SCHEMA[name]).alias(name) for name in missing]
        )
    frame = frame.select(
        [pl.col(name).cast(dtype) for name, dtype in DAILY_SCHEMA.items()]
    )
    return frame.with_columns(
        pl.col("successes").fill_null(0),
        pl.col("sum_value").fill_null(0.0),
        pl.col("sum_squares").fill_null(0.0),
    )
