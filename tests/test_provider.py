"""Tests for peekguard.backends.polars.provider"""

from datetime import date, timedelta

import polars as pl
import pytest

from peekguard.backends.polars.provider import DAILY_SCHEMA, PolarsAggregateProvider
from peekguard.stats.horizon import PowerAndHorizonEstimator

from tests.conftest import NOW, daily_rows


@pytest.fixture
def provider() -> PolarsAggregateProvider:
    return PolarsAggregateProvider.from_rows(
        daily_rows("e1", "cr", {"A": (100, 10), "B": (100, 12)}, days=5)
    )


class TestAggregates:
    @pytest.mark.asyncio
    async def test_cumulative_sums(self, provider):
        aggs = await provider.get_aggregates("e1", "cr")
        assert list(aggs) == ["A", "B"]
        assert aggs["A"].exposed == 500
        assert aggs["B"].successes == 60
        assert aggs["B"].values is None

    @pytest.mark.asyncio
    async def test_as_of_cuts_off_later_days(self, provider):
        aggs = await provider.get_aggregates("e1", "cr", as_of=NOW - timedelta(days=2))
        assert aggs["A"].exposed == 300

    @pytest.mark.asyncio
    async def test_requested_variant_order_and_missing_variants(self, provider):
        aggs = await provider.get_aggregates("e1", "cr", variants=["B", "A", "C"])
        assert list(aggs) == ["B", "A", "C"]
        assert aggs["C"].exposed == 0

    @pytest.mark.asyncio
    async def test_other_metrics_are_ignored(self, provider):
        assert await provider.get_aggregates("e1", "revenue") == {}
        assert await provider.get_aggregates("e2", "cr") == {}

    @pytest.mark.asyncio
    async def test_raw_values_are_concatenated(self):
        provider = PolarsAggregateProvider.from_rows(
            [
                {"experiment_id": "e1", "metric": "rev", "variant": "A", "day": date(2024, 1, 1),
                 "exposed": 2, "sum_value": 3.0, "sum_squares": 5.0, "values": [1.0, 2.0]},
                {"experiment_id": "e1", "metric": "rev", "variant": "A", "day": date(2024, 1, 2),
                 "exposed": 1, "sum_value": 4.0, "sum_squares": 16.0, "values": [4.0]},
            ]
        )
        agg = (await provider.get_aggregates("e1", "rev"))["A"]
        assert agg.values == (1.0, 2.0, 4.0)
        assert agg.mean == pytest.approx(7.0 / 3)
        assert agg.successes == 0

    @pytest.mark.asyncio
    async def test_append(self, provider):
        tomorrow = NOW.date() + timedelta(days=1)
        provider.append(daily_rows("e1", "cr", {"A": (50, 5)}, days=1, end=tomorrow))
        assert (await provider.get_aggregates("e1", "cr"))["A"].exposed == 550


class TestDailyExposures:
    @pytest.mark.asyncio
    async def test_sums_variants_per_day(self, provider):
        assert await provider.daily_exposures("e1", "cr") == [200] * 5

    @pytest.mark.asyncio
    async def test_fills_calendar_gaps(self):
        rows = daily_rows("e1", "cr", {"A": (10, 1)}, days=1, end=date(2024, 1, 1))
        rows += daily_rows("e1", "cr", {"A": (30, 3)}, days=1, end=date(2024, 1, 4))
        provider = PolarsAggregateProvider.from_rows(rows)
        assert await provider.daily_exposures("e1", "cr") == [10, 0, 0, 30]

    @pytest.mark.asyncio
    async def test_stalled_tail_runs_to_as_of(self):
        per_variant = {"A": (100, 10), "B": (100, 12)}
        rows = daily_rows("e1", "cr", per_variant, days=7, end=date(2024, 6, 7))
        provider = PolarsAggregateProvider.from_rows(rows)
        daily = await provider.daily_exposures("e1", "cr", as_of=date(2024, 6, 20))
        assert daily == [200] * 7 + [0] * 13
        assert PowerAndHorizonEstimator().trailing_enrollment_rate(daily) == 0.0

    @pytest.mark.asyncio
    async def test_as_of_truncates(self, provider):
        daily = await provider.daily_exposures("e1", "cr", as_of=NOW - timedelta(days=2))
        assert daily == [200] * 3

    @pytest.mark.asyncio
    async def test_empty(self):
        assert await PolarsAggregateProvider().daily_exposures("e1", "cr") == []


def test_frame_is_conformed_to_schema():
    frame = pl.DataFrame(
        {
            "experiment_id": ["e1"],
            "metric": ["cr"],
            "variant": ["A"],
            "day": [date(2024, 1, 1)],
            "exposed": [10],
        }
    )
    provider = PolarsAggregateProvider(frame)
    assert provider.frame.columns == list(DAILY_SCHEMA)
    assert provider.frame["successes"].to_list() == [0]
