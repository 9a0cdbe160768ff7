"""
Tests for the performance_daily backed metrics provider.
"""

from datetime import date, datetime

import pytest

from autopilot.models import PerformanceDaily
from autopilot.services.metrics_provider import DateRange, DatabaseMetricsProvider, EntityMetrics

PROFILE_ID = "1234567890"
WEEK = DateRange(date(2026, 3, 3), date(2026, 3, 9))


async def _seed(session_factory, *rows):
    async with session_factory() as db:
        for row in rows:
            values = {"profile_id": PROFILE_ID, "entity_type": "target", "campaign_id": "c-1", "ad_group_id": "ag-1"}
            values.update(row)
            db.add(PerformanceDaily(**values))
        await db.commit()


def test_trailing_range_excludes_today():
    window = DateRange.trailing(7, datetime(2026, 3, 10, 9, 30))
    assert (window.start, window.end, window.days) == (date(2026, 3, 3), date(2026, 3, 9), 7)


def test_ratios_need_a_denominator():
    assert EntityMetrics("target", "t-1", spend=30.0, sales=100.0).acos == 30.0
    assert EntityMetrics("target", "t-1", spend=30.0, sales=0.0).acos is None
    assert EntityMetrics("target", "t-1", spend=0.0, sales=10.0).roas is None
    assert EntityMetrics("target", "t-1", spend=5.0, clicks=10).cpc == 0.5


@pytest.mark.anyio
async def test_aggregates_per_entity_within_range(session_factory):
    await _seed(
        session_factory,
        {"entity_id": "t-1", "date": "2026-03-04", "spend": 10.0, "sales": 20.0, "clicks": 5, "bid_micros": 900_000},
        {"entity_id": "t-1", "date": "2026-03-05", "spend": 5.0, "sales": None, "clicks": 3, "bid_micros": 1_000_000},
        {"entity_id": "t-1", "date": "2026-03-10", "spend": 99.0, "sales": 0.0, "clicks": 40},
        {"entity_id": "t-2", "date": "2026-03-06", "spend": None, "sales": None, "clicks": None},
        {"entity_id": "kw-1", "entity_type": "keyword", "date": "2026-03-06", "spend": 7.0},
        {"entity_id": "t-9", "profile_id": "other", "date": "2026-03-06", "spend": 7.0},
    )

    metrics = {m.entity_id: m for m in await DatabaseMetricsProvider(session_factory).get_metrics(PROFILE_ID, "target", WEEK)}

    assert set(metrics) == {"t-1", "t-2"}
    assert metrics["t-1"].spend == 15.0
    assert metrics["t-1"].sales == 20.0
    assert metrics["t-1"].clicks == 8
    assert metrics["t-1"].bid_micros == 1_000_000
    assert metrics["t-2"].spend is None


@pytest.mark.anyio
async def test_daily_rows_carry_their_day(session_factory):
    await _seed(
        session_factory,
        {"entity_id": "c-1", "entity_type": "campaign", "date": "2026-03-08", "spend": 40.0},
        {"entity_id": "c-1", "entity_type": "campaign", "date": "2026-03-09", "spend": 120.0},
    )

    daily = await DatabaseMetricsProvider(session_factory).get_daily_metrics(PROFILE_ID, "campaign", WEEK)

    assert [(m.day, m.spend) for m in daily] == [(date(2026, 3, 8), 40.0), (date(2026, 3, 9), 120.0)]
