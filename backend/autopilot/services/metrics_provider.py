"""
Metrics Provider: read-only access to aggregated performance data.

The automation core never ingests reports; it reads per-entity aggregates
from whatever implements MetricsProvider. The default implementation reads
the performance_daily fact table that the reporting ETL maintains.
"""

import logging
from dataclasses import dataclass, field, replace
from datetime import date, datetime, timedelta
from typing import Optional, Protocol
from sqlalchemy import select
from sqlalchemy.ext.asyncio import async_sessionmaker
from autopilot.models import PerformanceDaily

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DateRange:
    """Inclusive range of calendar dates."""
    start: date
    end: date

    @classmethod
    def trailing(cls, days: int, now: datetime) -> "DateRange":
        """The `days` complete days before today. Today's partial data is excluded."""
        today = now.date()
        return cls(start=today - timedelta(days=days), end=today - timedelta(days=1))

    @classmethod
    def single(cls, day: date) -> "DateRange":
        return cls(start=day, end=day)

    @property
    def days(self) -> int:
        return (self.end - self.start).days + 1


@dataclass(frozen=True)
class EntityMetrics:
    """
    Aggregated metrics for one entity over a date range (or one day when
    `day` is set). Metric fields are None when the source had no data,
    which is different from a measured zero.
    """
    entity_type: str
    entity_id: str
    campaign_id: Optional[str] = None
    ad_group_id: Optional[str] = None
    name: Optional[str] = None
    match_type: Optional[str] = None
    bid_micros: Optional[int] = None
    daily_budget_micros: Optional[int] = None
    spend: Optional[float] = None
    sales: Optional[float] = None
    clicks: Optional[int] = None
    impressions: Optional[int] = None
    conversions: Optional[int] = None
    budget_utilization: Optional[float] = None
    day: Optional[date] = None

    @property
    def acos(self) -> Optional[float]:
        """spend / sales as a percentage. No sales means no signal, not infinity."""
        if self.spend is None or not self.sales:
            return None
        return self.spend / self.sales * 100

    @property
    def roas(self) -> Optional[float]:
        if self.sales is None or not self.spend:
            return None
        return self.sales / self.spend

    @property
    def cpc(self) -> Optional[float]:
        if self.spend is None or not self.clicks:
            return None
        return self.spend / self.clicks


@dataclass
class ProfileMetrics:
    """Everything a playbook template needs about one profile, keyed by scope."""
    profile_id: str
    date_range: DateRange
    by_scope: dict[str, list[EntityMetrics]] = field(default_factory=dict)

    def scope(self, entity_type: str) -> list[EntityMetrics]:
        return self.by_scope.get(entity_type, [])


class MetricsProvider(Protocol):
    async def get_metrics(
        self, profile_id: str, entity_scope: str, date_range: DateRange,
    ) -> list[EntityMetrics]:
        """One aggregate per entity in scope over the range."""
        ...

    async def get_daily_metrics(
        self, profile_id: str, entity_scope: str, date_range: DateRange,
    ) -> list[EntityMetrics]:
        """One row per entity per day, with `day` set."""
        ...


def _sum(values) -> Optional[float]:
    present = [v for v in values if v is not None]
    if not present:
        return None
    return sum(present)


def _aggregate(rows: list[PerformanceDaily]) -> EntityMetrics:
    """Rows for one entity, oldest first. Attributes come from the most recent row."""
    latest = rows[-1]
    return EntityMetrics(
        entity_type=latest.entity_type,
        entity_id=latest.entity_id,
        campaign_id=latest.campaign_id,
        ad_group_id=latest.ad_group_id,
        name=latest.entity_name,
        match_type=latest.match_type,
        bid_micros=latest.bid_micros,
        daily_budget_micros=latest.daily_budget_micros,
        spend=_sum(r.spend for r in rows),
        sales=_sum(r.sales for r in rows),
        clicks=_sum(r.clicks for r in rows),
        impressions=_sum(r.impressions for r in rows),
        conversions=_sum(r.conversions for r in rows),
        budget_utilization=latest.budget_utilization,
    )


class DatabaseMetricsProvider:
    """MetricsProvider backed by the performance_daily table."""

    def __init__(self, session_factory: async_sessionmaker):
        self.session_factory = session_factory

    async def _rows(self, profile_id: str, entity_scope: str, date_range: DateRange) -> list[PerformanceDaily]:
        stmt = (
            select(PerformanceDaily)
            .where(
                PerformanceDaily.profile_id == str(profile_id),
                PerformanceDaily.entity_type == entity_scope,
                PerformanceDaily.date >= date_range.start.isoformat(),
                PerformanceDaily.date <= date_range.end.isoformat(),
            )
            .order_by(PerformanceDaily.entity_id, PerformanceDaily.date)
        )
        async with self.session_factory() as db:
            result = await db.execute(stmt)
            return list(result.scalars().all())

    async def get_metrics(self, profile_id: str, entity_scope: str, date_range: DateRange) -> list[EntityMetrics]:
        rows = await self._rows(profile_id, entity_scope, date_range)
        grouped: dict[str, list[PerformanceDaily]] = {}
        for row in rows:
            grouped.setdefault(row.entity_id, []).append(row)
        metrics = [_aggregate(entity_rows) for entity_rows in grouped.values()]
        logger.debug(
            f"Metrics for profile {profile_id} {entity_scope} "
            f"{date_range.start}..{date_range.end}: {len(metrics)} entities from {len(rows)} rows"
        )
        return metrics

    async def get_daily_metrics(self, profile_id: str, entity_scope: str, date_range: DateRange) -> list[EntityMetrics]:
        rows = await self._rows(profile_id, entity_scope, date_range)
        return [replace(_aggregate([row]), day=date.fromisoformat(row.date)) for row in rows]
