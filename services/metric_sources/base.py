"""Metric source abstraction shared by analytics and database providers.

Sources are a closed union: ``AnalyticsSource`` wraps a provider that compares a
named metric between two absolute date ranges, ``DatabaseSource`` wraps a
row-count adapter backed by snapshots. Both normalise into
``MetricComparison`` before anything reaches the assessor.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Literal, Optional, Protocol, Sequence, Tuple, Union

from schemas.change import Direction, MetricComparison, PeriodComparison
from services.checkpoints.assessment import build_comparison

CORRELATION_METRICS: Tuple[str, ...] = ("bounce_rate", "pageviews", "unique_visitors")


class MetricSourceError(RuntimeError):
    """Raised by adapters when a comparison cannot be produced."""

    def __init__(self, message: str, *, source: Optional[str] = None) -> None:
        super().__init__(message)
        self.source = source


def round_half_up(value: float, digits: int = 1) -> float:
    factor = 10 ** digits
    return math.floor(value * factor + 0.5) / factor


def percent_change(before: float, after: float) -> float:
    """Relative change in percent, one decimal. A zero baseline maps to 100 or 0."""
    if before == 0:
        return 100.0 if after > 0 else 0.0
    return round_half_up((after - before) / before * 100)


def direction_for(change_percent: float) -> Direction:
    if change_percent > 1:
        return "up"
    if change_percent < -1:
        return "down"
    return "flat"


def make_period_comparison(metric: str, before: float, after: float) -> PeriodComparison:
    change = percent_change(before, after)
    return PeriodComparison(
        metric=metric,
        before=before,
        after=after,
        change_percent=change,
        direction=direction_for(change),
    )


class AnalyticsProvider(Protocol):
    name: str

    def compare_periods_absolute(
        self,
        metric: str,
        page_url: str,
        before_start: datetime,
        before_end: datetime,
        after_start: datetime,
        after_end: datetime,
    ) -> PeriodComparison: ...


class RowCountAdapter(Protocol):
    def list_tables(self) -> List[str]: ...

    def get_table_counts(self, tables: Sequence[str]) -> Dict[str, int]: ...


class SnapshotReader(Protocol):
    def counts_at_or_before(self, user_id: str, cutoff: datetime) -> Dict[str, int]: ...

    def counts_within(self, user_id: str, start: datetime, end: datetime) -> Dict[str, int]: ...


@dataclass(frozen=True)
class AnalyticsSource:
    provider: AnalyticsProvider
    metrics: Tuple[str, ...] = CORRELATION_METRICS
    kind: Literal["analytics"] = field(default="analytics", init=False)

    @property
    def name(self) -> str:
        return self.provider.name


@dataclass(frozen=True)
class DatabaseSource:
    adapter: RowCountAdapter
    snapshots: SnapshotReader
    name: str = "database"
    kind: Literal["database"] = field(default="database", init=False)


MetricSource = Union[AnalyticsSource, DatabaseSource]


def normalize_comparison(comparison: PeriodComparison, *, source: str) -> MetricComparison:
    return build_comparison(
        comparison.metric,
        comparison.before,
        comparison.after,
        comparison.change_percent,
        source=source,
    )


__all__ = [
    "AnalyticsProvider",
    "AnalyticsSource",
    "CORRELATION_METRICS",
    "DatabaseSource",
    "MetricSource",
    "MetricSourceError",
    "RowCountAdapter",
    "SnapshotReader",
    "direction_for",
    "make_period_comparison",
    "normalize_comparison",
    "percent_change",
    "round_half_up",
]
