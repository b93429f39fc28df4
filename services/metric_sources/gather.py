"""Concurrent fan-out over the configured metric sources for one checkpoint."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import List, Sequence

from core.env import env_float
from core.logging import get_logger
from schemas.change import CheckpointWindows, MetricComparison
from services.metric_sources.base import (
    AnalyticsSource,
    DatabaseSource,
    MetricSource,
    MetricSourceError,
    normalize_comparison,
)
from services.metric_sources.row_counts import collect_row_count_metrics

logger = get_logger(__name__)

METRIC_SOURCE_TIMEOUT_SECONDS = env_float("METRIC_SOURCE_TIMEOUT_SECONDS", 20.0, minimum=0.1)


@dataclass
class GatherResult:
    metrics: List[MetricComparison] = field(default_factory=list)
    data_sources: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)


def _collect_analytics(source: AnalyticsSource, page_url: str, windows: CheckpointWindows) -> List[MetricComparison]:
    metrics: List[MetricComparison] = []
    for metric in source.metrics:
        try:
            comparison = source.provider.compare_periods_absolute(
                metric,
                page_url,
                windows.before_start,
                windows.before_end,
                windows.after_start,
                windows.after_end,
            )
        except MetricSourceError as exc:
            logger.warning("Metric %s from %s unavailable: %s", metric, source.name, exc)
            continue
        metrics.append(normalize_comparison(comparison, source=source.name))
    return metrics


def collect_source(
    source: MetricSource,
    *,
    page_url: str,
    user_id: str,
    windows: CheckpointWindows,
) -> List[MetricComparison]:
    """Blocking collection for a single source."""

    if isinstance(source, AnalyticsSource):
        return _collect_analytics(source, page_url, windows)
    if isinstance(source, DatabaseSource):
        return collect_row_count_metrics(source, user_id, windows)
    raise TypeError(f"unsupported metric source: {type(source).__name__}")


async def gather_metrics(
    sources: Sequence[MetricSource],
    *,
    page_url: str,
    user_id: str,
    windows: CheckpointWindows,
    timeout: float = METRIC_SOURCE_TIMEOUT_SECONDS,
) -> GatherResult:
    """Query every source concurrently; a failing or slow source only loses its own metrics."""

    async def _run(source: MetricSource) -> List[MetricComparison]:
        return await asyncio.wait_for(
            asyncio.to_thread(collect_source, source, page_url=page_url, user_id=user_id, windows=windows),
            timeout=timeout,
        )

    outcomes = await asyncio.gather(*[_run(source) for source in sources], return_exceptions=True)

    result = GatherResult()
    for source, outcome in zip(sources, outcomes):
        if isinstance(outcome, asyncio.TimeoutError):
            logger.warning("Metric source %s timed out after %.1fs", source.name, timeout)
            result.failed.append(source.name)
        elif isinstance(outcome, MetricSourceError):
            logger.warning("Metric source %s failed: %s", source.name, outcome)
            result.failed.append(source.name)
        elif isinstance(outcome, Exception):
            logger.warning("Metric source %s raised %s: %s", source.name, type(outcome).__name__, outcome)
            result.failed.append(source.name)
        elif isinstance(outcome, BaseException):
            raise outcome
        else:
            result.metrics.extend(outcome)
            result.data_sources.append(source.name)
    return result


__all__ = ["GatherResult", "METRIC_SOURCE_TIMEOUT_SECONDS", "collect_source", "gather_metrics"]
