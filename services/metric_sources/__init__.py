"""Metric sources feeding checkpoint evaluation."""

from .base import (  # noqa: F401
    CORRELATION_METRICS,
    AnalyticsSource,
    DatabaseSource,
    MetricSource,
    MetricSourceError,
    direction_for,
    make_period_comparison,
    normalize_comparison,
    percent_change,
)
from .gather import GatherResult, gather_metrics  # noqa: F401
from .posthog import PostHogConfigError, PostHogProvider  # noqa: F401
from .row_counts import (  # noqa: F401
    SnapshotRowCountStore,
    SqlRowCountAdapter,
    collect_row_count_metrics,
    identify_conversion_tables,
)
