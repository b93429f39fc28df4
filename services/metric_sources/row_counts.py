"""Database row-count metrics built from discovery snapshots and live counts."""

from __future__ import annotations

import re
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Sequence

from sqlalchemy import func, inspect, select, table
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from core.logging import get_logger
from database import SessionLocal
from models.change import AnalyticsSnapshot
from schemas.change import CheckpointWindows, MetricComparison
from services.checkpoints.assessment import build_comparison
from services.metric_sources.base import DatabaseSource, MetricSourceError, percent_change

logger = get_logger(__name__)

DISCOVER_TABLES_TOOL = "discover_tables"
MAX_TABLE_NAME_LENGTH = 63

CONVERSION_TABLE_PATTERNS = (
    re.compile(r"^(users?|profiles?|accounts?|signups?|registrations?)$", re.IGNORECASE),
    re.compile(r"^(orders?|purchases?|transactions?|payments?|checkouts?)$", re.IGNORECASE),
    re.compile(r"^(leads?|contacts?|inquir(y|ies)|waitlist|subscribers?)$", re.IGNORECASE),
    re.compile(r"^(bookings?|appointments?|reservations?)$", re.IGNORECASE),
    re.compile(r"^(conversions?|events?|submissions?)$", re.IGNORECASE),
)
_SAFE_TABLE_NAME = re.compile(r"^[a-zA-Z_][a-zA-Z0-9_]*$")


def is_safe_table_name(name: str) -> bool:
    return bool(_SAFE_TABLE_NAME.match(name)) and len(name) <= MAX_TABLE_NAME_LENGTH


def identify_conversion_tables(names: Sequence[str]) -> List[str]:
    """Tables whose names look like signups, orders, leads, bookings or events."""
    return [name for name in names if any(pattern.match(name) for pattern in CONVERSION_TABLE_PATTERNS)]


class SqlRowCountAdapter:
    """Counts rows in the tables of a SQLAlchemy engine."""

    def __init__(self, engine: Engine) -> None:
        self._engine = engine

    def list_tables(self) -> List[str]:
        try:
            names = inspect(self._engine).get_table_names()
        except SQLAlchemyError as exc:
            raise MetricSourceError(f"table discovery failed: {exc}", source="database") from exc
        return [name for name in names if is_safe_table_name(name)]

    def get_table_counts(self, tables: Sequence[str]) -> Dict[str, int]:
        counts: Dict[str, int] = {}
        try:
            conn = self._engine.connect()
        except SQLAlchemyError as exc:
            raise MetricSourceError(f"database connection failed: {exc}", source="database") from exc
        with conn:
            for name in tables:
                if not is_safe_table_name(name):
                    logger.warning("Skipping unsafe table name %r.", name)
                    continue
                try:
                    counts[name] = int(conn.execute(select(func.count()).select_from(table(name))).scalar() or 0)
                except SQLAlchemyError as exc:
                    logger.warning("Row count failed for %s: %s", name, exc)
        return counts


def _counts_from_output(output: Any) -> Dict[str, int]:
    if not isinstance(output, dict):
        return {}
    tables = output.get("tables")
    if not isinstance(tables, list):
        return {}
    counts: Dict[str, int] = {}
    for entry in tables:
        if not isinstance(entry, dict) or not isinstance(entry.get("name"), str):
            continue
        try:
            counts[entry["name"]] = int(entry.get("row_count") or 0)
        except (TypeError, ValueError):
            continue
    return counts


class SnapshotRowCountStore:
    """Reads ``discover_tables`` snapshots persisted in ``analytics_snapshots``."""

    def __init__(self, session_factory: Callable[[], Session] = SessionLocal) -> None:
        self._session_factory = session_factory

    def _latest_output(self, user_id: str, *conditions) -> Optional[Any]:
        session = self._session_factory()
        try:
            stmt = (
                select(AnalyticsSnapshot.tool_output)
                .where(
                    AnalyticsSnapshot.user_id == user_id,
                    AnalyticsSnapshot.tool_name == DISCOVER_TABLES_TOOL,
                    *conditions,
                )
                .order_by(AnalyticsSnapshot.created_at.desc())
                .limit(1)
            )
            return session.execute(stmt).scalars().first()
        except SQLAlchemyError as exc:
            raise MetricSourceError(f"snapshot lookup failed: {exc}", source="database") from exc
        finally:
            session.close()

    def counts_at_or_before(self, user_id: str, cutoff: datetime) -> Dict[str, int]:
        return _counts_from_output(self._latest_output(user_id, AnalyticsSnapshot.created_at <= cutoff))

    def counts_within(self, user_id: str, start: datetime, end: datetime) -> Dict[str, int]:
        return _counts_from_output(
            self._latest_output(
                user_id,
                AnalyticsSnapshot.created_at >= start,
                AnalyticsSnapshot.created_at <= end,
            )
        )


def collect_row_count_metrics(
    source: DatabaseSource,
    user_id: str,
    windows: CheckpointWindows,
) -> List[MetricComparison]:
    """Compare conversion-table counts before the change with the after window.

    The baseline is the latest snapshot at or before ``before_end``. The after
    side prefers the latest snapshot inside the after window and falls back to
    live counts when none exists yet.
    """

    conversion_tables = identify_conversion_tables(source.adapter.list_tables())
    if not conversion_tables:
        return []

    baseline = source.snapshots.counts_at_or_before(user_id, windows.before_end)
    before_counts = {name: count for name, count in baseline.items() if name in conversion_tables}
    if not before_counts:
        return []

    window_counts = source.snapshots.counts_within(user_id, windows.after_start, windows.after_end)
    after_counts = {name: count for name, count in window_counts.items() if name in before_counts}
    if not after_counts:
        logger.debug("No after-window snapshot for user %s; using live counts.", user_id)
        after_counts = source.adapter.get_table_counts(list(before_counts))

    metrics: List[MetricComparison] = []
    for name, before in before_counts.items():
        after = after_counts.get(name)
        if after is None:
            continue
        metrics.append(
            build_comparison(
                f"{name}_count",
                float(before),
                float(after),
                percent_change(before, after),
                source=source.name,
            )
        )
    return metrics


__all__ = [
    "CONVERSION_TABLE_PATTERNS",
    "DISCOVER_TABLES_TOOL",
    "SnapshotRowCountStore",
    "SqlRowCountAdapter",
    "collect_row_count_metrics",
    "identify_conversion_tables",
    "is_safe_table_name",
]
