"""Horizon scheduling and before/after window derivation."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Iterable, List, Tuple

from schemas.change import CheckpointWindows

HORIZONS: Tuple[int, ...] = (7, 14, 30, 60, 90)
DECISION_HORIZON = 30

_ONE_DAY = timedelta(days=1)


def as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def utc_midnight(value: datetime) -> datetime:
    """Truncate a timestamp to 00:00 UTC of the same UTC calendar day."""
    return as_utc(value).replace(hour=0, minute=0, second=0, microsecond=0)


def _require_horizon(horizon_days: int) -> int:
    if horizon_days not in HORIZONS:
        raise ValueError(f"unsupported horizon: {horizon_days}")
    return horizon_days


def compute_windows(change_date: datetime, horizon_days: int) -> CheckpointWindows:
    """Return the comparison windows for ``horizon_days`` after ``change_date``.

    Before window: ``[midnight - h, midnight)``, aligned on UTC day boundaries.
    After window: ``[change_date, midnight + h)``. It opens at the detection
    instant so that same-day traffic preceding the change is not counted as
    post-change data.
    """

    _require_horizon(horizon_days)
    detected_at = as_utc(change_date)
    midnight = utc_midnight(detected_at)
    span = timedelta(days=horizon_days)
    return CheckpointWindows(
        before_start=midnight - span,
        before_end=midnight,
        after_start=detected_at,
        after_end=midnight + span,
    )


def days_since(change_date: datetime, now: datetime) -> int:
    """Whole days elapsed, floored."""
    return (as_utc(now) - as_utc(change_date)) // _ONE_DAY


def get_eligible_horizons(
    change_date: datetime,
    now: datetime,
    existing_horizon_days: Iterable[int],
) -> List[int]:
    """Horizons the change has reached that have no checkpoint yet, in ascending order."""

    elapsed = days_since(change_date, now)
    existing = set(existing_horizon_days)
    return [horizon for horizon in HORIZONS if elapsed >= horizon and horizon not in existing]


__all__ = [
    "DECISION_HORIZON",
    "HORIZONS",
    "as_utc",
    "compute_windows",
    "days_since",
    "get_eligible_horizons",
    "utc_midnight",
]
