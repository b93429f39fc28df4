"""Render checkpoint history for the UI and for observation copy."""

from __future__ import annotations

from datetime import datetime
from typing import Dict, List, Optional, Sequence

from schemas.change import Assessment, HorizonChip, MetricComparison, PriorCheckpoint
from services.checkpoints.horizons import DECISION_HORIZON, HORIZONS


def short_date(value: datetime) -> str:
    """``Jan 5`` style label."""
    return f"{value:%b} {value.day}"


def build_horizon_chips(checkpoints: Sequence[PriorCheckpoint]) -> List[HorizonChip]:
    """One chip per horizon; horizons without a checkpoint are future placeholders."""

    by_horizon: Dict[int, PriorCheckpoint] = {cp.horizon_days: cp for cp in checkpoints}
    chips: List[HorizonChip] = []
    for horizon in HORIZONS:
        checkpoint = by_horizon.get(horizon)
        if checkpoint is None:
            chips.append(HorizonChip(horizon=horizon, is_future=True, is_decision=horizon == DECISION_HORIZON))
            continue
        chips.append(
            HorizonChip(
                horizon=horizon,
                assessment=checkpoint.assessment,
                reasoning=checkpoint.reasoning,
                is_decision=horizon == DECISION_HORIZON,
            )
        )
    return chips


def format_checkpoint_observation(
    element: str,
    change_date: datetime,
    horizon_days: int,
    top: Optional[MetricComparison],
    assessment: Assessment,
) -> str:
    prefix = f"{element} changed on {short_date(change_date)}. At {horizon_days} days:"
    if top is None or assessment is Assessment.INCONCLUSIVE:
        return f"{prefix} no significant metric movement."
    direction = "up" if top.change_percent > 0 else "down"
    metric_name = top.name.replace("_", " ")
    return f"{prefix} {metric_name} {direction} {abs(top.change_percent):g}%."


__all__ = ["build_horizon_chips", "format_checkpoint_observation", "short_date"]
