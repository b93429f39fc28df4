"""Persistence helpers around detected changes: candidate windows, linkage and history views."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Mapping, Optional, Sequence

from sqlalchemy import select
from sqlalchemy.orm import Session

from core.logging import get_logger
from llm.match_gate import validate_match_proposal
from llm.output_validation import coerce_scope
from llm.prompt_context import WATCHING_CANDIDATE_LIMIT, candidate_index
from models.change import ChangeCheckpoint, DetectedChange
from schemas.change import (
    Assessment,
    ChangeScope,
    CheckpointTimelineEntry,
    DetectedChangeStatus,
    HorizonChip,
    MatchCandidate,
    MatchProposal,
    PriorCheckpoint,
    TimelineMetric,
)
from services.checkpoints.horizons import as_utc
from services.checkpoints.presentation import build_horizon_chips

logger = get_logger(__name__)

_TIMELINE_STATUSES = (
    DetectedChangeStatus.WATCHING.value,
    DetectedChangeStatus.VALIDATED.value,
    DetectedChangeStatus.REGRESSED.value,
    DetectedChangeStatus.INCONCLUSIVE.value,
)


def to_match_candidate(change: DetectedChange) -> MatchCandidate:
    """Project a stored change onto the fields the model may see."""
    return MatchCandidate(
        id=change.id,
        element=change.element,
        scope=ChangeScope(change.scope or ChangeScope.ELEMENT.value),
        after_value=change.after_value or "",
        before_value=change.before_value or "",
    )


def load_watching_candidates(
    db: Session,
    *,
    user_id: str,
    page_id: str,
    limit: Optional[int] = None,
) -> List[MatchCandidate]:
    """Most recent watching changes for a page, newest first."""

    stmt = (
        select(DetectedChange)
        .where(
            DetectedChange.user_id == user_id,
            DetectedChange.page_id == page_id,
            DetectedChange.status == DetectedChangeStatus.WATCHING.value,
        )
        .order_by(DetectedChange.first_detected_at.desc(), DetectedChange.id)
        .limit(limit or WATCHING_CANDIDATE_LIMIT)
    )
    return [to_match_candidate(change) for change in db.execute(stmt).scalars()]


def record_detected_changes(
    db: Session,
    *,
    user_id: str,
    page_id: str,
    page_url: str,
    entries: Sequence[Mapping[str, Any]],
    candidates: Sequence[MatchCandidate],
    detected_at: datetime,
) -> List[MatchProposal]:
    """Link or insert each model-reported change after gating its match proposal.

    ``candidates`` must be the list rendered into the prompt that produced
    ``entries``. An accepted match refreshes the content of the existing
    watching record and never touches its status or detection time; anything
    else becomes a new ``watching`` change.
    """

    window = candidate_index(candidates)
    proposals: List[MatchProposal] = []
    for entry in entries:
        proposal = validate_match_proposal(entry, window)
        proposals.append(proposal)

        if proposal.accepted and proposal.matched_change_id:
            existing = db.get(DetectedChange, proposal.matched_change_id)
            if existing is not None:
                existing.after_value = str(entry.get("after") or existing.after_value or "")
                if entry.get("description"):
                    existing.description = str(entry["description"])
                continue
            logger.warning("Accepted match %s vanished before linking; inserting.", proposal.matched_change_id)

        db.add(
            DetectedChange(
                user_id=user_id,
                page_id=page_id,
                page_url=page_url,
                element=str(entry.get("element") or "unknown"),
                element_type=entry.get("element_type"),
                scope=coerce_scope(entry.get("scope")).value,
                before_value=str(entry.get("before") or ""),
                after_value=str(entry.get("after") or ""),
                description=entry.get("description"),
                first_detected_at=as_utc(detected_at),
                status=DetectedChangeStatus.WATCHING.value,
            )
        )
    db.flush()
    return proposals


def _timeline_metrics(metrics_json: Any) -> List[TimelineMetric]:
    raw = metrics_json.get("metrics") if isinstance(metrics_json, dict) else None
    if not isinstance(raw, list):
        return []
    metrics: List[TimelineMetric] = []
    for item in raw:
        if not isinstance(item, dict) or "name" not in item:
            continue
        try:
            change_percent = float(item.get("change_percent") or 0)
        except (TypeError, ValueError):
            continue
        metrics.append(
            TimelineMetric(name=str(item["name"]), change_percent=change_percent, assessment=item.get("assessment"))
        )
    return metrics


def load_checkpoint_timeline(db: Session, *, user_id: str, page_id: str) -> List[CheckpointTimelineEntry]:
    """Flatten checkpoint history for a page into prompt timeline entries."""

    stmt = (
        select(ChangeCheckpoint, DetectedChange)
        .join(DetectedChange, ChangeCheckpoint.change_id == DetectedChange.id)
        .where(
            DetectedChange.user_id == user_id,
            DetectedChange.page_id == page_id,
            DetectedChange.status.in_(_TIMELINE_STATUSES),
        )
        .order_by(DetectedChange.first_detected_at, DetectedChange.id, ChangeCheckpoint.horizon_days)
    )
    entries: List[CheckpointTimelineEntry] = []
    for checkpoint, change in db.execute(stmt).all():
        entries.append(
            CheckpointTimelineEntry(
                change_id=change.id,
                element=change.element,
                horizon_days=checkpoint.horizon_days,
                assessment=checkpoint.assessment,
                metrics=_timeline_metrics(checkpoint.metrics_json),
                status=change.status,
                first_detected_at=as_utc(change.first_detected_at),
            )
        )
    return entries


def load_prior_checkpoints(db: Session, change_id: str) -> List[PriorCheckpoint]:
    stmt = (
        select(ChangeCheckpoint)
        .where(ChangeCheckpoint.change_id == change_id)
        .order_by(ChangeCheckpoint.horizon_days)
    )
    return [
        PriorCheckpoint(
            horizon_days=row.horizon_days,
            assessment=Assessment(row.assessment),
            reasoning=row.reasoning,
        )
        for row in db.execute(stmt).scalars()
    ]


def load_horizon_chips(db: Session, change_id: str) -> List[HorizonChip]:
    return build_horizon_chips(load_prior_checkpoints(db, change_id))


def watching_ids_for_page(db: Session, *, user_id: str, page_id: str) -> Dict[str, DetectedChange]:
    """Every watching change on a page keyed by id, for reconciliation validation."""

    stmt = select(DetectedChange).where(
        DetectedChange.user_id == user_id,
        DetectedChange.page_id == page_id,
        DetectedChange.status == DetectedChangeStatus.WATCHING.value,
    )
    return {change.id: change for change in db.execute(stmt).scalars()}


__all__ = [
    "load_checkpoint_timeline",
    "load_horizon_chips",
    "load_prior_checkpoints",
    "load_watching_candidates",
    "record_detected_changes",
    "to_match_candidate",
    "watching_ids_for_page",
]
