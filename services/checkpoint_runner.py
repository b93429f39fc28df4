"""Daily checkpoint evaluation over tracked changes.

``evaluate_checkpoint`` is pure: given gathered metrics it returns the
commands that persist one checkpoint and any status change. ``run_checkpoints``
is the shell that finds due work, fans out to metric sources, and executes
those commands with one commit per (change, horizon).
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional, Sequence, Union

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from core.env import env_int
from core.logging import get_logger
from llm.json_extraction import LLMOutputError
from llm.output_validation import parse_checkpoint_assessment
from models.change import ChangeCheckpoint, DetectedChange
from schemas.change import (
    Assessment,
    CheckpointAssessmentResult,
    CheckpointWindows,
    DetectedChangeStatus,
    MetricComparison,
    PriorCheckpoint,
    StatusTransition,
    TERMINAL_STATUSES,
)
from services.change_tracking import load_prior_checkpoints
from services.checkpoints.assessment import assess_metrics, fallback_reasoning, top_metric
from services.checkpoints.horizons import HORIZONS, as_utc, compute_windows, get_eligible_horizons
from services.checkpoints.presentation import format_checkpoint_observation
from services.checkpoints.transitions import resolve_status_transition
from services.metric_sources.base import MetricSource
from services.metric_sources.gather import METRIC_SOURCE_TIMEOUT_SECONDS, GatherResult, gather_metrics

logger = get_logger(__name__)

CHECKPOINT_BATCH_SIZE = env_int("CHECKPOINT_BATCH_SIZE", 500, minimum=1)
ANALYTICS_DISCONNECTED = "analytics_disconnected"

VerdictProvider = Callable[[str, int, Sequence[MetricComparison], Assessment], Optional[str]]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class EvidenceContext:
    """Everything a run needs, passed explicitly."""

    db: Session
    sources_for: Callable[[str], Sequence[MetricSource]]
    timeout: float = METRIC_SOURCE_TIMEOUT_SECONDS
    now: Callable[[], datetime] = _utcnow
    verdict_provider: Optional[VerdictProvider] = None
    batch_size: int = CHECKPOINT_BATCH_SIZE


@dataclass(frozen=True)
class AppendCheckpoint:
    change_id: str
    horizon_days: int
    windows: CheckpointWindows
    metrics_payload: Dict[str, Any]
    assessment: Assessment
    confidence: float
    reasoning: str
    data_sources: List[str]


@dataclass(frozen=True)
class ApplyTransition:
    change_id: str
    transition: StatusTransition


@dataclass(frozen=True)
class UpdateObservation:
    change_id: str
    text: str


Command = Union[AppendCheckpoint, ApplyTransition, UpdateObservation]


@dataclass(frozen=True)
class CheckpointEvaluation:
    assessment: Assessment
    status: DetectedChangeStatus
    commands: List[Command]


@dataclass
class RunSummary:
    processed: int = 0
    checkpoints: int = 0
    transitions: int = 0
    errors: int = 0
    duplicates: int = 0

    def as_dict(self) -> Dict[str, int]:
        return {
            "processed": self.processed,
            "checkpoints": self.checkpoints,
            "transitions": self.transitions,
            "errors": self.errors,
            "duplicates": self.duplicates,
        }


def evaluate_checkpoint(
    *,
    change_id: str,
    element: str,
    first_detected_at: datetime,
    current_status: Union[DetectedChangeStatus, str],
    horizon_days: int,
    windows: CheckpointWindows,
    gathered: GatherResult,
    sources_configured: bool,
    prior_checkpoints: Sequence[PriorCheckpoint] = (),
    verdict: Optional[CheckpointAssessmentResult] = None,
) -> CheckpointEvaluation:
    """Turn gathered metrics into the commands for one checkpoint."""

    status = DetectedChangeStatus(current_status)
    assessment = assess_metrics(gathered.metrics)

    payload: Dict[str, Any] = {
        "metrics": [metric.model_dump(mode="json") for metric in gathered.metrics],
        "overall_assessment": assessment.value,
    }
    if not sources_configured:
        payload["reason"] = ANALYTICS_DISCONNECTED
    elif gathered.failed:
        payload["failed_sources"] = list(gathered.failed)

    reasoning, confidence = fallback_reasoning(gathered.metrics, assessment)
    if verdict is not None:
        if verdict.assessment is not assessment:
            logger.info(
                "Model verdict %s for change %s D+%s disagrees with computed %s; keeping computed.",
                verdict.assessment.value,
                change_id,
                horizon_days,
                assessment.value,
            )
        if verdict.reasoning:
            reasoning = verdict.reasoning
        confidence = verdict.confidence

    commands: List[Command] = [
        AppendCheckpoint(
            change_id=change_id,
            horizon_days=horizon_days,
            windows=windows,
            metrics_payload=payload,
            assessment=assessment,
            confidence=confidence,
            reasoning=reasoning,
            data_sources=list(gathered.data_sources),
        ),
        UpdateObservation(
            change_id=change_id,
            text=format_checkpoint_observation(
                element,
                as_utc(first_detected_at),
                horizon_days,
                top_metric(gathered.metrics),
                assessment,
            ),
        ),
    ]

    transition = resolve_status_transition(status, horizon_days, assessment, prior_checkpoints)
    if transition is not None:
        commands.append(ApplyTransition(change_id=change_id, transition=transition))
        status = transition.new_status
    return CheckpointEvaluation(assessment=assessment, status=status, commands=commands)


def execute_commands(db: Session, commands: Sequence[Command]) -> None:
    """Apply commands to the session and flush. The caller owns the commit."""

    for command in commands:
        if isinstance(command, AppendCheckpoint):
            db.add(
                ChangeCheckpoint(
                    change_id=command.change_id,
                    horizon_days=command.horizon_days,
                    before_start=command.windows.before_start,
                    before_end=command.windows.before_end,
                    after_start=command.windows.after_start,
                    after_end=command.windows.after_end,
                    metrics_json=command.metrics_payload,
                    assessment=command.assessment.value,
                    confidence=command.confidence,
                    reasoning=command.reasoning,
                    data_sources=command.data_sources,
                )
            )
            # surface a duplicate (change, horizon) before touching the change row
            db.flush()
        elif isinstance(command, ApplyTransition):
            change = db.get(DetectedChange, command.change_id)
            if change is None:
                raise LookupError(f"detected change {command.change_id} not found")
            change.status = command.transition.new_status.value
            change.status_reason = command.transition.reason
        elif isinstance(command, UpdateObservation):
            change = db.get(DetectedChange, command.change_id)
            if change is None:
                raise LookupError(f"detected change {command.change_id} not found")
            change.observation_text = command.text
        else:
            raise TypeError(f"unknown command: {type(command).__name__}")
    db.flush()


async def _model_verdict(
    ctx: EvidenceContext,
    change_id: str,
    horizon_days: int,
    metrics: Sequence[MetricComparison],
    assessment: Assessment,
) -> Optional[CheckpointAssessmentResult]:
    if ctx.verdict_provider is None:
        return None
    try:
        raw = await asyncio.to_thread(ctx.verdict_provider, change_id, horizon_days, metrics, assessment)
    except Exception as exc:
        logger.warning("Checkpoint verdict call failed for %s D+%s: %s", change_id, horizon_days, exc)
        return None
    if not raw:
        return None
    try:
        return parse_checkpoint_assessment(raw)
    except LLMOutputError as exc:
        logger.warning("Discarding checkpoint verdict for %s D+%s: %s", change_id, horizon_days, exc)
        return None


def _due_changes(db: Session, *, cutoff: datetime, offset: int, limit: int) -> List[DetectedChange]:
    terminal = [status.value for status in TERMINAL_STATUSES]
    stmt = (
        select(DetectedChange)
        .where(DetectedChange.status.notin_(terminal), DetectedChange.first_detected_at <= cutoff)
        .order_by(DetectedChange.first_detected_at, DetectedChange.id)
        .offset(offset)
        .limit(limit)
    )
    return list(db.execute(stmt).scalars())


async def _process_change(ctx: EvidenceContext, change: DetectedChange, now: datetime, summary: RunSummary) -> None:
    db = ctx.db
    try:
        priors = load_prior_checkpoints(db, change.id)
    except SQLAlchemyError as exc:
        db.rollback()
        logger.warning("Failed to load checkpoints for change %s: %s", change.id, exc)
        summary.errors += 1
        return

    eligible = get_eligible_horizons(change.first_detected_at, now, [cp.horizon_days for cp in priors])
    if not eligible:
        logger.debug("Change %s has no due horizons.", change.id)
        return
    summary.processed += 1

    change_id = change.id
    element = change.element
    user_id = change.user_id
    page_url = change.page_url
    first_detected_at = change.first_detected_at
    status = DetectedChangeStatus(change.status)
    sources = list(ctx.sources_for(user_id))

    for horizon in eligible:
        windows = compute_windows(first_detected_at, horizon)
        if sources:
            gathered = await gather_metrics(
                sources,
                page_url=page_url,
                user_id=user_id,
                windows=windows,
                timeout=ctx.timeout,
            )
        else:
            gathered = GatherResult()

        verdict = await _model_verdict(ctx, change_id, horizon, gathered.metrics, assess_metrics(gathered.metrics))
        evaluation = evaluate_checkpoint(
            change_id=change_id,
            element=element,
            first_detected_at=first_detected_at,
            current_status=status,
            horizon_days=horizon,
            windows=windows,
            gathered=gathered,
            sources_configured=bool(sources),
            prior_checkpoints=priors,
            verdict=verdict,
        )

        try:
            execute_commands(db, evaluation.commands)
            db.commit()
        except IntegrityError:
            db.rollback()
            logger.info("Checkpoint D+%s for change %s already exists; skipping.", horizon, change_id)
            summary.duplicates += 1
            return
        except (SQLAlchemyError, LookupError) as exc:
            db.rollback()
            logger.warning("Failed to persist checkpoint D+%s for change %s: %s", horizon, change_id, exc)
            summary.errors += 1
            return

        summary.checkpoints += 1
        if evaluation.status is not status:
            summary.transitions += 1
            logger.info("Change %s: %s -> %s", change_id, status.value, evaluation.status.value)
        status = evaluation.status
        priors.append(PriorCheckpoint(horizon_days=horizon, assessment=evaluation.assessment))


async def run_checkpoints(ctx: EvidenceContext) -> RunSummary:
    """Compute every due checkpoint for non-terminal changes."""

    summary = RunSummary()
    now = as_utc(ctx.now())
    cutoff = now - timedelta(days=min(HORIZONS))
    offset = 0
    while True:
        batch = _due_changes(ctx.db, cutoff=cutoff, offset=offset, limit=ctx.batch_size)
        if not batch:
            break
        for change in batch:
            await _process_change(ctx, change, now, summary)
        if len(batch) < ctx.batch_size:
            break
        offset += ctx.batch_size

    logger.info(
        "Checkpoint run complete: processed=%d checkpoints=%d transitions=%d errors=%d duplicates=%d",
        summary.processed,
        summary.checkpoints,
        summary.transitions,
        summary.errors,
        summary.duplicates,
    )
    return summary


__all__ = [
    "ANALYTICS_DISCONNECTED",
    "AppendCheckpoint",
    "ApplyTransition",
    "CheckpointEvaluation",
    "EvidenceContext",
    "RunSummary",
    "UpdateObservation",
    "evaluate_checkpoint",
    "execute_commands",
    "run_checkpoints",
]
