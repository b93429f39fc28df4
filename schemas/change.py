"""Pydantic schemas for tracked page changes, checkpoints and match proposals."""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field


class ChangeScope(str, Enum):
    """Granularity of a detected page modification."""

    ELEMENT = "element"
    SECTION = "section"
    PAGE = "page"


class DetectedChangeStatus(str, Enum):
    """Lifecycle of a tracked change. Mutated only through the transition table."""

    WATCHING = "watching"
    VALIDATED = "validated"
    REGRESSED = "regressed"
    INCONCLUSIVE = "inconclusive"
    REVERTED = "reverted"
    SUPERSEDED = "superseded"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({DetectedChangeStatus.REVERTED, DetectedChangeStatus.SUPERSEDED})


class MetricAssessment(str, Enum):
    """Per-metric verdict."""

    IMPROVED = "improved"
    REGRESSED = "regressed"
    NEUTRAL = "neutral"


class Assessment(str, Enum):
    """Overall checkpoint verdict."""

    IMPROVED = "improved"
    REGRESSED = "regressed"
    NEUTRAL = "neutral"
    INCONCLUSIVE = "inconclusive"


Direction = Literal["up", "down", "flat"]


class PeriodComparison(BaseModel):
    """Raw before/after comparison as returned by a metric source."""

    metric: str
    before: float
    after: float
    change_percent: float
    direction: Direction = "flat"


class MetricComparison(BaseModel):
    """One named metric inside a checkpoint's metric list."""

    model_config = ConfigDict(frozen=True)

    name: str
    source: Optional[str] = None
    before: float
    after: float
    change_percent: float
    assessment: MetricAssessment


class CheckpointWindows(BaseModel):
    """Exact before/after comparison intervals for one horizon."""

    model_config = ConfigDict(frozen=True)

    before_start: datetime
    before_end: datetime
    after_start: datetime
    after_end: datetime


class StatusTransition(BaseModel):
    """Status change produced by evaluating one checkpoint."""

    model_config = ConfigDict(frozen=True)

    new_status: DetectedChangeStatus
    reason: str


class PriorCheckpoint(BaseModel):
    """Minimal view of an already computed checkpoint."""

    model_config = ConfigDict(frozen=True)

    horizon_days: int
    assessment: Assessment
    reasoning: Optional[str] = None


class MatchCandidate(BaseModel):
    """A watching change as shown to the LLM. Never raw internal state."""

    model_config = ConfigDict(frozen=True)

    id: str
    element: str
    scope: ChangeScope = ChangeScope.ELEMENT
    after_value: str = ""
    before_value: str = ""


class MatchProposal(BaseModel):
    """Outcome of gating an LLM-proposed link to a watching change."""

    matched_change_id: Optional[str] = None
    match_confidence: float = 0.0
    match_rationale: str = ""
    accepted: bool = False
    rejection_reason: Optional[str] = None


class TimelineMetric(BaseModel):
    name: str
    change_percent: float
    assessment: Optional[str] = None


class CheckpointTimelineEntry(BaseModel):
    """One checkpoint row flattened for the prompt digest."""

    change_id: str
    element: str
    horizon_days: int
    assessment: str
    metrics: List[TimelineMetric] = Field(default_factory=list)
    status: str
    first_detected_at: datetime


class HorizonChip(BaseModel):
    """Per-horizon badge for the presentation layer."""

    horizon: int
    assessment: Optional[Assessment] = None
    reasoning: Optional[str] = None
    is_future: bool = False
    is_decision: bool = False


class CheckpointAssessmentResult(BaseModel):
    """Validated LLM verdict for one checkpoint."""

    assessment: Assessment
    confidence: float = Field(ge=0.0, le=1.0)
    reasoning: str = ""


class ReconciliationChange(BaseModel):
    element: str
    description: str = ""
    before: str = ""
    after: str = ""
    scope: ChangeScope = ChangeScope.ELEMENT
    final_ref: str
    action: Literal["match", "insert"]
    matched_change_id: Optional[str] = None


class ReconciliationSupersession(BaseModel):
    old_id: str
    final_ref: str


class ReconciliationResult(BaseModel):
    """Validated LLM magnitude classification and dedup plan for one scan."""

    magnitude: Literal["incremental", "overhaul"]
    final_changes: List[ReconciliationChange]
    supersessions: List[ReconciliationSupersession] = Field(default_factory=list)


__all__ = [
    "Assessment",
    "ChangeScope",
    "CheckpointAssessmentResult",
    "CheckpointTimelineEntry",
    "CheckpointWindows",
    "DetectedChangeStatus",
    "Direction",
    "HorizonChip",
    "MatchCandidate",
    "MatchProposal",
    "MetricAssessment",
    "MetricComparison",
    "PeriodComparison",
    "PriorCheckpoint",
    "ReconciliationChange",
    "ReconciliationResult",
    "ReconciliationSupersession",
    "StatusTransition",
    "TERMINAL_STATUSES",
    "TimelineMetric",
]
