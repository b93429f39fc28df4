"""Validation of structured LLM payloads the engine consumes."""

from __future__ import annotations

import math
from typing import Any, Dict, Iterable, List, Optional

from core.logging import get_logger
from llm.json_extraction import RAW_EXCERPT_LENGTH, LLMOutputError, parse_llm_json
from schemas.change import (
    Assessment,
    ChangeScope,
    CheckpointAssessmentResult,
    ReconciliationChange,
    ReconciliationResult,
    ReconciliationSupersession,
)

logger = get_logger(__name__)

MAX_REASONING_CHARS = 1000

_ASSESSMENTS = {item.value for item in Assessment}
_SCOPES = {item.value for item in ChangeScope}
_MAGNITUDES = {"incremental", "overhaul"}


def coerce_scope(raw: Any) -> ChangeScope:
    """Map a model-supplied scope onto the known vocabulary, defaulting to element."""
    scope = str(raw or "").strip().lower()
    if scope not in _SCOPES:
        return ChangeScope.ELEMENT
    return ChangeScope(scope)


def _clamp_confidence(raw: Any) -> float:
    if isinstance(raw, bool) or not isinstance(raw, (int, float)):
        return 0.0
    value = float(raw)
    if not math.isfinite(value):
        return 0.0
    return round(max(0.0, min(1.0, value)), 2)


def validate_checkpoint_assessment(payload: Dict[str, Any], *, raw_text: str = "") -> CheckpointAssessmentResult:
    """Normalise a model verdict for one checkpoint."""

    assessment = str(payload.get("assessment") or "").strip().lower()
    if assessment not in _ASSESSMENTS:
        raise LLMOutputError(
            f"invalid checkpoint assessment: {payload.get('assessment')!r}",
            raw_excerpt=raw_text[:RAW_EXCERPT_LENGTH],
        )
    reasoning = payload.get("reasoning")
    return CheckpointAssessmentResult(
        assessment=Assessment(assessment),
        confidence=_clamp_confidence(payload.get("confidence")),
        reasoning=reasoning[:MAX_REASONING_CHARS] if isinstance(reasoning, str) else "",
    )


def parse_checkpoint_assessment(raw_text: str) -> CheckpointAssessmentResult:
    return validate_checkpoint_assessment(parse_llm_json(raw_text), raw_text=raw_text)


def _normalize_final_change(entry: Dict[str, Any], watching_ids: set, index: int) -> Optional[ReconciliationChange]:
    if not isinstance(entry, dict):
        logger.warning("Reconciliation entry %d is not an object; dropped.", index)
        return None
    element = str(entry.get("element") or "").strip()
    if not element:
        logger.warning("Reconciliation entry %d has no element; dropped.", index)
        return None

    scope = coerce_scope(entry.get("scope"))

    action = entry.get("action")
    raw_matched = entry.get("matched_change_id")
    matched_id = str(raw_matched) if raw_matched else None
    if action == "match" and matched_id not in watching_ids:
        logger.warning("Reconciliation match references unknown watching ID %s; demoted to insert.", matched_id)
        action, matched_id = "insert", None
    if action != "match":
        action, matched_id = "insert", None

    return ReconciliationChange(
        element=element,
        description=str(entry.get("description") or ""),
        before=str(entry.get("before") or ""),
        after=str(entry.get("after") or ""),
        scope=scope,
        final_ref=str(entry.get("final_ref") or f"inc_{index + 1}"),
        action=action,
        matched_change_id=matched_id,
    )


def validate_reconciliation(
    payload: Dict[str, Any],
    watching_ids: Iterable[str],
    *,
    raw_text: str = "",
) -> ReconciliationResult:
    """Check magnitude/finalChanges and drop references to unknown watching records."""

    excerpt = raw_text[:RAW_EXCERPT_LENGTH]
    magnitude = payload.get("magnitude")
    if not isinstance(magnitude, str) or magnitude not in _MAGNITUDES:
        raise LLMOutputError(f"invalid reconciliation magnitude: {magnitude!r}", raw_excerpt=excerpt)

    raw_changes = payload.get("finalChanges")
    if not isinstance(raw_changes, list) or not raw_changes:
        raise LLMOutputError("reconciliation finalChanges missing or empty", raw_excerpt=excerpt)

    known = set(watching_ids)
    final_changes: List[ReconciliationChange] = []
    for index, entry in enumerate(raw_changes):
        normalized = _normalize_final_change(entry, known, index)
        if normalized is not None:
            final_changes.append(normalized)
    if not final_changes:
        raise LLMOutputError("reconciliation finalChanges contained no usable entries", raw_excerpt=excerpt)

    supersessions: List[ReconciliationSupersession] = []
    for item in payload.get("supersessions") or []:
        if not isinstance(item, dict):
            continue
        old_id = item.get("old_id")
        if not isinstance(old_id, str) or old_id not in known:
            logger.warning("Reconciliation supersession references unknown watching ID %s; dropped.", old_id)
            continue
        supersessions.append(ReconciliationSupersession(old_id=old_id, final_ref=str(item.get("final_ref") or "")))

    return ReconciliationResult(magnitude=magnitude, final_changes=final_changes, supersessions=supersessions)


def parse_reconciliation(raw_text: str, watching_ids: Iterable[str]) -> ReconciliationResult:
    return validate_reconciliation(parse_llm_json(raw_text), watching_ids, raw_text=raw_text)


__all__ = [
    "MAX_REASONING_CHARS",
    "coerce_scope",
    "parse_checkpoint_assessment",
    "parse_reconciliation",
    "validate_checkpoint_assessment",
    "validate_reconciliation",
]
