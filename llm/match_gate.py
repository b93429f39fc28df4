"""Deterministic gate for LLM-proposed links between new and watching changes."""

from __future__ import annotations

import math
from typing import Any, FrozenSet, Mapping, Optional, Tuple

from core.logging import get_logger
from schemas.change import ChangeScope, MatchCandidate, MatchProposal

logger = get_logger(__name__)

MATCH_CONFIDENCE_THRESHOLD = 0.70

_ELEMENT = ChangeScope.ELEMENT.value
_SECTION = ChangeScope.SECTION.value
_PAGE = ChangeScope.PAGE.value

# A section commonly subsumes one of its elements. Page scope pairs with anything.
_COMPATIBLE_SCOPES: FrozenSet[Tuple[str, str]] = frozenset(
    {
        (_ELEMENT, _ELEMENT),
        (_SECTION, _SECTION),
        (_SECTION, _ELEMENT),
        (_ELEMENT, _SECTION),
    }
)


def _coerce_confidence(value: Any) -> float:
    if isinstance(value, bool):
        return 0.0
    try:
        confidence = float(value)
    except (TypeError, ValueError):
        return 0.0
    if math.isnan(confidence):
        return 0.0
    return confidence


def _scope_value(value: Any) -> str:
    if isinstance(value, ChangeScope):
        return value.value
    if value is None or value == "":
        return _ELEMENT
    return str(value).strip().lower()


def scopes_compatible(change_scope: Any, candidate_scope: Any) -> bool:
    pair = (_scope_value(change_scope), _scope_value(candidate_scope))
    if _PAGE in pair:
        return True
    return pair in _COMPATIBLE_SCOPES


def validate_match_proposal(
    change: Mapping[str, Any],
    candidates: Mapping[str, MatchCandidate],
) -> MatchProposal:
    """Accept the proposed link only if candidate-set, confidence and scope gates all pass.

    ``change`` is one LLM-authored change entry carrying ``matched_change_id``,
    ``match_confidence``, ``match_rationale`` and ``scope``. ``candidates`` must be
    exactly the set rendered into that call's prompt. Gates run in order and
    the first failure is reported.
    """

    proposed_id: Optional[str] = change.get("matched_change_id") or None
    confidence = _coerce_confidence(change.get("match_confidence"))
    rationale = str(change.get("match_rationale") or "")

    def _reject(reason: str) -> MatchProposal:
        logger.warning("Match proposal rejected (%s): %s", proposed_id, reason)
        return MatchProposal(
            matched_change_id=None,
            match_confidence=confidence,
            match_rationale=rationale,
            accepted=False,
            rejection_reason=reason,
        )

    if proposed_id is None:
        return MatchProposal(match_confidence=confidence, match_rationale=rationale)

    proposed_id = str(proposed_id)
    candidate = candidates.get(proposed_id)
    if candidate is None:
        return _reject(f"proposed ID {proposed_id} not in candidate set")

    if confidence < MATCH_CONFIDENCE_THRESHOLD:
        return _reject(f"confidence {confidence:g} below {MATCH_CONFIDENCE_THRESHOLD:.2f} threshold")

    change_scope = _scope_value(change.get("scope"))
    candidate_scope = _scope_value(candidate.scope)
    if not scopes_compatible(change_scope, candidate_scope):
        return _reject(f"scope mismatch: {change_scope} vs {candidate_scope}")

    return MatchProposal(
        matched_change_id=proposed_id,
        match_confidence=confidence,
        match_rationale=rationale,
        accepted=True,
    )


__all__ = [
    "MATCH_CONFIDENCE_THRESHOLD",
    "scopes_compatible",
    "validate_match_proposal",
]
