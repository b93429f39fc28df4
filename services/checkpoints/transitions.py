"""Status state machine for tracked changes.

D+7 and D+14 are early signals and never move status. D+30 is the decision
horizon: the only checkpoint allowed to resolve a change out of ``watching``.
D+60 and D+90 may confirm (no-op) or reverse a prior resolution, but only on a
decisive improved/regressed verdict.
"""

from __future__ import annotations

from typing import Dict, Optional, Sequence, Tuple, Union

from schemas.change import (
    Assessment,
    DetectedChangeStatus,
    PriorCheckpoint,
    StatusTransition,
)
from services.checkpoints.horizons import DECISION_HORIZON

Status = DetectedChangeStatus

_DECISION_OUTCOMES: Dict[Assessment, Tuple[Status, str]] = {
    Assessment.IMPROVED: (Status.VALIDATED, "metrics improved"),
    Assessment.REGRESSED: (Status.REGRESSED, "metrics regressed"),
    Assessment.NEUTRAL: (Status.INCONCLUSIVE, "no significant change"),
    Assessment.INCONCLUSIVE: (Status.INCONCLUSIVE, "no significant change"),
}

_REVERSALS: Dict[Tuple[Status, Assessment], Tuple[Status, str]] = {
    (Status.VALIDATED, Assessment.REGRESSED): (Status.REGRESSED, "trend reversed to regression"),
    (Status.REGRESSED, Assessment.IMPROVED): (Status.VALIDATED, "trend reversed to improvement"),
    (Status.INCONCLUSIVE, Assessment.IMPROVED): (Status.VALIDATED, "clear signal emerged"),
    (Status.INCONCLUSIVE, Assessment.REGRESSED): (Status.REGRESSED, "clear signal emerged"),
}

_DECISIVE = frozenset({Assessment.IMPROVED, Assessment.REGRESSED})


def _transition(horizon_days: int, outcome: Tuple[Status, str]) -> StatusTransition:
    new_status, cause = outcome
    return StatusTransition(new_status=new_status, reason=f"D+{horizon_days}: {cause}")


def _resolve_early_signal(
    current_status: Status,
    horizon_days: int,
    assessment: Assessment,
) -> Optional[StatusTransition]:
    """Early-horizon resolution hook. Disabled: always returns ``None``.

    A confidence-gated rule letting D+7/D+14 resolve ``watching`` on strong
    evidence has been proposed but no threshold was ever agreed, so early
    checkpoints stay signal-only.
    """

    return None


def resolve_status_transition(
    current_status: Union[Status, str],
    horizon_days: int,
    assessment: Union[Assessment, str],
    prior_checkpoints: Sequence[PriorCheckpoint] = (),
) -> Optional[StatusTransition]:
    """Decide the status change produced by one checkpoint, or ``None``.

    ``prior_checkpoints`` is accepted for trend-over-time rules and does not
    currently influence the result.
    """

    status = Status(current_status)
    verdict = Assessment(assessment)

    if status.is_terminal:
        return None

    if horizon_days < DECISION_HORIZON:
        return _resolve_early_signal(status, horizon_days, verdict)

    if horizon_days == DECISION_HORIZON:
        if status is not Status.WATCHING:
            return None
        return _transition(horizon_days, _DECISION_OUTCOMES[verdict])

    if verdict not in _DECISIVE:
        return None
    outcome = _REVERSALS.get((status, verdict))
    if outcome is None:
        # same direction as the standing resolution, or never resolved at D+30
        return None
    return _transition(horizon_days, outcome)


__all__ = ["resolve_status_transition"]
