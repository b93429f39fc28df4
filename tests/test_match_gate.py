import pytest

from llm.match_gate import MATCH_CONFIDENCE_THRESHOLD, scopes_compatible, validate_match_proposal
from schemas.change import ChangeScope, MatchCandidate


@pytest.fixture()
def candidates():
    return {
        "chg-1": MatchCandidate(id="chg-1", element="Hero headline", scope=ChangeScope.ELEMENT, after_value="Ship faster"),
        "chg-2": MatchCandidate(id="chg-2", element="Pricing table", scope=ChangeScope.SECTION),
    }


def test_low_confidence_proposal_is_rejected(candidates) -> None:
    proposal = validate_match_proposal(
        {"matched_change_id": "chg-1", "match_confidence": 0.65, "match_rationale": "same headline"},
        candidates,
    )

    assert proposal.accepted is False
    assert proposal.matched_change_id is None
    assert "0.70" in proposal.rejection_reason
    assert proposal.rejection_reason == "confidence 0.65 below 0.70 threshold"
    assert proposal.match_confidence == pytest.approx(0.65)
    assert proposal.match_rationale == "same headline"


def test_confident_in_set_proposal_is_accepted(candidates) -> None:
    proposal = validate_match_proposal(
        {"matched_change_id": "chg-1", "match_confidence": 0.9, "scope": "element"},
        candidates,
    )

    assert proposal.accepted is True
    assert proposal.matched_change_id == "chg-1"
    assert proposal.rejection_reason is None


def test_threshold_is_inclusive(candidates) -> None:
    proposal = validate_match_proposal(
        {"matched_change_id": "chg-2", "match_confidence": MATCH_CONFIDENCE_THRESHOLD, "scope": "section"},
        candidates,
    )

    assert proposal.accepted is True


def test_id_outside_candidate_set_is_rejected_even_when_confident(candidates) -> None:
    proposal = validate_match_proposal({"matched_change_id": "chg-999", "match_confidence": 0.99}, candidates)

    assert proposal.accepted is False
    assert proposal.matched_change_id is None
    assert proposal.rejection_reason == "proposed ID chg-999 not in candidate set"


def test_candidate_set_check_runs_before_confidence(candidates) -> None:
    proposal = validate_match_proposal({"matched_change_id": "ghost", "match_confidence": 0.1}, candidates)

    assert proposal.rejection_reason.startswith("proposed ID ghost")


def test_unknown_scope_is_a_mismatch(candidates) -> None:
    proposal = validate_match_proposal(
        {"matched_change_id": "chg-1", "match_confidence": 0.95, "scope": "site"},
        candidates,
    )

    assert proposal.accepted is False
    assert proposal.rejection_reason == "scope mismatch: site vs element"


def test_no_proposal_is_not_a_rejection(candidates) -> None:
    proposal = validate_match_proposal({"matched_change_id": None, "match_confidence": 0.1}, candidates)

    assert proposal.accepted is False
    assert proposal.matched_change_id is None
    assert proposal.rejection_reason is None


@pytest.mark.parametrize("raw", ["high", None, True, float("nan")])
def test_non_numeric_confidence_counts_as_zero(candidates, raw) -> None:
    proposal = validate_match_proposal({"matched_change_id": "chg-1", "match_confidence": raw}, candidates)

    assert proposal.accepted is False
    assert proposal.match_confidence == 0.0


def test_scope_compatibility_matrix() -> None:
    assert scopes_compatible("page", "element")
    assert scopes_compatible("element", "page")
    assert scopes_compatible("section", "element")
    assert scopes_compatible(None, "element")
    assert scopes_compatible(ChangeScope.SECTION, "section")
    assert not scopes_compatible("component", "element")
    assert not scopes_compatible("site", "section")


def test_page_scope_pairs_with_unknown_scope() -> None:
    assert scopes_compatible("site", "page")
    assert scopes_compatible(ChangeScope.PAGE, "component")
