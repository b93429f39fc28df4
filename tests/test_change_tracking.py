from datetime import datetime, timezone

from sqlalchemy import select
from sqlalchemy.orm import Session

from llm.output_validation import validate_reconciliation
from llm.prompt_context import format_checkpoint_timeline
from models.change import ChangeCheckpoint, DetectedChange
from services.change_tracking import (
    load_checkpoint_timeline,
    load_horizon_chips,
    load_watching_candidates,
    record_detected_changes,
    watching_ids_for_page,
)
from services.checkpoints.horizons import compute_windows

UTC = timezone.utc


def _change(db: Session, element: str, *, status: str = "watching", scope: str = "element", day: int = 1) -> DetectedChange:
    change = DetectedChange(
        user_id="track-user",
        page_id="track-page",
        page_url="https://example.com/",
        element=element,
        scope=scope,
        after_value=f"{element} v2",
        first_detected_at=datetime(2024, 1, day, 9, tzinfo=UTC),
        status=status,
    )
    db.add(change)
    db.flush()
    return change


def _checkpoint(db: Session, change: DetectedChange, horizon: int, assessment: str, metrics) -> None:
    windows = compute_windows(change.first_detected_at, horizon)
    db.add(
        ChangeCheckpoint(
            change_id=change.id,
            horizon_days=horizon,
            before_start=windows.before_start,
            before_end=windows.before_end,
            after_start=windows.after_start,
            after_end=windows.after_end,
            metrics_json={"metrics": metrics, "overall_assessment": assessment},
            assessment=assessment,
            reasoning=f"D+{horizon} reasoning",
        )
    )
    db.flush()


def test_watching_candidates_are_newest_first_and_bounded(db_session: Session) -> None:
    _change(db_session, "Old CTA", day=1)
    _change(db_session, "New CTA", day=5)
    _change(db_session, "Footer", status="validated", day=6)

    candidates = load_watching_candidates(db_session, user_id="track-user", page_id="track-page", limit=5)

    assert [c.element for c in candidates] == ["New CTA", "Old CTA"]
    assert candidates[0].after_value == "New CTA v2"
    assert len(load_watching_candidates(db_session, user_id="track-user", page_id="track-page", limit=1)) == 1


def test_record_detected_changes_links_or_inserts(db_session: Session) -> None:
    existing = _change(db_session, "Hero headline")
    candidates = load_watching_candidates(db_session, user_id="track-user", page_id="track-page")
    entries = [
        {
            "element": "Hero headline",
            "after": "Ship even faster",
            "scope": "element",
            "matched_change_id": existing.id,
            "match_confidence": 0.92,
        },
        {
            "element": "Pricing",
            "after": "$19",
            "scope": "section",
            "matched_change_id": existing.id,
            "match_confidence": 0.4,
        },
    ]

    proposals = record_detected_changes(
        db_session,
        user_id="track-user",
        page_id="track-page",
        page_url="https://example.com/",
        entries=entries,
        candidates=candidates,
        detected_at=datetime(2024, 2, 1, tzinfo=UTC),
    )

    assert [p.accepted for p in proposals] == [True, False]
    assert existing.after_value == "Ship even faster"
    assert existing.status == "watching"
    assert existing.first_detected_at == datetime(2024, 1, 1, 9, tzinfo=UTC)

    rows = db_session.execute(
        select(DetectedChange).where(DetectedChange.page_id == "track-page").order_by(DetectedChange.first_detected_at)
    ).scalars().all()
    assert [row.element for row in rows] == ["Hero headline", "Pricing"]
    assert rows[1].status == "watching" and rows[1].scope == "section"


def test_timeline_and_chips_from_stored_checkpoints(db_session: Session) -> None:
    change = _change(db_session, "Hero headline", status="validated")
    _change(db_session, "Gone", status="superseded")
    _checkpoint(db_session, change, 7, "neutral", [{"name": "pageviews", "change_percent": 2.0, "assessment": "neutral"}])
    _checkpoint(db_session, change, 30, "improved", [{"name": "pageviews", "change_percent": 18.0, "assessment": "improved"}])

    entries = load_checkpoint_timeline(db_session, user_id="track-user", page_id="track-page")

    assert [(e.horizon_days, e.assessment) for e in entries] == [(7, "neutral"), (30, "improved")]
    assert format_checkpoint_timeline(entries).splitlines()[-1] == (
        "  D+7: pageviews +2% (neutral) | D+30: pageviews +18% (improved) [DECISION]"
    )

    chips = load_horizon_chips(db_session, change.id)
    assert [chip.horizon for chip in chips] == [7, 14, 30, 60, 90]
    assert [chip.is_future for chip in chips] == [False, True, False, True, True]
    assert chips[2].is_decision and chips[2].reasoning == "D+30 reasoning"


def test_reconciliation_validated_against_page_watching_ids(db_session: Session) -> None:
    watching = _change(db_session, "Nav")
    _change(db_session, "Logo", status="regressed")

    ids = watching_ids_for_page(db_session, user_id="track-user", page_id="track-page")
    result = validate_reconciliation(
        {
            "magnitude": "incremental",
            "finalChanges": [{"element": "Nav", "action": "match", "matched_change_id": watching.id}],
            "supersessions": [],
        },
        ids,
    )

    assert list(ids) == [watching.id]
    assert result.final_changes[0].matched_change_id == watching.id


def test_unknown_model_scope_is_stored_as_element(db_session: Session) -> None:
    proposals = record_detected_changes(
        db_session,
        user_id="track-user",
        page_id="scope-page",
        page_url="https://example.com/",
        entries=[{"element": "Hero", "after": "New hero", "scope": "component"}],
        candidates=[],
        detected_at=datetime(2024, 2, 1, tzinfo=UTC),
    )

    assert [p.accepted for p in proposals] == [False]
    row = db_session.execute(select(DetectedChange).where(DetectedChange.page_id == "scope-page")).scalar_one()
    assert row.scope == "element"
    assert row.status == "watching"
