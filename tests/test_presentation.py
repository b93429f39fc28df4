from datetime import datetime, timezone

from schemas.change import Assessment, PriorCheckpoint
from services.checkpoints.assessment import build_comparison
from services.checkpoints.presentation import build_horizon_chips, format_checkpoint_observation, short_date


def test_short_date_has_no_zero_padding() -> None:
    assert short_date(datetime(2024, 3, 5, tzinfo=timezone.utc)) == "Mar 5"


def test_chips_mark_future_and_decision_horizons() -> None:
    chips = build_horizon_chips([PriorCheckpoint(horizon_days=7, assessment=Assessment.NEUTRAL, reasoning="flat")])

    assert chips[0].assessment is Assessment.NEUTRAL and not chips[0].is_future
    assert all(chip.is_future for chip in chips[1:])
    assert [chip.is_decision for chip in chips] == [False, False, True, False, False]


def test_observation_reports_top_metric_direction() -> None:
    top = build_comparison("unique_visitors", 200, 150, -25.0)

    text = format_checkpoint_observation("Signup button", datetime(2024, 1, 9), 14, top, Assessment.REGRESSED)

    assert text == "Signup button changed on Jan 9. At 14 days: unique visitors down 25%."


def test_observation_without_signal() -> None:
    top = build_comparison("pageviews", 100, 140, 40.0)

    assert format_checkpoint_observation("CTA", datetime(2024, 1, 9), 7, top, Assessment.INCONCLUSIVE).endswith(
        "no significant metric movement."
    )
    assert format_checkpoint_observation("CTA", datetime(2024, 1, 9), 7, None, Assessment.NEUTRAL).endswith(
        "no significant metric movement."
    )
