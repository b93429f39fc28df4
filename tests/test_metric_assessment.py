import pytest

from schemas.change import Assessment, MetricAssessment
from services.checkpoints.assessment import (
    assess_metrics,
    build_comparison,
    classify_metric,
    fallback_reasoning,
    top_metric,
)


def _metric(name: str, change_percent: float):
    return build_comparison(name, 100.0, 100.0 + change_percent, change_percent, source="posthog")


def test_lower_is_better_metric_drop_counts_as_improvement() -> None:
    metrics = [_metric("bounce_rate", -8), _metric("pageviews", 2)]

    assert metrics[0].assessment is MetricAssessment.IMPROVED
    assert metrics[1].assessment is MetricAssessment.NEUTRAL
    assert assess_metrics(metrics) is Assessment.IMPROVED


def test_any_regression_outweighs_improvements() -> None:
    metrics = [_metric("pageviews", 40), _metric("unique_visitors", 25), _metric("bounce_rate", 6)]

    assert assess_metrics(metrics) is Assessment.REGRESSED


@pytest.mark.parametrize(
    "name, change_percent, expected",
    [
        ("pageviews", 5.0, MetricAssessment.NEUTRAL),
        ("pageviews", -5.0, MetricAssessment.NEUTRAL),
        ("pageviews", 5.1, MetricAssessment.IMPROVED),
        ("pageviews", -5.1, MetricAssessment.REGRESSED),
        ("bounce_rate", 12.0, MetricAssessment.REGRESSED),
        ("signups_count", 0.0, MetricAssessment.NEUTRAL),
    ],
)
def test_classification_threshold_and_polarity(name, change_percent, expected) -> None:
    assert classify_metric(name, change_percent) is expected


def test_empty_metrics_are_inconclusive_and_all_neutral_is_neutral() -> None:
    assert assess_metrics([]) is Assessment.INCONCLUSIVE
    assert assess_metrics([_metric("pageviews", 1), _metric("unique_visitors", -3)]) is Assessment.NEUTRAL


def test_top_metric_prefers_largest_absolute_move() -> None:
    metrics = [_metric("pageviews", 12), _metric("bounce_rate", -20), _metric("unique_visitors", 20)]

    assert top_metric(metrics).name == "bounce_rate"
    assert top_metric([]) is None


def test_fallback_reasoning_counts_verdicts() -> None:
    metrics = [_metric("pageviews", 12), _metric("bounce_rate", 9), _metric("unique_visitors", 1)]
    reasoning, confidence = fallback_reasoning(metrics, assess_metrics(metrics))

    assert reasoning == (
        "Deterministic fallback: 3 metrics assessed (1 improved, 1 regressed). Assessment: regressed."
    )
    assert confidence == pytest.approx(0.3)


def test_fallback_reasoning_without_metrics_has_zero_confidence() -> None:
    reasoning, confidence = fallback_reasoning([], Assessment.INCONCLUSIVE)

    assert reasoning == "Deterministic fallback: no metric data available. Assessment: inconclusive."
    assert confidence == 0.0
