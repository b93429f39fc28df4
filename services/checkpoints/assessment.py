"""Reduce per-metric before/after comparisons into one checkpoint verdict."""

from __future__ import annotations

from typing import FrozenSet, Optional, Sequence, Tuple

from schemas.change import Assessment, MetricAssessment, MetricComparison

SIGNIFICANCE_THRESHOLD = 5.0
LOWER_IS_BETTER: FrozenSet[str] = frozenset({"bounce_rate"})

DETERMINISTIC_CONFIDENCE = 0.3


def classify_metric(
    name: str,
    change_percent: float,
    *,
    lower_is_better: FrozenSet[str] = LOWER_IS_BETTER,
) -> MetricAssessment:
    """Classify one metric movement, honouring its polarity."""

    if abs(change_percent) <= SIGNIFICANCE_THRESHOLD:
        return MetricAssessment.NEUTRAL
    went_up = change_percent > 0
    if name in lower_is_better:
        went_up = not went_up
    return MetricAssessment.IMPROVED if went_up else MetricAssessment.REGRESSED


def build_comparison(
    name: str,
    before: float,
    after: float,
    change_percent: float,
    *,
    source: Optional[str] = None,
) -> MetricComparison:
    return MetricComparison(
        name=name,
        source=source,
        before=before,
        after=after,
        change_percent=change_percent,
        assessment=classify_metric(name, change_percent),
    )


def assess_metrics(metrics: Sequence[MetricComparison]) -> Assessment:
    """Overall verdict: empty -> inconclusive, any regression wins, then any improvement."""

    if not metrics:
        return Assessment.INCONCLUSIVE
    verdicts = {metric.assessment for metric in metrics}
    if MetricAssessment.REGRESSED in verdicts:
        return Assessment.REGRESSED
    if MetricAssessment.IMPROVED in verdicts:
        return Assessment.IMPROVED
    return Assessment.NEUTRAL


def top_metric(metrics: Sequence[MetricComparison]) -> Optional[MetricComparison]:
    """Metric with the largest absolute movement; first one wins ties."""
    best: Optional[MetricComparison] = None
    for metric in metrics:
        if best is None or abs(metric.change_percent) > abs(best.change_percent):
            best = metric
    return best


def fallback_reasoning(metrics: Sequence[MetricComparison], assessment: Assessment) -> Tuple[str, float]:
    """Reasoning text and confidence used when no model verdict is available."""

    if not metrics:
        return (
            f"Deterministic fallback: no metric data available. Assessment: {assessment.value}.",
            0.0,
        )
    improved = sum(1 for metric in metrics if metric.assessment is MetricAssessment.IMPROVED)
    regressed = sum(1 for metric in metrics if metric.assessment is MetricAssessment.REGRESSED)
    return (
        f"Deterministic fallback: {len(metrics)} metrics assessed ({improved} improved, "
        f"{regressed} regressed). Assessment: {assessment.value}.",
        DETERMINISTIC_CONFIDENCE,
    )


__all__ = [
    "DETERMINISTIC_CONFIDENCE",
    "LOWER_IS_BETTER",
    "SIGNIFICANCE_THRESHOLD",
    "assess_metrics",
    "build_comparison",
    "classify_metric",
    "fallback_reasoning",
    "top_metric",
]
