"""PostHog analytics provider comparing page metrics between absolute date ranges."""

from __future__ import annotations

import re
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import urlparse

import httpx

from core.env import env_float, env_str
from core.logging import get_logger
from schemas.change import PeriodComparison
from services.metric_sources.base import MetricSourceError, make_period_comparison, round_half_up

logger = get_logger(__name__)

DEFAULT_HOST = "https://us.i.posthog.com"
ALLOWED_HOSTS = frozenset(
    {
        "https://us.i.posthog.com",
        "https://eu.i.posthog.com",
        "https://app.posthog.com",
    }
)
REQUEST_TIMEOUT_SECONDS = env_float("POSTHOG_REQUEST_TIMEOUT_SECONDS", 15.0, minimum=1.0)

_CONVERSION_EVENTS = "('$purchase', 'purchase', 'signup', 'sign_up', 'conversion')"
_COUNT_EXPRESSIONS: Dict[str, Tuple[str, str]] = {
    "pageviews": ("count()", "event = '$pageview'"),
    "unique_visitors": ("count(DISTINCT person_id)", "event = '$pageview'"),
    "conversions": ("count()", f"event IN {_CONVERSION_EVENTS}"),
}
_NUMERIC_PROJECT = re.compile(r"^\d+$")


class PostHogConfigError(ValueError):
    """Invalid host or project id."""


def _escape_hogql(value: str) -> str:
    return (
        value.replace("\\", "\\\\")
        .replace("'", "\\'")
        .replace("%", "\\%")
        .replace("_", "\\_")
    )


def _domain_filter(page_url: str) -> str:
    host = urlparse(page_url).hostname
    return _escape_hogql(host or page_url)


def _hogql_timestamp(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).strftime("%Y-%m-%d %H:%M:%S")


class PostHogProvider:
    """Runs HogQL queries against the PostHog query API."""

    name = "posthog"

    def __init__(
        self,
        api_key: str,
        project_id: str,
        *,
        host: Optional[str] = None,
        client: Optional[httpx.Client] = None,
    ) -> None:
        resolved_host = (host or env_str("POSTHOG_HOST", DEFAULT_HOST) or DEFAULT_HOST).rstrip("/")
        if resolved_host not in ALLOWED_HOSTS:
            raise PostHogConfigError(f"Invalid PostHog host: {resolved_host}")
        if not _NUMERIC_PROJECT.match(str(project_id)):
            raise PostHogConfigError("Project ID must be numeric")
        self.host = resolved_host
        self.project_id = str(project_id)
        self._api_key = api_key
        self._client = client

    def _query(self, hogql: str) -> List[List[Any]]:
        url = f"{self.host}/api/projects/{self.project_id}/query/"
        payload = {"query": {"kind": "HogQLQuery", "query": hogql}}
        headers = {"Authorization": f"Bearer {self._api_key}"}
        try:
            if self._client is not None:
                response = self._client.post(url, json=payload, headers=headers)
            else:
                timeout = httpx.Timeout(REQUEST_TIMEOUT_SECONDS, connect=5.0)
                with httpx.Client(timeout=timeout) as client:
                    response = client.post(url, json=payload, headers=headers)
            response.raise_for_status()
            body = response.json()
        except httpx.HTTPStatusError as exc:
            logger.warning("PostHog API error %s: %s", exc.response.status_code, exc.response.text[:200])
            raise MetricSourceError(f"PostHog API error: {exc.response.status_code}", source=self.name) from exc
        except httpx.RequestError as exc:
            raise MetricSourceError(f"PostHog request failed: {exc}", source=self.name) from exc
        except ValueError as exc:
            raise MetricSourceError("PostHog returned a non-JSON body", source=self.name) from exc

        results = body.get("results") if isinstance(body, dict) else None
        if not isinstance(results, list):
            raise MetricSourceError("PostHog response missing results", source=self.name)
        return results

    @staticmethod
    def _split_periods(rows: List[List[Any]], *, period_index: int, value_index: int) -> Tuple[float, float]:
        before = 0.0
        after = 0.0
        for row in rows:
            if not isinstance(row, (list, tuple)) or len(row) <= max(period_index, value_index):
                continue
            try:
                value = float(row[value_index] or 0)
            except (TypeError, ValueError):
                value = 0.0
            if row[period_index] == "after":
                after = value
            elif row[period_index] == "before":
                before = value
        return before, after

    def compare_periods_absolute(
        self,
        metric: str,
        page_url: str,
        before_start: datetime,
        before_end: datetime,
        after_start: datetime,
        after_end: datetime,
    ) -> PeriodComparison:
        domain = _domain_filter(page_url)
        bounds = {
            "before_start": _hogql_timestamp(before_start),
            "before_end": _hogql_timestamp(before_end),
            "after_start": _hogql_timestamp(after_start),
            "after_end": _hogql_timestamp(after_end),
        }
        window_filter = (
            "((timestamp >= toDateTime('{before_start}') AND timestamp < toDateTime('{before_end}')) "
            "OR (timestamp >= toDateTime('{after_start}') AND timestamp < toDateTime('{after_end}')))"
        ).format(**bounds)
        period_expr = "if({ts} >= toDateTime('{after_start}'), 'after', 'before')"

        if metric == "bounce_rate":
            query = f"""
                SELECT period, countIf(session_pageviews = 1) * 100.0 / count() AS bounce_rate
                FROM (
                    SELECT
                        $session_id AS session_id,
                        count() AS session_pageviews,
                        {period_expr.format(ts="min(timestamp)", **bounds)} AS period
                    FROM events
                    WHERE event = '$pageview'
                      AND properties.$current_url LIKE '%{domain}%'
                      AND {window_filter}
                    GROUP BY session_id
                )
                GROUP BY period
            """
            before, after = self._split_periods(self._query(query), period_index=0, value_index=1)
            return make_period_comparison(metric, round_half_up(before), round_half_up(after))

        expression = _COUNT_EXPRESSIONS.get(metric)
        if expression is None:
            raise MetricSourceError(f"Unsupported metric: {metric}", source=self.name)
        select_expr, event_filter = expression
        query = f"""
            SELECT {select_expr} AS value, {period_expr.format(ts="timestamp", **bounds)} AS period
            FROM events
            WHERE {event_filter}
              AND properties.$current_url LIKE '%{domain}%'
              AND {window_filter}
            GROUP BY period
        """
        before, after = self._split_periods(self._query(query), period_index=1, value_index=0)
        return make_period_comparison(metric, float(round(before)), float(round(after)))


__all__ = ["ALLOWED_HOSTS", "DEFAULT_HOST", "PostHogConfigError", "PostHogProvider"]
