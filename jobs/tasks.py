"""Celery entry points."""

from __future__ import annotations

import asyncio
from typing import Dict, List, Optional

from celery import shared_task
from sqlalchemy import create_engine

from core.env import env_str
from core.logging import get_logger
from database import session_scope
from services.checkpoint_runner import EvidenceContext, run_checkpoints
from services.metric_sources import (
    AnalyticsSource,
    DatabaseSource,
    MetricSource,
    PostHogProvider,
    SnapshotRowCountStore,
    SqlRowCountAdapter,
)

logger = get_logger(__name__)


def build_default_sources(
    *,
    posthog_api_key: Optional[str] = None,
    posthog_project_id: Optional[str] = None,
    analytics_database_url: Optional[str] = None,
) -> List[MetricSource]:
    """Sources configured through the environment; shared by every tracked change."""

    api_key = posthog_api_key or env_str("POSTHOG_API_KEY")
    project_id = posthog_project_id or env_str("POSTHOG_PROJECT_ID")
    database_url = analytics_database_url or env_str("ANALYTICS_DATABASE_URL")

    sources: List[MetricSource] = []
    if api_key and project_id:
        sources.append(AnalyticsSource(provider=PostHogProvider(api_key, project_id)))
    if database_url:
        adapter = SqlRowCountAdapter(create_engine(database_url, pool_pre_ping=True))
        sources.append(DatabaseSource(adapter=adapter, snapshots=SnapshotRowCountStore()))
    if not sources:
        logger.info("No metric sources configured; checkpoints will be recorded as analytics_disconnected.")
    return sources


@shared_task(name="checkpoints.run")
def run_daily_checkpoints() -> Dict[str, int]:
    sources = build_default_sources()
    with session_scope() as db:
        ctx = EvidenceContext(db=db, sources_for=lambda _user_id: sources)
        summary = asyncio.run(run_checkpoints(ctx))
    return summary.as_dict()
