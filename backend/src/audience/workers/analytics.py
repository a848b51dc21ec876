"""
Background worker for unique-user snapshots and the weekly digest.

Schedule (UTC):
- Daily 01:00: backfill the last ``backfill_default_days`` closed days
- Monday 02:00: weekly metrics pipeline for the previous week

Identity link capabilities are detected once in ``on_startup`` and shared by
every job of the worker process.

Usage (with ARQ):
    arq audience.workers.analytics.WorkerSettings
"""
from typing import Optional

import structlog
from arq import cron
from arq.connections import RedisSettings

from audience.cache import cache
from audience.config import settings
from audience.database import engine
from audience.errors import PipelineFailure
from audience.middleware.logging import setup_logging
from audience.services.builders import (
    build_aggregator,
    build_event_store,
    build_pipeline,
    build_snapshot_store,
)
from audience.services.identity import Capabilities, detect_capabilities

logger = structlog.get_logger(__name__)


def _capabilities(ctx: dict) -> Capabilities:
    return ctx.get("capabilities") or Capabilities()


async def backfill_unique_users(ctx: dict, days: Optional[int] = None) -> dict:
    """
    Backfill daily unique-user snapshots for recent closed days.

    Args:
        ctx: ARQ context
        days: Closed days to backfill, ending yesterday

    Returns:
        Dict with backfill results
    """
    depth = max(1, min(days or settings.backfill_default_days, settings.backfill_max_days))
    logger.info("backfill_worker_started", days=depth, job_id=ctx.get("job_id"))

    event_store = build_event_store()
    aggregator = build_aggregator(event_store, build_snapshot_store(), _capabilities(ctx))
    report = await aggregator.backfill_recent(depth)

    return {
        "status": "partial" if report.failures else "success",
        "days_processed": report.days_processed,
        "failures": [failure.model_dump(mode="json") for failure in report.failures],
        "resolution": report.resolution,
    }


async def run_weekly_metrics(ctx: dict) -> dict:
    """
    Run the weekly metrics pipeline.

    Failures are already alerted by the pipeline; the job records them and
    does not retry, since a retry would re-alert.

    Args:
        ctx: ARQ context

    Returns:
        Dict with the period key or the error
    """
    logger.info("weekly_metrics_worker_started", job_id=ctx.get("job_id"))
    pipeline = build_pipeline(_capabilities(ctx))

    try:
        outcome = await pipeline.run()
    except PipelineFailure as e:
        logger.error("weekly_metrics_worker_failed", stage=e.stage, error=str(e))
        return {"status": "failed", "stage": e.stage, "error": str(e)}

    return {
        "status": "success",
        "period_key": outcome.period_key,
        "digest_sent": outcome.digest_sent,
        "duration_ms": outcome.duration_ms,
    }


async def startup(ctx: dict) -> None:
    setup_logging()
    if settings.otel_enabled:
        from audience.tracing import setup_tracing

        setup_tracing(engine=engine)
    ctx["capabilities"] = await detect_capabilities(build_event_store())
    logger.info("analytics_worker_ready", identity_resolution=ctx["capabilities"].resolution_mode)


async def shutdown(ctx: dict) -> None:
    await cache.close()
    await engine.dispose()


class WorkerSettings:
    """
    ARQ worker settings for snapshot backfill and the weekly digest.

    Usage:
        arq audience.workers.analytics.WorkerSettings
    """

    functions = [backfill_unique_users, run_weekly_metrics]

    cron_jobs = [
        cron(backfill_unique_users, hour=1, minute=0, timeout=1800),
        cron(run_weekly_metrics, weekday="mon", hour=2, minute=0, timeout=1800),
    ]

    on_startup = startup
    on_shutdown = shutdown

    redis_settings = RedisSettings.from_dsn(str(settings.arq_redis_url))

    # Job retention
    keep_result = 86400

    max_jobs = 10
    job_timeout = 1800
