"""
Scheduler trigger endpoints.

- GET /v1/cron/backfill-unique-users?days=N - backfill daily unique-user snapshots
- GET /v1/cron/weekly-metrics - run the weekly metrics pipeline

Both require the platform cron header or ``Authorization: Bearer <CRON_SECRET>``.
"""
import time
from typing import Optional

import structlog
from fastapi import APIRouter, Depends, Query, status
from fastapi.responses import JSONResponse

from audience.api.deps import get_aggregator, get_pipeline, verify_cron_caller
from audience.config import settings
from audience.errors import InvalidInputError, PipelineFailure
from audience.schemas.cron import TriggerResponse
from audience.services.period_metrics import PeriodMetricsPipeline
from audience.services.unique_users import UniqueUserAggregator

logger = structlog.get_logger(__name__)

router = APIRouter(dependencies=[Depends(verify_cron_caller)])


def parse_days(raw: Optional[str]) -> int:
    """
    Backfill depth from the ``days`` query parameter.

    Missing means the configured default; values outside ``1..backfill_max_days``
    are clamped.

    Raises:
        InvalidInputError: If the value is not an integer
    """
    if raw is None or raw == "":
        return settings.backfill_default_days
    try:
        days = int(raw)
    except ValueError:
        raise InvalidInputError("days must be an integer", field="days", value=raw, code="validation_error")
    return max(1, min(days, settings.backfill_max_days))


@router.get(
    "/cron/backfill-unique-users",
    response_model=TriggerResponse,
    response_model_exclude_none=True,
)
async def backfill_unique_users(
    days: Optional[str] = Query(default=None, description="Closed days to backfill, ending yesterday (max 90)"),
    aggregator: UniqueUserAggregator = Depends(get_aggregator),
) -> TriggerResponse:
    """
    Recompute daily unique-user snapshots for the last ``days`` closed days.

    Segment failures do not fail the request: the response carries
    ``success: false`` and the failed ``(date, segment)`` pairs with HTTP 200.
    """
    started = time.perf_counter()
    depth = parse_days(days)

    report = await aggregator.backfill_recent(depth)
    duration_ms = int((time.perf_counter() - started) * 1000)

    logger.info(
        "backfill_trigger_completed",
        days=depth,
        days_processed=report.days_processed,
        failures=len(report.failures),
        duration_ms=duration_ms,
    )

    return TriggerResponse(
        success=not report.failures,
        backfilled_days=report.days_processed,
        duration_ms=duration_ms,
        failures=report.failures or None,
    )


@router.get(
    "/cron/weekly-metrics",
    response_model=TriggerResponse,
    response_model_exclude_none=True,
    responses={500: {"model": TriggerResponse, "description": "Pipeline failed; an alert was attempted"}},
)
async def weekly_metrics(pipeline: PeriodMetricsPipeline = Depends(get_pipeline)):
    """Compute, persist and announce the previous week's metrics."""
    started = time.perf_counter()
    try:
        outcome = await pipeline.run()
    except PipelineFailure as exc:
        body = TriggerResponse(
            success=False,
            error=str(exc),
            duration_ms=int((time.perf_counter() - started) * 1000),
        )
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content=body.model_dump(mode="json", by_alias=True, exclude_none=True),
        )

    return TriggerResponse(success=True, period_key=outcome.period_key, duration_ms=outcome.duration_ms)
