"""
Read endpoints for unique users and activation.

- GET /v1/analytics/unique-users - per-day counts, today computed live
- GET /v1/analytics/activation - signup-to-activation funnel
"""
from datetime import date, timedelta
from typing import Optional

import structlog
from fastapi import APIRouter, Depends, Query

from audience.api.deps import get_aggregator, get_funnel
from audience.errors import InvalidInputError
from audience.schemas.activation import ActivationResult
from audience.schemas.error import ErrorCode
from audience.schemas.unique_users import RangeQueryResult
from audience.services.activation import ActivationFunnelCalculator
from audience.services.segments import Segment
from audience.services.unique_users import UniqueUserAggregator
from audience.utils.calendar import store_today, utc_day_bounds

logger = structlog.get_logger(__name__)

router = APIRouter()

DEFAULT_RANGE_DAYS = 7
MAX_RANGE_DAYS = 366


def parse_date(raw: Optional[str], name: str, default: date) -> date:
    """Parse an ISO date query parameter, raising InvalidInputError when malformed."""
    if not raw:
        return default
    try:
        return date.fromisoformat(raw)
    except ValueError:
        raise InvalidInputError(
            f"{name} must be an ISO date (YYYY-MM-DD)", field=name, value=raw, code=ErrorCode.INVALID_DATE
        )


def parse_range(start: Optional[str], end: Optional[str]) -> tuple[date, date]:
    end_date = parse_date(end, "end", store_today())
    start_date = parse_date(start, "start", end_date - timedelta(days=DEFAULT_RANGE_DAYS - 1))
    if start_date > end_date:
        raise InvalidInputError(
            "start must not be after end", field="start", value=start_date.isoformat(), code=ErrorCode.INVALID_RANGE
        )
    if (end_date - start_date).days + 1 > MAX_RANGE_DAYS:
        raise InvalidInputError(
            f"range must not exceed {MAX_RANGE_DAYS} days",
            field="start",
            value=start_date.isoformat(),
            code=ErrorCode.INVALID_RANGE,
        )
    return start_date, end_date


@router.get("/analytics/unique-users", response_model=RangeQueryResult)
async def get_unique_users(
    start: Optional[str] = Query(default=None, description="First day (YYYY-MM-DD), defaults to 6 days before end"),
    end: Optional[str] = Query(default=None, description="Last day (YYYY-MM-DD), defaults to today"),
    segment: str = Query(default="all", description="all, product, app_opened, reach or grimoire"),
    aggregator: UniqueUserAggregator = Depends(get_aggregator),
) -> RangeQueryResult:
    """
    Daily unique users for a date range.

    Closed days come from persisted snapshots; today, when in range, is
    computed live and labelled ``source: live``.
    """
    start_date, end_date = parse_range(start, end)
    result = await aggregator.range_with_live(start_date, end_date, Segment.parse(segment))

    logger.info(
        "unique_users_read",
        segment=result.segment,
        days=len(result.days),
        missing=len(result.missing_dates),
    )
    return result


@router.get("/analytics/activation", response_model=ActivationResult)
async def get_activation(
    start: Optional[str] = Query(default=None, description="First signup day (YYYY-MM-DD)"),
    end: Optional[str] = Query(default=None, description="Last signup day (YYYY-MM-DD)"),
    funnel: ActivationFunnelCalculator = Depends(get_funnel),
) -> ActivationResult:
    """Activation funnel for signups on the UTC days ``start`` to ``end``."""
    start_date, end_date = parse_range(start, end)
    window_start, _ = utc_day_bounds(start_date)
    _, window_end = utc_day_bounds(end_date)
    return await funnel.compute_activation(window_start, window_end)
