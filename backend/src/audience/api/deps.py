"""FastAPI dependencies for services and cron authentication."""
import hmac
from typing import Optional

import structlog
from fastapi import Depends, Request

from audience.adapters.event_store import EventStore
from audience.config import settings
from audience.errors import UnauthorizedError
from audience.services.activation import ActivationFunnelCalculator
from audience.services.builders import (
    build_aggregator,
    build_event_store,
    build_funnel,
    build_pipeline,
    build_snapshot_store,
)
from audience.services.identity import Capabilities
from audience.services.period_metrics import PeriodMetricsPipeline
from audience.services.unique_users import UniqueUserAggregator

logger = structlog.get_logger(__name__)


def get_capabilities(request: Request) -> Capabilities:
    """Capabilities detected in the application lifespan."""
    return getattr(request.app.state, "capabilities", None) or Capabilities()


def get_event_store() -> EventStore:
    return build_event_store()


def get_aggregator(
    event_store: EventStore = Depends(get_event_store),
    capabilities: Capabilities = Depends(get_capabilities),
) -> UniqueUserAggregator:
    return build_aggregator(event_store, build_snapshot_store(), capabilities)


def get_funnel(event_store: EventStore = Depends(get_event_store)) -> ActivationFunnelCalculator:
    return build_funnel(event_store)


def get_pipeline(capabilities: Capabilities = Depends(get_capabilities)) -> PeriodMetricsPipeline:
    return build_pipeline(capabilities)


def is_authorized_cron_call(headers, secret: Optional[str], header_name: str) -> bool:
    """
    Check a cron trigger request.

    Accepted: the platform scheduler header set to "1", or
    ``Authorization: Bearer <secret>``. With no secret configured every caller
    is accepted.
    """
    if headers.get(header_name) == "1":
        return True
    if not secret:
        return True
    authorization = headers.get("authorization") or ""
    return hmac.compare_digest(authorization.encode(), f"Bearer {secret}".encode())


async def verify_cron_caller(request: Request) -> None:
    """
    Reject unauthorised cron trigger calls before any work starts.

    Raises:
        UnauthorizedError: Neither the platform header nor the shared secret matched
    """
    if not settings.cron_secret:
        logger.warning("cron_secret_not_configured", path=request.url.path)
    if not is_authorized_cron_call(request.headers, settings.cron_secret, settings.cron_header_name):
        logger.warning("cron_unauthorized", path=request.url.path)
        raise UnauthorizedError("Unauthorized")
