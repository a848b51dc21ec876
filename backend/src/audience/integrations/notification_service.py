"""Admin notifications for weekly digests and pipeline alerts."""
from abc import ABC, abstractmethod
from typing import Optional, Sequence

import httpx
import structlog

from audience import metrics
from audience.cache import RedisCache, dedupe_key
from audience.errors import AudienceError
from audience.schemas.metric_snapshot import DigestField

logger = structlog.get_logger(__name__)


class NotificationError(AudienceError):
    """The notification provider rejected or did not answer a delivery."""


class DigestNotifier(ABC):
    """Delivery interface for the admin channel."""

    @abstractmethod
    async def send_digest(
        self,
        title: str,
        message: str,
        fields: Sequence[DigestField],
        dedupe_key: str,
        priority: str = "normal",
    ) -> bool:
        """
        Send a digest once per dedupe key.

        Returns:
            True if sent, False if suppressed as a duplicate
        """

    @abstractmethod
    async def send_alert(self, title: str, message: str, priority: str = "high") -> None:
        """Send an operational alert."""


class WebhookDigestNotifier(DigestNotifier):
    """
    Posts digests and alerts as JSON to an admin webhook.

    Dedupe keys are claimed in Redis before delivery and released again when
    delivery fails, so a retried run can still send.
    """

    DELIVERY_TIMEOUT_SECONDS = 10

    def __init__(self, webhook_url: Optional[str], cache: RedisCache, dedupe_ttl_seconds: int):
        """
        Initialize notifier.

        Args:
            webhook_url: Admin webhook; when unset, deliveries are logged and skipped
            cache: Redis client used for dedupe claims
            dedupe_ttl_seconds: How long a digest key suppresses repeats
        """
        self.webhook_url = webhook_url
        self.cache = cache
        self.dedupe_ttl_seconds = dedupe_ttl_seconds

    async def _post(self, payload: dict) -> None:
        try:
            async with httpx.AsyncClient(timeout=self.DELIVERY_TIMEOUT_SECONDS) as client:
                response = await client.post(
                    self.webhook_url,
                    json=payload,
                    headers={"User-Agent": "AudienceMetrics-Notifier/1.0"},
                )
        except httpx.HTTPError as e:
            raise NotificationError(f"Notification delivery failed: {e}") from e

        if response.status_code not in (200, 201, 202, 204):
            raise NotificationError(f"HTTP {response.status_code}: {response.text[:200]}")

    async def send_digest(
        self,
        title: str,
        message: str,
        fields: Sequence[DigestField],
        dedupe_key: str,
        priority: str = "normal",
    ) -> bool:
        if not self.webhook_url:
            logger.warning("notifier_not_configured", title=title, dedupe_key=dedupe_key)
            metrics.digest_notifications_total.labels(kind="digest", status="skipped").inc()
            return False

        key = _redis_key(dedupe_key)
        if not await self.cache.claim(key, self.dedupe_ttl_seconds):
            logger.info("digest_deduplicated", dedupe_key=dedupe_key)
            metrics.digest_notifications_total.labels(kind="digest", status="deduped").inc()
            return False

        payload = {
            "title": title,
            "message": message,
            "priority": priority,
            "dedupe_key": dedupe_key,
            "fields": [field.model_dump() for field in fields],
        }
        try:
            await self._post(payload)
        except NotificationError:
            await self.cache.release(key)
            metrics.digest_notifications_total.labels(kind="digest", status="failed").inc()
            raise

        metrics.digest_notifications_total.labels(kind="digest", status="sent").inc()
        logger.info("digest_sent", title=title, dedupe_key=dedupe_key, field_count=len(payload["fields"]))
        return True

    async def send_alert(self, title: str, message: str, priority: str = "high") -> None:
        if not self.webhook_url:
            logger.warning("notifier_not_configured", title=title)
            metrics.digest_notifications_total.labels(kind="alert", status="skipped").inc()
            return

        try:
            await self._post({"title": title, "message": message, "priority": priority})
        except NotificationError:
            metrics.digest_notifications_total.labels(kind="alert", status="failed").inc()
            raise

        metrics.digest_notifications_total.labels(kind="alert", status="sent").inc()
        logger.info("alert_sent", title=title, priority=priority)


def _redis_key(key: str) -> str:
    return dedupe_key("notifications", key)
