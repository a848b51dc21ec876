"""Redis helpers for notification dedupe keys.

A digest is claimed with ``SET NX EX`` before it is sent, so a re-run of the
same period within the TTL is suppressed even across processes.
"""
from typing import Optional

import redis.asyncio as redis
import structlog

from audience.config import settings

logger = structlog.get_logger(__name__)


class RedisCache:
    """Lazily connected Redis client."""

    def __init__(self, url: Optional[str] = None):
        """
        Initialize without connecting.

        Args:
            url: Redis URL, defaults to settings.redis_url
        """
        self.url = url or str(settings.redis_url)
        self.redis_client: Optional[redis.Redis] = None
        self._initialized = False

    async def _ensure_connection(self) -> redis.Redis:
        if not self._initialized or self.redis_client is None:
            try:
                self.redis_client = redis.from_url(
                    self.url,
                    encoding="utf-8",
                    decode_responses=True,
                    socket_connect_timeout=5,
                    socket_timeout=5,
                )
                await self.redis_client.ping()
                self._initialized = True
                logger.info("redis_connected", url=self.url)
            except Exception as e:
                logger.error("redis_connection_failed", error=str(e))
                raise

        return self.redis_client

    async def claim(self, key: str, ttl: int) -> bool:
        """
        Atomically claim a dedupe key.

        Args:
            key: Dedupe key
            ttl: Seconds the claim suppresses repeats

        Returns:
            True if this caller owns the key (or Redis is unreachable),
            False if it was already claimed
        """
        try:
            client = await self._ensure_connection()
            claimed = await client.set(key, "1", nx=True, ex=ttl)
        except Exception as e:
            logger.warning("dedupe_claim_failed", key=key, error=str(e))
            return True

        logger.debug("dedupe_claim", key=key, claimed=bool(claimed))
        return bool(claimed)

    async def release(self, key: str) -> bool:
        """Drop a claim so that a later run may send again."""
        try:
            client = await self._ensure_connection()
            result = await client.delete(key)
            return bool(result)
        except Exception as e:
            logger.warning("dedupe_release_failed", key=key, error=str(e))
            return False

    async def ping(self) -> bool:
        """Readiness probe; raises when Redis is unreachable."""
        client = await self._ensure_connection()
        return bool(await client.ping())

    async def close(self):
        """Close Redis connection."""
        if self.redis_client:
            await self.redis_client.aclose()
            self._initialized = False
            logger.info("redis_closed")


# Global cache instance
cache = RedisCache()


def dedupe_key(namespace: str, key: str) -> str:
    """Namespaced Redis key for a notification dedupe key."""
    return f"dedupe:{namespace}:{key}"
