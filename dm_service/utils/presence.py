import logging
from typing import Optional

import redis.asyncio as redis

from dm_service.core.config import Settings


logger = logging.getLogger(__name__)


class NoopPresence:

    enabled = False

    async def set_presence(self, user_id: str, ttl_seconds: int = 60) -> None:
        return

    async def is_online(self, user_id: str) -> Optional[bool]:
        # unknown without Redis; callers fall back to last_seen
        return None

    async def close(self) -> None:
        return


class RedisPresence:

    enabled = True

    def __init__(self, url: str) -> None:
        self._redis = redis.from_url(url)

    async def set_presence(self, user_id: str, ttl_seconds: int = 60) -> None:
        await self._redis.set(f"presence:{user_id}", "online", ex=ttl_seconds)

    async def is_online(self, user_id: str) -> Optional[bool]:
        ttl = await self._redis.ttl(f"presence:{user_id}")
        return bool(ttl and ttl > 0)

    async def close(self) -> None:
        await self._redis.aclose()


def build_presence(settings: Settings):
    if not settings.REDIS_URL:
        return NoopPresence()
    logger.info("Presence keys stored in Redis")
    return RedisPresence(settings.REDIS_URL)
