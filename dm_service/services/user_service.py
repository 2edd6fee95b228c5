import logging
from typing import Any, Dict, Optional

from dm_service.repositories.user_repository import UserRepository
from dm_service.services.directory_service import UserDirectory
from dm_service.utils.clock import now_ms


logger = logging.getLogger(__name__)


class UserService:
    """Directory record writes. Every write invalidates the cached entry."""

    def __init__(self, user_repository: UserRepository, directory: UserDirectory, presence=None, presence_ttl: int = 60):
        self.user_repository = user_repository
        self.directory = directory
        self.presence = presence
        self.presence_ttl = presence_ttl

    async def register_user(
        self,
        user_id: str,
        username: Optional[str] = None,
        display_name: Optional[str] = None,
        avatar: Optional[str] = None,
    ) -> Dict[str, Any]:
        doc = await self.user_repository.upsert_registration(
            user_id,
            username=username or "Unknown",
            display_name=display_name or username or "Unknown",
            avatar=avatar or "",
        )
        self.directory.invalidate(user_id)
        logger.info("Registered directory user %s", user_id)
        return {
            "username": doc["username"],
            "displayName": doc["display_name"],
            "avatar": doc["avatar"],
            "isRegistered": True,
            "lastSeen": doc["last_seen"],
        }

    async def heartbeat(self, user_id: str) -> int:
        seen_at = await self.user_repository.touch_last_seen(user_id, now_ms())
        self.directory.invalidate(user_id)
        if self.presence is not None:
            try:
                await self.presence.set_presence(user_id, ttl_seconds=self.presence_ttl)
            except Exception:
                # last_seen already recorded; the Redis key is an optimisation
                logger.warning("Could not refresh presence key for %s", user_id, exc_info=True)
        return seen_at

    async def lookup(self, user_id: str) -> Dict[str, Any]:
        entry = await self.directory.resolve(user_id)
        if entry is None or not entry.is_registered:
            return {"isRegistered": False, "userData": None}
        return {
            "isRegistered": True,
            "userData": {**entry.snapshot(), "lastSeen": entry.last_seen},
        }

    async def presence_of(self, user_id: str, online_window_seconds: int) -> Dict[str, Any]:
        entry = await self.directory.resolve(user_id)
        last_seen = entry.last_seen if entry else None
        online = None
        if self.presence is not None:
            try:
                online = await self.presence.is_online(user_id)
            except Exception:
                logger.warning("Presence lookup for %s failed", user_id, exc_info=True)
        if online is None:
            online = bool(entry and entry.is_online(now_ms(), online_window_seconds))
        return {"userId": user_id, "online": bool(online), "lastSeen": last_seen}
