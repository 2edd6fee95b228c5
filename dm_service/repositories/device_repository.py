from typing import Any, Dict, List, Optional

from motor.motor_asyncio import AsyncIOMotorDatabase

from dm_service.database.connection import StorePolicy
from dm_service.models.device import DeviceDocument, PushPlatform
from dm_service.utils.clock import now_ms


class DeviceRepository:

    def __init__(self, db: AsyncIOMotorDatabase, policy: Optional[StorePolicy] = None) -> None:
        self._db = db
        self._policy = policy or StorePolicy()

    @property
    def collection(self):
        return self._db["devices"]

    async def register(self, user_id: str, platform: PushPlatform, token: str) -> Dict[str, Any]:
        await self._policy.write(
            lambda: self.collection.update_one(
                {"user_id": user_id, "platform": platform, "token": token},
                {"$set": {"last_seen_at": now_ms()}},
                upsert=True,
            ),
            description="devices.register",
        )
        return {"user_id": user_id, "platform": platform, "token": token}

    async def get_tokens(self, user_id: str, platform: Optional[PushPlatform] = None) -> List[DeviceDocument]:
        query: Dict[str, Any] = {"user_id": user_id}
        if platform:
            query["platform"] = platform

        async def _query():
            return await self.collection.find(query).to_list(length=100)

        return await self._policy.read(_query, description="devices.get_tokens")
