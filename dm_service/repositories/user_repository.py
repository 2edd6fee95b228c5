from typing import Optional

from motor.motor_asyncio import AsyncIOMotorDatabase

from dm_service.database.connection import StorePolicy
from dm_service.models.user import UserDocument
from dm_service.utils.clock import now_ms


class UserRepository:

    def __init__(self, db: AsyncIOMotorDatabase, policy: Optional[StorePolicy] = None) -> None:
        self._collection = db.get_collection("users")
        self._policy = policy or StorePolicy()

    async def get_user_by_id(self, user_id: str) -> Optional[UserDocument]:
        return await self._policy.read(
            lambda: self._collection.find_one({"_id": user_id}),
            description="users.find_one",
        )

    async def upsert_registration(self, user_id: str, username: str, display_name: str, avatar: str) -> UserDocument:
        now = now_ms()
        doc = {
            "username": username,
            "display_name": display_name,
            "avatar": avatar,
            "is_registered": True,
            "last_seen": now,
            "updated_at": now,
        }
        await self._policy.write(
            lambda: self._collection.update_one(
                {"_id": user_id},
                {"$set": doc, "$setOnInsert": {"created_at": now}},
                upsert=True,
            ),
            description="users.upsert",
        )
        return {"_id": user_id, **doc}

    async def touch_last_seen(self, user_id: str, at: Optional[int] = None) -> int:
        ts = at if at is not None else now_ms()
        # $max keeps last_seen monotonic under out-of-order heartbeats
        await self._policy.write(
            lambda: self._collection.update_one({"_id": user_id}, {"$max": {"last_seen": ts}}),
            description="users.touch_last_seen",
        )
        return ts
