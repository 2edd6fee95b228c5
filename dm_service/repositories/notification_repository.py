from typing import Any, Dict, List, Optional

from bson import ObjectId
from bson.errors import InvalidId
from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo import ASCENDING, DESCENDING

from dm_service.database.connection import StorePolicy
from dm_service.models.notification import NotificationDocument
from dm_service.utils.clock import now_ms


class NotificationRepository:

    def __init__(self, db: AsyncIOMotorDatabase, policy: Optional[StorePolicy] = None) -> None:
        self._db = db
        self._policy = policy or StorePolicy()

    @property
    def collection(self):
        return self._db["notifications"]

    async def ensure_indexes(self) -> None:
        await self.collection.create_index([("recipient_id", ASCENDING), ("timestamp", DESCENDING)])

    async def create(self, recipient_id: str, doc: Dict[str, Any]) -> str:
        payload = {**doc, "recipient_id": recipient_id}
        result = await self._policy.write(
            lambda: self.collection.insert_one(payload),
            description="notifications.insert",
        )
        return str(result.inserted_id)

    async def list_for_user(self, user_id: str, limit: int = 50, unread_only: bool = False) -> List[NotificationDocument]:
        query: Dict[str, Any] = {"recipient_id": user_id}
        if unread_only:
            query["read"] = False

        async def _query():
            cursor = self.collection.find(query).sort([("timestamp", DESCENDING), ("_id", DESCENDING)]).limit(limit)
            return await cursor.to_list(length=limit)

        items = await self._policy.read(_query, description="notifications.list")
        for it in items:
            it["_id"] = str(it.get("_id"))
        return items

    async def count_unread(self, user_id: str) -> int:
        return await self._policy.read(
            lambda: self.collection.count_documents({"recipient_id": user_id, "read": False}),
            description="notifications.count_unread",
        )

    async def mark_read(self, user_id: str, notification_id: str) -> bool:
        """Returns False when the notification does not belong to ``user_id``."""
        try:
            oid = ObjectId(notification_id)
        except InvalidId:
            return False
        result = await self._policy.write(
            lambda: self.collection.update_one(
                {"_id": oid, "recipient_id": user_id},
                {"$set": {"read": True, "read_at": now_ms()}},
            ),
            description="notifications.mark_read",
        )
        return bool(result.matched_count)

    async def mark_all_read(self, user_id: str) -> int:
        result = await self._policy.write(
            lambda: self.collection.update_many(
                {"recipient_id": user_id, "read": False},
                {"$set": {"read": True, "read_at": now_ms()}},
            ),
            description="notifications.mark_all_read",
        )
        return result.modified_count or 0
