from typing import Any, Dict, Iterable, List, Optional

from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo import ASCENDING, DESCENDING

from dm_service.database.connection import StorePolicy
from dm_service.models.message import MessageDocument, ReadStateDocument


class MessageRepository:

    def __init__(self, db: AsyncIOMotorDatabase, policy: Optional[StorePolicy] = None) -> None:
        self._db = db
        self._policy = policy or StorePolicy()

    @property
    def collection(self):
        return self._db["messages"]

    async def ensure_indexes(self) -> None:
        await self.collection.create_index([("conversation_id", ASCENDING), ("seq", ASCENDING)], unique=True)
        await self.collection.create_index([("conversation_id", ASCENDING), ("timestamp", ASCENDING)])

    async def save_message(self, doc: MessageDocument) -> MessageDocument:
        await self._policy.write(lambda: self.collection.insert_one(dict(doc)), description="messages.insert")
        return doc

    async def get(self, message_id: str) -> Optional[MessageDocument]:
        return await self._policy.read(
            lambda: self.collection.find_one({"_id": message_id}),
            description="messages.find_one",
        )

    async def get_many(self, message_ids: Iterable[str]) -> Dict[str, MessageDocument]:
        ids = [mid for mid in dict.fromkeys(message_ids) if mid]
        if not ids:
            return {}

        async def _query():
            return await self.collection.find({"_id": {"$in": ids}}).to_list(length=len(ids))

        docs = await self._policy.read(_query, description="messages.get_many")
        return {d["_id"]: d for d in docs}

    async def get_messages_by_conversation(
        self,
        conversation_id: str,
        limit: int = 500,
        before_seq: Optional[int] = None,
    ) -> List[MessageDocument]:
        """The newest ``limit`` messages (older than ``before_seq`` if given), oldest first."""
        query: Dict[str, Any] = {"conversation_id": conversation_id}
        if before_seq is not None:
            query["seq"] = {"$lt": before_seq}

        async def _query():
            cursor = self.collection.find(query).sort([("seq", DESCENDING)]).limit(limit)
            return await cursor.to_list(length=limit)

        newest_first = await self._policy.read(_query, description="messages.list")
        return list(reversed(newest_first))

    async def count_unread(self, conversation_id: str, reader_id: str, watermark: int) -> int:
        query = {
            "conversation_id": conversation_id,
            "sender_id": {"$ne": reader_id},
            "timestamp": {"$gt": watermark},
        }
        return await self._policy.read(
            lambda: self.collection.count_documents(query),
            description="messages.count_unread",
        )


class ReadStateRepository:
    """One watermark per (conversation, reader)."""

    def __init__(self, db: AsyncIOMotorDatabase, policy: Optional[StorePolicy] = None) -> None:
        self._db = db
        self._policy = policy or StorePolicy()

    @property
    def collection(self):
        return self._db["read_states"]

    async def ensure_indexes(self) -> None:
        await self.collection.create_index([("conversation_id", ASCENDING)])

    async def get_watermark(self, conversation_id: str, reader_id: str) -> int:
        doc = await self._policy.read(
            lambda: self.collection.find_one({"_id": f"{conversation_id}:{reader_id}"}),
            description="read_states.find_one",
        )
        return int(doc.get("watermark", 0)) if doc else 0

    async def get_watermarks(self, conversation_id: str) -> Dict[str, int]:
        async def _query():
            cursor = self.collection.find({"conversation_id": conversation_id})
            return await cursor.to_list(length=None)

        docs: List[ReadStateDocument] = await self._policy.read(_query, description="read_states.list")
        return {d["reader_id"]: int(d.get("watermark", 0)) for d in docs}

    async def advance(self, conversation_id: str, reader_id: str, watermark: int) -> None:
        await self._policy.write(
            lambda: self.collection.update_one(
                {"_id": f"{conversation_id}:{reader_id}"},
                {
                    "$max": {"watermark": watermark},
                    "$setOnInsert": {"conversation_id": conversation_id, "reader_id": reader_id},
                },
                upsert=True,
            ),
            description="read_states.advance",
        )
