from typing import List, Optional, Tuple

from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo import ASCENDING, DESCENDING
from pymongo.errors import DuplicateKeyError

from dm_service.core.errors import StoreUnavailable
from dm_service.database.connection import StorePolicy
from dm_service.models.conversation import ConversationDocument


# compare-and-swap rounds before a contended clock update gives up
MAX_CLOCK_ATTEMPTS = 50


class ConversationRepository:

    def __init__(self, db: AsyncIOMotorDatabase, policy: Optional[StorePolicy] = None) -> None:
        self._db = db
        self._policy = policy or StorePolicy()

    @property
    def collection(self):
        return self._db["conversations"]

    async def ensure_indexes(self) -> None:
        await self.collection.create_index([("participant_ids", ASCENDING)])
        await self.collection.create_index([("updated_at", DESCENDING)])

    async def get(self, conversation_id: str) -> Optional[ConversationDocument]:
        return await self._policy.read(
            lambda: self.collection.find_one({"_id": conversation_id}),
            description="conversations.find_one",
        )

    async def find_for_pair(self, user_a: str, user_b: str) -> Optional[ConversationDocument]:
        # exact match on the sorted pair also finds rows created before ids were derived
        pair = sorted([user_a, user_b])
        return await self._policy.read(
            lambda: self.collection.find_one({"participant_ids": pair}),
            description="conversations.find_for_pair",
        )

    async def insert_if_absent(self, doc: ConversationDocument) -> bool:
        """Create-if-absent on ``doc["_id"]``. Returns False when the id already exists."""
        try:
            await self._policy.write(lambda: self.collection.insert_one(dict(doc)), description="conversations.insert")
        except DuplicateKeyError:
            return False
        return True

    async def list_for_user(self, user_id: str, limit: int = 50) -> List[ConversationDocument]:
        async def _query():
            cursor = (
                self.collection.find({"participant_ids": user_id})
                .sort([("updated_at", DESCENDING), ("_id", DESCENDING)])
                .limit(limit)
            )
            return await cursor.to_list(length=limit)

        return await self._policy.read(_query, description="conversations.list_for_user")

    async def claim_message_slot(self, conversation_id: str, now: int) -> Optional[Tuple[int, int]]:
        """Reserve the next sequence number and a timestamp above the conversation clock.

        Returns ``(seq, timestamp)``, or None if the conversation does not exist.
        Both fields move in one compare-and-swap, so a higher seq always gets a
        higher timestamp, and nothing is stamped at or below a read watermark
        taken before the claim.
        """
        for _ in range(MAX_CLOCK_ATTEMPTS):
            current = await self.get(conversation_id)
            if current is None:
                return None
            seq = int(current.get("message_seq") or 0) + 1
            stamp = max(now, int(current.get("clock") or 0) + 1, int(current.get("updated_at") or 0))
            if await self._swap_clock(current, stamp, message_seq=seq):
                return seq, stamp
        raise StoreUnavailable(f"Could not claim a message slot in {conversation_id}")

    async def advance_clock(self, conversation_id: str, at: int) -> Optional[int]:
        """Move the clock to at least ``at`` and return the resulting value.

        Every slot claimed afterwards is stamped strictly above the returned
        value. Returns None if the conversation does not exist.
        """
        for _ in range(MAX_CLOCK_ATTEMPTS):
            current = await self.get(conversation_id)
            if current is None:
                return None
            clock = max(at, int(current.get("clock") or 0))
            if await self._swap_clock(current, clock, message_seq=current.get("message_seq")):
                return clock
        raise StoreUnavailable(f"Could not advance the clock of {conversation_id}")

    async def _swap_clock(self, current: ConversationDocument, clock: int, message_seq: Optional[int]) -> bool:
        # a null filter value also matches rows written before these fields existed
        expected = {
            "_id": current["_id"],
            "message_seq": current.get("message_seq"),
            "clock": current.get("clock"),
        }
        result = await self._policy.write(
            lambda: self.collection.update_one(expected, {"$set": {"clock": clock, "message_seq": message_seq}}),
            description="conversations.swap_clock",
        )
        return bool(result.matched_count)

    async def update_on_new_message(self, conversation_id: str, message_id: str, timestamp: int) -> bool:
        """Move the last-message pointer forward; a write older than ``updated_at`` is ignored."""
        result = await self._policy.write(
            lambda: self.collection.update_one(
                {"_id": conversation_id, "updated_at": {"$lte": timestamp}},
                {"$set": {"last_message_id": message_id, "updated_at": timestamp}},
            ),
            description="conversations.update_on_new_message",
        )
        return bool(result.modified_count)
