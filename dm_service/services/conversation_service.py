import hashlib
import logging
from typing import Any, Dict, List, Optional

from dm_service.core.errors import AccessDenied, RecipientNotRegistered, ValidationFailed
from dm_service.repositories.conversation_repository import ConversationRepository
from dm_service.services.directory_service import UserDirectory
from dm_service.utils.clock import now_ms


logger = logging.getLogger(__name__)


def conversation_id_for(user_a: str, user_b: str) -> str:
    """Deterministic id for an unordered pair of users."""
    low, high = sorted([user_a, user_b])
    return hashlib.sha256(f"{low}\x1f{high}".encode("utf-8")).hexdigest()[:32]


def other_participant(conversation: Dict[str, Any], user_id: str) -> Optional[str]:
    for pid in conversation.get("participant_ids") or list(conversation.get("participants", {})):
        if pid != user_id:
            return pid
    return None


def is_participant(conversation: Dict[str, Any], user_id: str) -> bool:
    return bool(conversation.get("participants", {}).get(user_id))


class ConversationStore:

    def __init__(self, conversation_repo: ConversationRepository, directory: UserDirectory) -> None:
        self._conversation_repo = conversation_repo
        self._directory = directory

    async def resolve_or_create(self, user_a: str, user_b: str) -> str:
        if not user_b or user_a == user_b:
            raise ValidationFailed("A conversation needs two different participants")

        existing = await self._conversation_repo.find_for_pair(user_a, user_b)
        if existing and len(existing.get("participants", {})) == 2:
            return str(existing["_id"])

        recipient = await self._directory.resolve(user_b)
        if recipient is None or not recipient.is_registered:
            logger.info("Recipient %s is not registered", user_b)
            raise RecipientNotRegistered(user_b)

        conversation_id = conversation_id_for(user_a, user_b)
        now = now_ms()
        doc = {
            "_id": conversation_id,
            "participants": {user_a: True, user_b: True},
            "participant_ids": sorted([user_a, user_b]),
            "last_message_id": None,
            "updated_at": now,
            "created_at": now,
            "message_seq": 0,
            "clock": 0,
        }
        created = await self._conversation_repo.insert_if_absent(doc)
        if created:
            logger.info("Created conversation %s", conversation_id)
        return conversation_id

    async def get(self, conversation_id: str) -> Optional[Dict[str, Any]]:
        return await self._conversation_repo.get(conversation_id)

    async def get_for_participant(self, conversation_id: str, user_id: str) -> Dict[str, Any]:
        conversation = await self._conversation_repo.get(conversation_id)
        if not conversation or not is_participant(conversation, user_id):
            # unknown and foreign conversations look the same to the caller
            raise AccessDenied("Access denied")
        return conversation

    async def list_for_user(self, user_id: str, limit: int = 50) -> List[Dict[str, Any]]:
        return await self._conversation_repo.list_for_user(user_id, limit=limit)

    async def update_on_new_message(self, conversation_id: str, message_id: str, timestamp: int) -> bool:
        applied = await self._conversation_repo.update_on_new_message(conversation_id, message_id, timestamp)
        if not applied:
            logger.debug("Ignored out-of-order update for %s (message %s)", conversation_id, message_id)
        return applied
