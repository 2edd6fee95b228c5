import logging
from typing import Any, Dict, Iterable, List, Optional

from dm_service.core.errors import StoreUnavailable, ValidationFailed
from dm_service.repositories.conversation_repository import ConversationRepository
from dm_service.repositories.message_repository import MessageRepository, ReadStateRepository
from dm_service.services.conversation_service import ConversationStore
from dm_service.utils.clock import now_ms


logger = logging.getLogger(__name__)

MESSAGE_TYPES = ("text", "image", "file")
HISTORY_PAGE_SIZE = 500


def message_id_for(conversation_id: str, seq: int) -> str:
    return f"{conversation_id}:{seq:010d}"


class MessageStore:
    """Append-only per-conversation message log plus per-reader watermarks."""

    def __init__(
        self,
        message_repo: MessageRepository,
        read_state_repo: ReadStateRepository,
        conversation_repo: ConversationRepository,
        conversations: ConversationStore,
    ) -> None:
        self._message_repo = message_repo
        self._read_state_repo = read_state_repo
        self._conversation_repo = conversation_repo
        self._conversations = conversations

    async def append(
        self,
        conversation_id: str,
        sender_id: str,
        content: Optional[str],
        message_type: str = "text",
        client_message_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        text = (content or "").strip()
        if not text:
            raise ValidationFailed("Message content is required")
        if message_type not in MESSAGE_TYPES:
            raise ValidationFailed(f"Unsupported message type: {message_type}")

        await self._conversations.get_for_participant(conversation_id, sender_id)

        slot = await self._conversation_repo.claim_message_slot(conversation_id, now_ms())
        if slot is None:
            raise StoreUnavailable(f"Conversation {conversation_id} vanished during append")
        seq, timestamp = slot

        message = {
            "_id": message_id_for(conversation_id, seq),
            "conversation_id": conversation_id,
            "seq": seq,
            "sender_id": sender_id,
            "content": text,
            "type": message_type,
            "timestamp": timestamp,
            "status": "sent",
            "client_message_id": client_message_id,
        }
        await self._message_repo.save_message(message)
        await self._conversations.update_on_new_message(conversation_id, message["_id"], timestamp)
        logger.info("Appended message %s from %s", message["_id"], sender_id)
        return message

    async def list(
        self,
        conversation_id: str,
        requester_id: str,
        limit: int = HISTORY_PAGE_SIZE,
        before: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        """The newest ``limit`` messages, oldest first. ``before`` pages back from a message id."""
        await self._conversations.get_for_participant(conversation_id, requester_id)
        before_seq = None
        if before:
            anchor = await self._message_repo.get(before)
            if anchor is None or anchor["conversation_id"] != conversation_id:
                raise ValidationFailed("Unknown message for this conversation")
            before_seq = anchor["seq"]
        return await self._message_repo.get_messages_by_conversation(conversation_id, limit=limit, before_seq=before_seq)

    async def get(self, message_id: Optional[str]) -> Optional[Dict[str, Any]]:
        if not message_id:
            return None
        return await self._message_repo.get(message_id)

    async def get_many(self, message_ids: Iterable[Optional[str]]) -> Dict[str, Dict[str, Any]]:
        return await self._message_repo.get_many(mid for mid in message_ids if mid)

    async def unread_count(self, conversation_id: str, for_user_id: str) -> int:
        watermark = await self._read_state_repo.get_watermark(conversation_id, for_user_id)
        return await self._message_repo.count_unread(conversation_id, for_user_id, watermark)

    async def mark_read(self, conversation_id: str, reader_id: str, at: Optional[int] = None) -> int:
        await self._conversations.get_for_participant(conversation_id, reader_id)
        # the clock moves first, so every later append stamps strictly above the watermark
        watermark = await self._conversation_repo.advance_clock(conversation_id, at if at is not None else now_ms())
        if watermark is None:
            raise StoreUnavailable(f"Conversation {conversation_id} vanished during mark_read")
        await self._read_state_repo.advance(conversation_id, reader_id, watermark)
        return watermark

    async def watermarks(self, conversation_id: str) -> Dict[str, int]:
        return await self._read_state_repo.get_watermarks(conversation_id)

