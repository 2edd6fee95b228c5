import asyncio
import logging
from typing import Any, Dict, Optional

from dm_service.core.errors import DirectoryUnavailable, ValidationFailed
from dm_service.services.conversation_service import ConversationStore, other_participant
from dm_service.services.directory_service import UNKNOWN_SNAPSHOT, DirectoryEntry, UserDirectory
from dm_service.services.message_service import HISTORY_PAGE_SIZE, MessageStore
from dm_service.services.notification_service import NotificationFanout
from dm_service.utils.clock import now_ms


logger = logging.getLogger(__name__)


class ChatService:

    def __init__(
        self,
        conversations: ConversationStore,
        messages: MessageStore,
        directory: UserDirectory,
        fanout: NotificationFanout,
        online_window_seconds: int = 300,
    ) -> None:
        self._conversations = conversations
        self._messages = messages
        self._directory = directory
        self._fanout = fanout
        self._online_window = online_window_seconds

    async def start_conversation(self, user_id: str, recipient_id: str) -> str:
        return await self._conversations.resolve_or_create(user_id, recipient_id)

    async def send_message(
        self,
        sender_id: str,
        content: Optional[str],
        conversation_id: Optional[str] = None,
        recipient_id: Optional[str] = None,
        message_type: str = "text",
        client_message_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        if not content or not content.strip():
            raise ValidationFailed("Message content is required")
        if not conversation_id and recipient_id:
            conversation_id = await self._conversations.resolve_or_create(sender_id, recipient_id)
        if not conversation_id:
            raise ValidationFailed("No conversation specified")

        conversation = await self._conversations.get_for_participant(conversation_id, sender_id)
        message = await self._messages.append(
            conversation_id,
            sender_id,
            content,
            message_type=message_type,
            client_message_id=client_message_id,
        )
        # durable from here on; notifications cannot fail the send
        self._fanout.on_message_appended(message, conversation)

        sender = await self._safe_resolve(sender_id)
        view = self.message_view(message, sender, status="sent")
        return {"success": True, "message": view, "conversationId": conversation_id}

    async def get_history(
        self,
        conversation_id: str,
        requester_id: str,
        limit: int = HISTORY_PAGE_SIZE,
        before: Optional[str] = None,
    ) -> Dict[str, Any]:
        # one extra row tells whether older messages remain
        page = await self._messages.list(conversation_id, requester_id, limit=limit + 1, before=before)
        has_more = len(page) > limit
        messages = page[1:] if has_more else page
        conversation = await self._conversations.get(conversation_id)
        watermarks = await self._messages.watermarks(conversation_id)
        participants = list((conversation or {}).get("participants", {}))
        directory = await self._directory.resolve_many(participants + [m["sender_id"] for m in messages])

        items = []
        for m in messages:
            recipient_id = other_participant(conversation or {}, m["sender_id"])
            status = self.delivery_status(m, watermarks.get(recipient_id, 0), directory.get(recipient_id))
            items.append(self.message_view(m, directory.get(m["sender_id"]), status=status))
        return {"messages": items, "conversationId": conversation_id, "total": len(items), "hasMore": has_more}

    async def list_conversations(self, user_id: str, limit: int = 50) -> Dict[str, Any]:
        conversations = await self._conversations.list_for_user(user_id, limit=limit)
        others = [other_participant(c, user_id) for c in conversations]
        directory = await self._directory.resolve_many([o for o in others if o])
        last_messages = await self._messages.get_many(c.get("last_message_id") for c in conversations)
        unread_counts = await asyncio.gather(
            *(self._messages.unread_count(str(c["_id"]), user_id) for c in conversations)
        )
        now = now_ms()

        items = []
        for conv, other_id, unread in zip(conversations, others, unread_counts):
            participant_info = {}
            if other_id:
                entry = directory.get(other_id)
                info = entry.snapshot() if entry else dict(UNKNOWN_SNAPSHOT)
                info["isOnline"] = bool(entry and entry.is_online(now, self._online_window))
                participant_info[other_id] = info
            items.append({
                "id": str(conv["_id"]),
                "participants": list(conv.get("participant_ids") or conv.get("participants", {})),
                "lastMessage": self.last_message_view(last_messages.get(conv.get("last_message_id"))),
                "unreadCount": unread,
                "updatedAt": conv.get("updated_at"),
                "participantInfo": participant_info,
            })
        items.sort(key=lambda it: it["updatedAt"] or 0, reverse=True)
        return {"conversations": items, "total": len(items)}

    async def mark_read(self, conversation_id: Optional[str], reader_id: str) -> Dict[str, Any]:
        if not conversation_id:
            raise ValidationFailed("conversationId is required")
        read_at = await self._messages.mark_read(conversation_id, reader_id)
        return {"success": True, "conversationId": conversation_id, "readAt": read_at}

    async def _safe_resolve(self, user_id: str) -> Optional[DirectoryEntry]:
        # the message is already stored; a directory outage only costs the display info
        try:
            return await self._directory.resolve(user_id)
        except DirectoryUnavailable:
            logger.warning("Could not resolve sender %s for response", user_id)
            return None

    @staticmethod
    def delivery_status(message: Dict[str, Any], recipient_watermark: int, recipient: Optional[DirectoryEntry]) -> str:
        ts = message["timestamp"]
        if recipient_watermark >= ts:
            return "read"
        if recipient is not None and recipient.last_seen is not None and recipient.last_seen >= ts:
            return "delivered"
        return "sent"

    @staticmethod
    def message_view(message: Dict[str, Any], sender: Optional[DirectoryEntry], status: str) -> Dict[str, Any]:
        return {
            "id": message["_id"],
            "conversationId": message["conversation_id"],
            "senderId": message["sender_id"],
            "content": message["content"],
            "timestamp": message["timestamp"],
            "type": message.get("type", "text"),
            "status": status,
            "clientMessageId": message.get("client_message_id"),
            "senderInfo": sender.snapshot() if sender else dict(UNKNOWN_SNAPSHOT),
        }

    @staticmethod
    def last_message_view(message: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
        if not message:
            return None
        return {
            "id": message["_id"],
            "senderId": message["sender_id"],
            "content": message["content"],
            "timestamp": message["timestamp"],
            "type": message.get("type", "text"),
        }
