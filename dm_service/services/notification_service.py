import asyncio
import logging
from typing import Any, Dict, List, Optional

from dm_service.repositories.device_repository import DeviceRepository
from dm_service.repositories.notification_repository import NotificationRepository
from dm_service.services.directory_service import UserDirectory
from dm_service.utils.clock import now_ms


logger = logging.getLogger(__name__)

PREVIEW_LENGTH = 100


class NotificationFanout:
    """Turns each appended message into one notification per other participant.

    The send path only enqueues. A single worker task drains the queue, and
    every recipient is attempted on its own: a failure is logged and the
    worker moves on. Nothing is retried, and queued jobs are abandoned on
    shutdown.
    """

    def __init__(
        self,
        notification_repo: NotificationRepository,
        directory: UserDirectory,
        device_repo: Optional[DeviceRepository] = None,
        push=None,
        presence=None,
        queue_size: int = 1000,
    ) -> None:
        self._notification_repo = notification_repo
        self._directory = directory
        self._device_repo = device_repo
        self._push = push
        self._presence = presence
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=queue_size)
        self._worker: Optional[asyncio.Task] = None

    def start(self) -> None:
        if self._worker is None or self._worker.done():
            self._worker = asyncio.create_task(self._run(), name="notification-fanout")

    async def stop(self) -> None:
        if self._worker is None:
            return
        self._worker.cancel()
        try:
            await self._worker
        except asyncio.CancelledError:
            pass
        self._worker = None
        abandoned = self._queue.qsize()
        if abandoned:
            logger.warning("Abandoning %d queued notification job(s) on shutdown", abandoned)

    async def drain(self) -> None:
        await self._queue.join()

    def on_message_appended(self, message: Dict[str, Any], conversation: Dict[str, Any]) -> None:
        recipients = [
            pid for pid in (conversation.get("participant_ids") or list(conversation.get("participants", {})))
            if pid != message["sender_id"]
        ]
        if not recipients:
            return
        try:
            self._queue.put_nowait((message, recipients))
        except asyncio.QueueFull:
            logger.warning("Notification queue full, dropping fan-out for message %s", message["_id"])

    async def _run(self) -> None:
        while True:
            message, recipients = await self._queue.get()
            try:
                await self.fan_out(message, recipients)
            except Exception:
                logger.exception("Fan-out for message %s aborted", message.get("_id"))
            finally:
                self._queue.task_done()

    async def fan_out(self, message: Dict[str, Any], recipients: List[str]) -> int:
        sender_info = await self._directory.snapshot(message["sender_id"])
        delivered = 0
        for recipient_id in recipients:
            doc = {
                "type": "new_message",
                "from_user_id": message["sender_id"],
                "from_user_info": sender_info,
                "data": {
                    "conversationId": message["conversation_id"],
                    "messageId": message["_id"],
                    "content": message["content"][:PREVIEW_LENGTH],
                },
                "read": False,
                "read_at": None,
                "timestamp": now_ms(),
            }
            try:
                await self._notification_repo.create(recipient_id, doc)
            except Exception:
                logger.exception("Failed to create notification for %s", recipient_id)
                continue
            delivered += 1
            await self._push_if_offline(recipient_id, sender_info, message)
        return delivered

    async def _push_if_offline(self, recipient_id: str, sender_info: Dict[str, str], message: Dict[str, Any]) -> None:
        if self._push is None or not getattr(self._push, "enabled", False) or self._device_repo is None:
            return
        try:
            if self._presence is not None and await self._presence.is_online(recipient_id):
                return
            tokens = await self._device_repo.get_tokens(recipient_id, platform="fcm")
            if not tokens:
                return
            await self._push.send_fcm(
                [t["token"] for t in tokens],
                title=sender_info.get("displayName") or "New message",
                body=message["content"][:PREVIEW_LENGTH],
                data={"conversation_id": message["conversation_id"], "message_id": message["_id"]},
            )
        except Exception:
            logger.exception("Push to %s failed", recipient_id)


class NotificationInbox:

    def __init__(self, notification_repo: NotificationRepository) -> None:
        self._notification_repo = notification_repo

    async def list(self, user_id: str, limit: int = 50, unread_only: bool = False) -> Dict[str, Any]:
        items = await self._notification_repo.list_for_user(user_id, limit=limit, unread_only=unread_only)
        unread = await self._notification_repo.count_unread(user_id)
        return {"notifications": [self.to_view(it) for it in items], "total": len(items), "unreadCount": unread}

    async def mark_read(self, user_id: str, notification_id: str) -> bool:
        return await self._notification_repo.mark_read(user_id, notification_id)

    async def mark_all_read(self, user_id: str) -> int:
        return await self._notification_repo.mark_all_read(user_id)

    @staticmethod
    def to_view(doc: Dict[str, Any]) -> Dict[str, Any]:
        return {
            "id": doc["_id"],
            "type": doc.get("type"),
            "fromUserId": doc.get("from_user_id"),
            "fromUserInfo": doc.get("from_user_info"),
            "data": doc.get("data", {}),
            "read": bool(doc.get("read")),
            "readAt": doc.get("read_at"),
            "timestamp": doc.get("timestamp"),
        }
