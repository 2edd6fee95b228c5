from fastapi import APIRouter, Depends, Query

from dm_service.core.errors import NotFound, ValidationFailed
from dm_service.schemas.notification import NotificationActionRequest
from dm_service.services.notification_service import NotificationInbox
from dm_service.utils.dependencies import get_current_user, get_notification_inbox


router = APIRouter(prefix="/notifications", tags=["notifications"])


@router.get("")
async def list_notifications(
    unreadOnly: bool = False,
    limit: int = Query(50, ge=1, le=200),
    current_user: dict = Depends(get_current_user),
    inbox: NotificationInbox = Depends(get_notification_inbox),
):
    return await inbox.list(current_user["_id"], limit=limit, unread_only=unreadOnly)


@router.post("")
async def notification_action(
    body: NotificationActionRequest,
    current_user: dict = Depends(get_current_user),
    inbox: NotificationInbox = Depends(get_notification_inbox),
):
    if body.action == "markRead":
        if not body.notificationId:
            raise ValidationFailed("Missing notificationId")
        if not await inbox.mark_read(current_user["_id"], body.notificationId):
            raise NotFound("Notification not found")
        return {"success": True}
    updated = await inbox.mark_all_read(current_user["_id"])
    return {"success": True, "updatedCount": updated}
