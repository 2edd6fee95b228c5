from typing import Any, Dict, Literal, Optional, TypedDict


NotificationType = Literal["new_message"]


class UserSnapshot(TypedDict):
    username: str
    displayName: str
    avatar: str


class NotificationDocument(TypedDict, total=False):
    _id: str
    recipient_id: str
    type: NotificationType
    from_user_id: str
    # copied at creation time, never joined live
    from_user_info: UserSnapshot
    # conversationId, messageId, content preview
    data: Dict[str, Any]
    read: bool
    read_at: Optional[int]
    timestamp: int
