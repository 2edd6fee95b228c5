from typing import Literal, Optional

from pydantic import BaseModel


class NotificationActionRequest(BaseModel):

    action: Literal["markRead", "markAllRead"]
    notificationId: Optional[str] = None
