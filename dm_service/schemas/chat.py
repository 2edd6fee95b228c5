from typing import Literal, Optional

from pydantic import BaseModel, Field


class SendMessageRequest(BaseModel):

    # emptiness is checked by the service so it maps to ValidationError
    content: Optional[str] = None
    conversationId: Optional[str] = None
    recipientId: Optional[str] = None
    type: Literal["text", "image", "file"] = "text"
    # correlation id for optimistic entries, echoed back as clientMessageId
    clientMessageId: Optional[str] = Field(default=None, max_length=128)


class MarkReadRequest(BaseModel):

    conversationId: Optional[str] = None
