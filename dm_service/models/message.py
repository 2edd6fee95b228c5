from typing import Literal, Optional, TypedDict


MessageType = Literal["text", "image", "file"]


class MessageDocument(TypedDict, total=False):
    # "<conversation_id>:<seq>", increasing with seq
    _id: str
    conversation_id: str
    seq: int
    sender_id: str
    content: str
    type: MessageType
    # epoch ms, server clock
    timestamp: int
    status: Literal["sent"]
    # client correlation id, echoed back for reconciliation
    client_message_id: Optional[str]


class ReadStateDocument(TypedDict, total=False):
    # "<conversation_id>:<reader_id>"
    _id: str
    conversation_id: str
    reader_id: str
    watermark: int
