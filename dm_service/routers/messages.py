from typing import Optional

from fastapi import APIRouter, Depends, Query

from dm_service.schemas.chat import MarkReadRequest, SendMessageRequest
from dm_service.services.chat_service import ChatService
from dm_service.services.message_service import HISTORY_PAGE_SIZE
from dm_service.utils.dependencies import get_chat_service, get_current_user


router = APIRouter(prefix="/messages", tags=["chat"])


@router.get("")
async def get_messages(
    conversationId: Optional[str] = None,
    userId: Optional[str] = None,
    limit: int = Query(50, ge=1, le=100),
    before: Optional[str] = None,
    pageSize: int = Query(HISTORY_PAGE_SIZE, ge=1, le=HISTORY_PAGE_SIZE),
    current_user: dict = Depends(get_current_user),
    service: ChatService = Depends(get_chat_service),
):
    if conversationId:
        return await service.get_history(conversationId, current_user["_id"], limit=pageSize, before=before)
    if userId:
        conversation_id = await service.start_conversation(current_user["_id"], userId)
        return {"conversationId": conversation_id}
    # no target: the caller's conversation list
    return await service.list_conversations(current_user["_id"], limit=limit)


@router.post("")
async def send_message(
    body: SendMessageRequest,
    current_user: dict = Depends(get_current_user),
    service: ChatService = Depends(get_chat_service),
):
    return await service.send_message(
        current_user["_id"],
        body.content,
        conversation_id=body.conversationId,
        recipient_id=body.recipientId,
        message_type=body.type,
        client_message_id=body.clientMessageId,
    )


@router.post("/mark_read")
async def mark_read(
    body: MarkReadRequest,
    current_user: dict = Depends(get_current_user),
    service: ChatService = Depends(get_chat_service),
):
    return await service.mark_read(body.conversationId, current_user["_id"])
