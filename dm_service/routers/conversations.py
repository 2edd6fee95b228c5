from fastapi import APIRouter, Depends, Query

from dm_service.services.chat_service import ChatService
from dm_service.utils.dependencies import get_chat_service, get_current_user


router = APIRouter(prefix="/conversations", tags=["chat"])


@router.get("")
async def list_conversations(
    limit: int = Query(50, ge=1, le=100),
    current_user: dict = Depends(get_current_user),
    service: ChatService = Depends(get_chat_service),
):
    return await service.list_conversations(current_user["_id"], limit=limit)
