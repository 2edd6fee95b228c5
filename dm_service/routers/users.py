from typing import Optional

from fastapi import APIRouter, Depends

from dm_service.schemas.user import RegisterRequest
from dm_service.services.user_service import UserService
from dm_service.utils.dependencies import get_current_user, get_user_service


router = APIRouter(prefix="/users", tags=["users"])


@router.post("/register")
async def register(
    body: Optional[RegisterRequest] = None,
    current_user: dict = Depends(get_current_user),
    service: UserService = Depends(get_user_service),
):
    body = body or RegisterRequest()
    user_data = await service.register_user(
        current_user["_id"],
        username=body.username,
        display_name=body.displayName,
        avatar=body.avatar,
    )
    return {"success": True, "userData": user_data}


@router.post("/heartbeat")
async def heartbeat(current_user: dict = Depends(get_current_user), service: UserService = Depends(get_user_service)):
    last_seen = await service.heartbeat(current_user["_id"])
    return {"success": True, "lastSeen": last_seen}


@router.get("/{user_id}")
async def get_user(user_id: str, current_user: dict = Depends(get_current_user), service: UserService = Depends(get_user_service)):
    return await service.lookup(user_id)
