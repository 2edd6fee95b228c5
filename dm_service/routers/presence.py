from fastapi import APIRouter, Depends, Request

from dm_service.services.user_service import UserService
from dm_service.utils.dependencies import get_current_user, get_user_service


router = APIRouter(prefix="/presence", tags=["chat"])


@router.get("/{user_id}")
async def presence(
    user_id: str,
    request: Request,
    current_user: dict = Depends(get_current_user),
    service: UserService = Depends(get_user_service),
):
    """Online if the Redis presence key is live, else if last seen within the online window."""
    return await service.presence_of(user_id, request.app.state.settings.ONLINE_WINDOW_SECONDS)
