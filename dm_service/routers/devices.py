from fastapi import APIRouter, Depends

from dm_service.repositories.device_repository import DeviceRepository
from dm_service.schemas.device import DeviceRegisterRequest
from dm_service.utils.dependencies import get_current_user, get_device_repository


router = APIRouter(prefix="/devices", tags=["push"])


@router.post("/register")
async def register_device(
    body: DeviceRegisterRequest,
    current_user: dict = Depends(get_current_user),
    repo: DeviceRepository = Depends(get_device_repository),
):
    doc = await repo.register(current_user["_id"], body.platform, body.token)
    return {"ok": True, "device": {"platform": doc["platform"], "token": doc["token"]}}
