from pydantic import BaseModel, Field

from dm_service.models.device import PushPlatform


class DeviceRegisterRequest(BaseModel):

    platform: PushPlatform
    token: str = Field(min_length=1)
