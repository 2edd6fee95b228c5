from typing import Optional

from pydantic import BaseModel, Field


class RegisterRequest(BaseModel):

    username: Optional[str] = Field(default=None, max_length=64)
    displayName: Optional[str] = Field(default=None, max_length=64)
    avatar: Optional[str] = None


class TokenPayload(BaseModel):

    sub: str
    exp: Optional[int] = None
