from typing import Optional, TypedDict


class UserDocument(TypedDict, total=False):

    _id: str
    username: str
    display_name: str
    avatar: str
    is_registered: bool
    # epoch ms
    last_seen: Optional[int]
    created_at: int
    updated_at: int
