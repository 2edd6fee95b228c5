from typing import Dict, List, Optional, TypedDict


class ConversationDocument(TypedDict, total=False):
    # sha256 of the sorted participant pair; legacy rows may carry any id
    _id: str
    # user_id -> True, for O(1) membership checks
    participants: Dict[str, bool]
    # sorted pair, multikey-indexed for "conversations containing user"
    participant_ids: List[str]
    last_message_id: Optional[str]
    # epoch ms, only ever moves forward
    updated_at: int
    created_at: int
    # per-conversation message sequence and clock used to order appends
    message_seq: int
    clock: int
