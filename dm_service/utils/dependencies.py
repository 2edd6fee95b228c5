from typing import Optional

from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pydantic import ValidationError

from dm_service.core.errors import Unauthenticated
from dm_service.repositories.conversation_repository import ConversationRepository
from dm_service.repositories.device_repository import DeviceRepository
from dm_service.repositories.message_repository import MessageRepository, ReadStateRepository
from dm_service.repositories.notification_repository import NotificationRepository
from dm_service.repositories.user_repository import UserRepository
from dm_service.schemas.user import TokenPayload
from dm_service.services.chat_service import ChatService
from dm_service.services.conversation_service import ConversationStore
from dm_service.services.message_service import MessageStore
from dm_service.services.notification_service import NotificationInbox
from dm_service.services.user_service import UserService
from dm_service.utils.security import decode_access_token


bearer_scheme = HTTPBearer(auto_error=False)


async def get_current_user(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
) -> dict:
    if credentials is None or not credentials.credentials:
        raise Unauthenticated("Unauthorized")
    settings = request.app.state.settings
    payload = decode_access_token(credentials.credentials, settings.JWT_SECRET, settings.JWT_ALGORITHM)
    if not payload.get("sub"):
        raise Unauthenticated("Token has no subject")
    try:
        token = TokenPayload(**payload)
    except ValidationError as exc:
        raise Unauthenticated("Malformed token claims") from exc
    return {"_id": token.sub}


def get_chat_service(request: Request) -> ChatService:
    state = request.app.state
    conversation_repo = ConversationRepository(state.mongo.db, state.policy)
    conversations = ConversationStore(conversation_repo, state.directory)
    messages = MessageStore(
        MessageRepository(state.mongo.db, state.policy),
        ReadStateRepository(state.mongo.db, state.policy),
        conversation_repo,
        conversations,
    )
    return ChatService(
        conversations,
        messages,
        state.directory,
        state.fanout,
        online_window_seconds=state.settings.ONLINE_WINDOW_SECONDS,
    )


def get_user_service(request: Request) -> UserService:
    state = request.app.state
    return UserService(
        UserRepository(state.mongo.db, state.policy),
        state.directory,
        presence=state.presence,
        presence_ttl=state.settings.PRESENCE_TTL_SECONDS,
    )


def get_notification_inbox(request: Request) -> NotificationInbox:
    state = request.app.state
    return NotificationInbox(NotificationRepository(state.mongo.db, state.policy))


def get_device_repository(request: Request) -> DeviceRepository:
    state = request.app.state
    return DeviceRepository(state.mongo.db, state.policy)
