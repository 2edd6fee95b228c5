import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from motor.motor_asyncio import AsyncIOMotorDatabase

from dm_service.core.config import Settings, get_settings
from dm_service.core.errors import register_exception_handlers
from dm_service.core.logging import configure_logging
from dm_service.database.connection import MongoHandle, StorePolicy
from dm_service.repositories.conversation_repository import ConversationRepository
from dm_service.repositories.device_repository import DeviceRepository
from dm_service.repositories.message_repository import MessageRepository, ReadStateRepository
from dm_service.repositories.notification_repository import NotificationRepository
from dm_service.repositories.user_repository import UserRepository
from dm_service.routers.conversations import router as conversations_router
from dm_service.routers.devices import router as devices_router
from dm_service.routers.messages import router as messages_router
from dm_service.routers.notifications import router as notifications_router
from dm_service.routers.presence import router as presence_router
from dm_service.routers.users import router as users_router
from dm_service.services.directory_service import UserDirectory
from dm_service.services.notification_service import NotificationFanout
from dm_service.utils.notifications import build_push
from dm_service.utils.presence import build_presence


logger = logging.getLogger(__name__)


async def ensure_indexes(db: AsyncIOMotorDatabase) -> None:
    await ConversationRepository(db).ensure_indexes()
    await MessageRepository(db).ensure_indexes()
    await ReadStateRepository(db).ensure_indexes()
    await NotificationRepository(db).ensure_indexes()


def create_app(settings: Optional[Settings] = None, database: Optional[AsyncIOMotorDatabase] = None) -> FastAPI:
    """Build the service. ``database`` lets callers supply an already-open Motor database."""
    settings = settings or get_settings()
    configure_logging(settings.LOG_LEVEL, settings.LOG_FILE)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        mongo = MongoHandle.wrap(database) if database is not None else MongoHandle.connect(settings)
        policy = StorePolicy.from_settings(settings)
        presence = build_presence(settings)
        directory = UserDirectory(UserRepository(mongo.db, policy), ttl_seconds=settings.DIRECTORY_CACHE_TTL_SECONDS)
        fanout = NotificationFanout(
            NotificationRepository(mongo.db, policy),
            directory,
            device_repo=DeviceRepository(mongo.db, policy),
            push=build_push(settings),
            presence=presence,
            queue_size=settings.NOTIFICATION_QUEUE_SIZE,
        )

        app.state.mongo = mongo
        app.state.policy = policy
        app.state.presence = presence
        app.state.directory = directory
        app.state.fanout = fanout

        await ensure_indexes(mongo.db)
        fanout.start()
        logger.info("%s %s started", settings.PROJECT_NAME, settings.VERSION)
        try:
            yield
        finally:
            await fanout.stop()
            await presence.close()
            mongo.close()

    app = FastAPI(title=settings.PROJECT_NAME, version=settings.VERSION, lifespan=lifespan)
    app.state.settings = settings

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["*"],
    )

    register_exception_handlers(app)

    app.include_router(conversations_router)
    app.include_router(messages_router)
    app.include_router(notifications_router)
    app.include_router(users_router)
    app.include_router(presence_router)
    app.include_router(devices_router)

    @app.get("/healthz")
    async def healthz() -> dict:
        return {"status": "ok"}

    return app


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("dm_service.main:create_app", factory=True, host="0.0.0.0", port=8000)
