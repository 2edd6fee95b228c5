import asyncio
import logging
from typing import Awaitable, Callable, TypeVar

from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorDatabase
from pymongo.errors import ConnectionFailure, DuplicateKeyError, PyMongoError

from dm_service.core.config import Settings
from dm_service.core.errors import StoreUnavailable


logger = logging.getLogger(__name__)

T = TypeVar("T")


class MongoHandle:
    """Explicitly constructed store handle; lives on ``app.state`` for the app's lifetime."""

    def __init__(self, client, db: AsyncIOMotorDatabase, owns_client: bool = True) -> None:
        self.client = client
        self.db = db
        self._owns_client = owns_client

    @classmethod
    def connect(cls, settings: Settings) -> "MongoHandle":
        client = AsyncIOMotorClient(
            settings.MONGODB_URL,
            serverSelectionTimeoutMS=settings.MONGODB_SERVER_SELECTION_TIMEOUT_MS,
        )
        logger.info("Connecting to MongoDB database %s", settings.MONGODB_DB)
        return cls(client, client[settings.MONGODB_DB])

    @classmethod
    def wrap(cls, db: AsyncIOMotorDatabase) -> "MongoHandle":
        return cls(getattr(db, "client", None), db, owns_client=False)

    def close(self) -> None:
        if self._owns_client and self.client is not None:
            self.client.close()
            logger.info("MongoDB connection closed")


async def store_call(
    operation: Callable[[], Awaitable[T]],
    *,
    timeout: float,
    retries: int = 0,
    description: str = "store operation",
) -> T:
    """Run one store operation with a bounded timeout.

    ``operation`` is a zero-argument factory so a retry issues a fresh call.
    Only connection-class failures are retried, and only ``retries`` times;
    callers pass ``retries=0`` for writes. Anything that still fails surfaces
    as :class:`StoreUnavailable`.
    """
    attempt = 0
    while True:
        try:
            return await asyncio.wait_for(operation(), timeout=timeout)
        except DuplicateKeyError:
            # create-if-absent callers decide what a lost race means
            raise
        except ConnectionFailure as exc:
            if attempt < retries:
                attempt += 1
                logger.warning("%s lost its connection (%s), retry %d/%d", description, exc, attempt, retries)
                continue
            logger.exception("%s failed after %d attempt(s)", description, attempt + 1)
            raise StoreUnavailable(f"{description} failed") from exc
        except asyncio.TimeoutError as exc:
            logger.error("%s timed out after %.1fs", description, timeout)
            raise StoreUnavailable(f"{description} timed out") from exc
        except PyMongoError as exc:
            logger.exception("%s failed", description)
            raise StoreUnavailable(f"{description} failed") from exc


class StorePolicy:
    """Timeout/retry settings shared by the repositories' callers."""

    def __init__(self, timeout: float = 5.0, read_retries: int = 1) -> None:
        self.timeout = timeout
        self.read_retries = read_retries

    @classmethod
    def from_settings(cls, settings: Settings) -> "StorePolicy":
        return cls(timeout=settings.STORE_TIMEOUT_SECONDS, read_retries=settings.STORE_READ_RETRIES)

    async def read(self, operation: Callable[[], Awaitable[T]], description: str = "store read") -> T:
        return await store_call(operation, timeout=self.timeout, retries=self.read_retries, description=description)

    async def write(self, operation: Callable[[], Awaitable[T]], description: str = "store write") -> T:
        return await store_call(operation, timeout=self.timeout, retries=0, description=description)

