import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Callable, Dict, Iterable, Optional, Tuple

from dm_service.core.errors import DirectoryUnavailable, StoreUnavailable
from dm_service.repositories.user_repository import UserRepository


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DirectoryEntry:
    user_id: str
    username: str
    display_name: str
    avatar: str
    is_registered: bool
    last_seen: Optional[int]

    @classmethod
    def from_document(cls, doc: dict) -> "DirectoryEntry":
        return cls(
            user_id=str(doc["_id"]),
            username=doc.get("username") or "Unknown",
            display_name=doc.get("display_name") or doc.get("username") or "Unknown",
            avatar=doc.get("avatar") or "",
            is_registered=doc.get("is_registered") is True,
            last_seen=doc.get("last_seen"),
        )

    def snapshot(self) -> dict:
        return {"username": self.username, "displayName": self.display_name, "avatar": self.avatar}

    def is_online(self, now_ms: int, window_seconds: int) -> bool:
        return self.last_seen is not None and (now_ms - self.last_seen) < window_seconds * 1000


UNKNOWN_SNAPSHOT = {"username": "Unknown", "displayName": "Unknown", "avatar": ""}


class UserDirectory:
    """Read-through cache of user directory entries.

    Entries older than ``ttl_seconds`` are re-fetched on the next read. Writers
    call :meth:`invalidate` after changing a user record. When the backing
    store fails, a stale cached entry is served if one exists.
    """

    def __init__(
        self,
        user_repo: UserRepository,
        ttl_seconds: float = 30.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._user_repo = user_repo
        self._ttl = ttl_seconds
        self._clock = clock
        # user_id -> (entry or None for "not found", fetched_at)
        self._cache: Dict[str, Tuple[Optional[DirectoryEntry], float]] = {}
        self.fetch_count = 0

    async def resolve(self, user_id: str) -> Optional[DirectoryEntry]:
        cached = self._cache.get(user_id)
        if cached is not None and self._clock() - cached[1] <= self._ttl:
            return cached[0]

        try:
            self.fetch_count += 1
            doc = await self._user_repo.get_user_by_id(user_id)
        except StoreUnavailable as exc:
            if cached is not None:
                logger.warning("Directory fetch for %s failed, serving stale entry", user_id)
                return cached[0]
            raise DirectoryUnavailable(f"Directory lookup for {user_id} failed") from exc

        entry = DirectoryEntry.from_document(doc) if doc else None
        self._cache[user_id] = (entry, self._clock())
        return entry

    async def resolve_many(self, user_ids: Iterable[str]) -> Dict[str, Optional[DirectoryEntry]]:
        """One lookup per distinct user, however many items reference them."""
        distinct = list(dict.fromkeys(user_ids))
        entries = await asyncio.gather(*(self.resolve(uid) for uid in distinct))
        return dict(zip(distinct, entries))

    async def snapshot(self, user_id: str) -> dict:
        """Display snapshot for denormalising into notifications; never raises."""
        try:
            entry = await self.resolve(user_id)
        except DirectoryUnavailable:
            logger.warning("Directory unavailable, using placeholder snapshot for %s", user_id)
            return dict(UNKNOWN_SNAPSHOT)
        return entry.snapshot() if entry else dict(UNKNOWN_SNAPSHOT)

    def invalidate(self, user_id: str) -> None:
        self._cache.pop(user_id, None)
