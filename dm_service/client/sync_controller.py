import asyncio
import enum
import logging
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set

import httpx


logger = logging.getLogger(__name__)


class OutgoingState(str, enum.Enum):
    COMPOSING = "composing"
    SENDING = "sending"
    CONFIRMED = "confirmed"
    FAILED = "failed"


class SyncError(Exception):

    def __init__(self, error: str, message: str, status_code: Optional[int] = None) -> None:
        self.error = error
        self.message = message
        self.status_code = status_code
        super().__init__(message)


class SendFailed(SyncError):
    pass


class RecipientNotRegisteredError(SendFailed):
    """Guidance for the user rather than a failure: the recipient has to register first."""

    def __init__(self, recipient_id: Optional[str], message: str) -> None:
        super().__init__("RecipientNotRegistered", message, status_code=400)
        self.recipient_id = recipient_id


@dataclass
class SyncConfig:
    base_url: str
    token: str
    user_id: str
    username: str = "User"
    avatar: str = ""
    heartbeat_interval: float = 30.0
    refresh_interval: float = 60.0
    request_timeout: float = 10.0
    read_retries: int = 1


@dataclass
class SyncState:
    conversations: List[Dict[str, Any]] = field(default_factory=list)
    messages: List[Dict[str, Any]] = field(default_factory=list)
    current_conversation_id: Optional[str] = None
    error: Optional[str] = None
    registration_error: Optional[Dict[str, Any]] = None


class SyncController:
    """Client-side mirror of the messaging API.

    Fetches are single-flight per kind: a newer fetch of the same kind cancels
    the older one, and opening a conversation also cancels a pending
    conversation-list refresh. Sends are never cancelled; each resolves to
    ``confirmed`` or ``failed``.
    """

    def __init__(self, config: SyncConfig, http: Optional[httpx.AsyncClient] = None) -> None:
        self.config = config
        self._owns_http = http is None
        self._http = http or httpx.AsyncClient(
            base_url=config.base_url,
            headers={"Authorization": f"Bearer {config.token}"},
            timeout=config.request_timeout,
        )
        self.state = SyncState()
        self.outgoing: Dict[str, OutgoingState] = {}
        self._registered = False
        self._inflight: Dict[str, asyncio.Task] = {}
        self._sends: Set[asyncio.Task] = set()
        self._background: Set[asyncio.Task] = set()
        self._loops: List[asyncio.Task] = []

    @property
    def loading(self) -> bool:
        return any(not t.done() for t in self._inflight.values())

    # lifecycle

    async def start(self) -> None:
        await self.send_heartbeat()
        await self.fetch_conversations()
        self._loops = [
            asyncio.create_task(self._every(self.config.heartbeat_interval, self.send_heartbeat), name="heartbeat"),
            asyncio.create_task(self._every(self.config.refresh_interval, self.refresh_if_idle), name="refresh"),
        ]

    async def stop(self) -> None:
        tasks = self._loops + list(self._inflight.values()) + list(self._background)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._loops = []
        self._inflight.clear()
        self._background.clear()
        # sends are left to finish
        if self._sends:
            await asyncio.gather(*self._sends, return_exceptions=True)
        if self._owns_http:
            await self._http.aclose()

    async def _every(self, interval: float, action: Callable[[], Awaitable[Any]]) -> None:
        while True:
            await asyncio.sleep(interval)
            await action()

    # heartbeat / registration

    async def send_heartbeat(self) -> None:
        try:
            await self._http.post("/users/heartbeat")
        except httpx.HTTPError as exc:
            logger.debug("Heartbeat failed: %s", exc)

    async def ensure_registered(self) -> bool:
        if self._registered:
            return True
        try:
            resp = await self._http.post(
                "/users/register",
                json={"username": self.config.username, "displayName": self.config.username, "avatar": self.config.avatar},
            )
        except httpx.HTTPError as exc:
            logger.error("User registration failed: %s", exc)
            self.state.error = "Failed to register user"
            return False
        if resp.status_code != 200:
            self.state.error = f"User registration failed: {resp.status_code}"
            return False
        self._registered = True
        return True

    # fetches

    async def refresh_if_idle(self) -> None:
        if self.loading:
            return
        await self.fetch_conversations()

    async def fetch_conversations(self) -> Optional[List[Dict[str, Any]]]:
        if not await self.ensure_registered():
            return None
        data = await self._exclusive("conversations", lambda: self._get_json("/conversations"), "Failed to load conversations")
        if data is None:
            return None
        self.state.conversations = data.get("conversations", [])
        return self.state.conversations

    async def open_conversation(self, conversation_id: str) -> Optional[List[Dict[str, Any]]]:
        # a more specific request supersedes a pending list refresh
        self._cancel("conversations")
        data = await self._exclusive(
            "messages",
            lambda: self._get_json("/messages", params={"conversationId": conversation_id}),
            "Failed to load messages",
        )
        if data is None:
            return None
        pending = [
            m for m in self.state.messages
            if m.get("status") == OutgoingState.SENDING.value and m.get("conversationId") == conversation_id
        ]
        self.state.messages = data.get("messages", []) + pending
        self.state.current_conversation_id = conversation_id
        return self.state.messages

    async def start_conversation(self, user_id: str) -> Optional[str]:
        if not await self.ensure_registered():
            return None
        self.state.registration_error = None
        try:
            resp = await self._http.get("/messages", params={"userId": user_id})
        except httpx.HTTPError as exc:
            logger.error("Start conversation failed: %s", exc)
            self.state.error = "Failed to start conversation"
            return None
        body = _json_or_empty(resp)
        if resp.status_code != 200:
            if body.get("error") == "RecipientNotRegistered":
                self.state.registration_error = body
                return None
            self.state.error = "Failed to start conversation"
            return None
        conversation_id = body.get("conversationId")
        if conversation_id:
            await self.open_conversation(conversation_id)
        return conversation_id

    # sending

    async def send_message(
        self,
        content: str,
        conversation_id: Optional[str] = None,
        recipient_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        text = (content or "").strip()
        if not text:
            raise SendFailed("ValidationError", "Message content is required")
        if not await self.ensure_registered():
            raise SendFailed("Unregistered", self.state.error or "Failed to register user")

        correlation_id = uuid.uuid4().hex
        self.outgoing[correlation_id] = OutgoingState.COMPOSING
        self.state.registration_error = None

        target = conversation_id or (None if recipient_id else self.state.current_conversation_id)
        if target is not None and target == self.state.current_conversation_id:
            self.state.messages.append(self._optimistic_entry(correlation_id, target, text))
        self.outgoing[correlation_id] = OutgoingState.SENDING

        payload = {
            "content": text,
            "conversationId": target,
            "recipientId": recipient_id,
            "type": "text",
            "clientMessageId": correlation_id,
        }
        task = asyncio.create_task(self._deliver(correlation_id, payload))
        self._sends.add(task)
        task.add_done_callback(self._sends.discard)
        # a cancelled caller does not cancel the send itself
        return await asyncio.shield(task)

    async def _deliver(self, correlation_id: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        try:
            resp = await self._http.post("/messages", json=payload)
        except httpx.HTTPError as exc:
            self._rollback(correlation_id)
            self.state.error = "Failed to send message"
            raise SendFailed("NetworkError", str(exc)) from exc

        body = _json_or_empty(resp)
        if resp.status_code != 200:
            self._rollback(correlation_id)
            if body.get("error") == "RecipientNotRegistered":
                self.state.registration_error = body
                raise RecipientNotRegisteredError(body.get("recipientId"), body.get("message", ""))
            self.state.error = "Failed to send message"
            raise SendFailed(body.get("error", "InternalError"), body.get("message", resp.reason_phrase), resp.status_code)

        confirmed = body.get("message")
        if not isinstance(confirmed, dict):
            self._rollback(correlation_id)
            self.state.error = "Failed to send message"
            raise SendFailed("InvalidResponse", "Server response did not include the message", resp.status_code)
        self._reconcile(correlation_id, confirmed)
        self.outgoing[correlation_id] = OutgoingState.CONFIRMED
        self._spawn(self.fetch_conversations())
        return confirmed

    def _optimistic_entry(self, correlation_id: str, conversation_id: str, text: str) -> Dict[str, Any]:
        return {
            "id": f"temp_{correlation_id}",
            "clientMessageId": correlation_id,
            "conversationId": conversation_id,
            "senderId": self.config.user_id,
            "content": text,
            "timestamp": int(time.time() * 1000),
            "type": "text",
            "status": OutgoingState.SENDING.value,
            "senderInfo": {
                "username": self.config.username,
                "displayName": self.config.username,
                "avatar": self.config.avatar,
            },
        }

    def _reconcile(self, correlation_id: str, confirmed: Dict[str, Any]) -> None:
        replaced = False
        messages = []
        for m in self.state.messages:
            if m.get("clientMessageId") == correlation_id and m.get("status") == OutgoingState.SENDING.value:
                messages.append(confirmed)
                replaced = True
            elif m.get("id") == confirmed.get("id"):
                # already delivered by a refetch
                continue
            else:
                messages.append(m)
        if not replaced and confirmed.get("conversationId") == self.state.current_conversation_id:
            messages.append(confirmed)
        self.state.messages = messages

    def _rollback(self, correlation_id: str) -> None:
        self.outgoing[correlation_id] = OutgoingState.FAILED
        self.state.messages = [m for m in self.state.messages if m.get("clientMessageId") != correlation_id]

    # read state

    async def mark_as_read(self, conversation_id: str) -> bool:
        previous = None
        for conv in self.state.conversations:
            if conv.get("id") == conversation_id:
                previous = conv.get("unreadCount", 0)
                conv["unreadCount"] = 0
        try:
            resp = await self._http.post("/messages/mark_read", json={"conversationId": conversation_id})
            ok = resp.status_code == 200
        except httpx.HTTPError as exc:
            logger.error("Mark read failed: %s", exc)
            ok = False
        if not ok:
            for conv in self.state.conversations:
                if conv.get("id") == conversation_id and previous is not None:
                    conv["unreadCount"] = previous
            self.state.error = "Failed to mark conversation as read"
        return ok

    def other_participant(self, conversation: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        for pid in conversation.get("participants", []):
            if pid != self.config.user_id:
                return conversation.get("participantInfo", {}).get(pid)
        return None

    # plumbing

    async def _get_json(self, path: str, params: Optional[Dict[str, str]] = None) -> Dict[str, Any]:
        attempt = 0
        while True:
            try:
                resp = await self._http.get(path, params=params)
                if resp.status_code >= 500 and attempt < self.config.read_retries:
                    attempt += 1
                    continue
                resp.raise_for_status()
                return resp.json()
            except httpx.TransportError:
                if attempt >= self.config.read_retries:
                    raise
                attempt += 1

    async def _exclusive(self, kind: str, fetch: Callable[[], Awaitable[Dict[str, Any]]], failure: str) -> Optional[Dict[str, Any]]:
        """Run ``fetch`` as the only in-flight request of ``kind``; None if superseded or failed."""
        self._cancel(kind)
        task = asyncio.create_task(fetch())
        self._inflight[kind] = task
        self.state.error = None
        try:
            await asyncio.wait({task})
        except asyncio.CancelledError:
            task.cancel()
            raise
        finally:
            if self._inflight.get(kind) is task:
                del self._inflight[kind]
        if task.cancelled():
            return None
        exc = task.exception()
        if exc is not None:
            logger.error("%s: %s", failure, exc)
            self.state.error = failure
            return None
        return task.result()

    def _cancel(self, kind: str) -> None:
        task = self._inflight.pop(kind, None)
        if task is not None and not task.done():
            task.cancel()

    def _spawn(self, coro: Awaitable[Any]) -> None:
        task = asyncio.ensure_future(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)


def _json_or_empty(resp: httpx.Response) -> Dict[str, Any]:
    try:
        body = resp.json()
    except ValueError:
        return {}
    return body if isinstance(body, dict) else {}
