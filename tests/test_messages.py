import asyncio
import itertools

import pytest

from dm_service.core.errors import AccessDenied, ValidationFailed
from dm_service.repositories.conversation_repository import ConversationRepository
from dm_service.repositories.message_repository import MessageRepository, ReadStateRepository
from dm_service.services import message_service
from dm_service.services.conversation_service import ConversationStore
from dm_service.services.message_service import HISTORY_PAGE_SIZE, MessageStore
from dm_service.utils.clock import now_ms


class InterleavingConversationRepository(ConversationRepository):
    """Yields after every read so concurrent clock updates contend. Records the swaps that won."""

    def __init__(self, db, policy):
        super().__init__(db, policy)
        self.swaps = []

    async def get(self, conversation_id):
        doc = await super().get(conversation_id)
        await asyncio.sleep(0)
        return doc

    async def _swap_clock(self, current, clock, message_seq):
        won = await super()._swap_clock(current, clock, message_seq)
        if won:
            kind = "read" if message_seq == current.get("message_seq") else "append"
            self.swaps.append((kind, clock))
        return won


@pytest.fixture
def racing(db, policy, directory):
    repo = InterleavingConversationRepository(db, policy)
    conversations = ConversationStore(repo, directory)
    store = MessageStore(MessageRepository(db, policy), ReadStateRepository(db, policy), repo, conversations)
    return repo, conversations, store


@pytest.fixture
def backwards_clock(monkeypatch):
    """Wall clock that runs backwards on every call."""
    ticks = itertools.count(now_ms() + 10_000, -100)
    monkeypatch.setattr(message_service, "now_ms", lambda: next(ticks))


@pytest.fixture
async def conversation_id(conversations, registered):
    await registered("u1", "u2")
    return await conversations.resolve_or_create("u1", "u2")


async def test_append_returns_server_record(messages, conversation_id):
    msg = await messages.append(conversation_id, "u1", "  hey  ", client_message_id="c-1")
    assert msg["content"] == "hey"
    assert msg["status"] == "sent"
    assert msg["type"] == "text"
    assert msg["sender_id"] == "u1"
    assert msg["client_message_id"] == "c-1"
    assert msg["_id"].startswith(conversation_id)


@pytest.mark.parametrize("content", ["", "   ", "\n\t", None])
async def test_append_rejects_blank_content(messages, conversation_id, content):
    with pytest.raises(ValidationFailed):
        await messages.append(conversation_id, "u1", content)


async def test_append_rejects_unknown_type(messages, conversation_id):
    with pytest.raises(ValidationFailed):
        await messages.append(conversation_id, "u1", "hi", message_type="sticker")


async def test_append_requires_participant(messages, conversation_id):
    with pytest.raises(AccessDenied):
        await messages.append(conversation_id, "u3", "hi")


async def test_list_requires_participant(messages, conversation_id):
    with pytest.raises(AccessDenied):
        await messages.list(conversation_id, "u3")


async def test_messages_are_ordered_and_timestamps_increase(messages, conversation_id):
    sent = []
    for i in range(10):
        sender = "u1" if i % 2 else "u2"
        sent.append(await messages.append(conversation_id, sender, f"m{i}"))

    listed = await messages.list(conversation_id, "u1")
    assert [m["content"] for m in listed] == [f"m{i}" for i in range(10)]
    stamps = [m["timestamp"] for m in listed]
    assert all(a < b for a, b in zip(stamps, stamps[1:]))
    assert [m["_id"] for m in listed] == sorted(m["_id"] for m in sent)


async def test_append_moves_conversation_pointer(messages, conversation_repo, conversation_id):
    msg = await messages.append(conversation_id, "u1", "hello")
    doc = await conversation_repo.get(conversation_id)
    assert doc["last_message_id"] == msg["_id"]
    assert doc["updated_at"] == msg["timestamp"]


async def test_unread_count_follows_watermark(messages, conversation_id):
    await messages.append(conversation_id, "u1", "one")
    await messages.append(conversation_id, "u1", "two")
    await messages.append(conversation_id, "u2", "own message")

    assert await messages.unread_count(conversation_id, "u2") == 2
    assert await messages.unread_count(conversation_id, "u1") == 1

    await messages.mark_read(conversation_id, "u2")
    assert await messages.unread_count(conversation_id, "u2") == 0

    await messages.append(conversation_id, "u1", "three")
    assert await messages.unread_count(conversation_id, "u2") == 1


async def test_watermark_never_moves_backwards(messages, conversation_id):
    await messages.append(conversation_id, "u1", "one")
    first = await messages.mark_read(conversation_id, "u2")
    await messages.mark_read(conversation_id, "u2", at=first - 10_000)
    watermarks = await messages.watermarks(conversation_id)
    assert watermarks["u2"] >= first
    assert await messages.unread_count(conversation_id, "u2") == 0


async def test_mark_read_requires_participant(messages, conversation_id):
    with pytest.raises(AccessDenied):
        await messages.mark_read(conversation_id, "u3")


async def test_list_returns_newest_window(messages, conversation_id):
    for i in range(7):
        await messages.append(conversation_id, "u1", f"m{i}")

    newest = await messages.list(conversation_id, "u2", limit=5)
    assert [m["content"] for m in newest] == ["m2", "m3", "m4", "m5", "m6"]

    older = await messages.list(conversation_id, "u2", limit=5, before=newest[0]["_id"])
    assert [m["content"] for m in older] == ["m0", "m1"]


async def test_default_page_ends_at_latest_message(messages, conversation_id):
    for i in range(HISTORY_PAGE_SIZE + 2):
        await messages.append(conversation_id, "u1", f"m{i}")

    listed = await messages.list(conversation_id, "u1")
    assert len(listed) == HISTORY_PAGE_SIZE
    assert listed[-1]["content"] == f"m{HISTORY_PAGE_SIZE + 1}"
    assert listed[0]["content"] == "m2"


async def test_paging_anchor_must_belong_to_conversation(messages, conversation_id):
    with pytest.raises(ValidationFailed):
        await messages.list(conversation_id, "u1", before="elsewhere:0000000001")


async def test_concurrent_appends_keep_seq_and_timestamp_aligned(racing, registered, backwards_clock):
    repo, conversations, store = racing
    await registered("u1", "u2")
    cid = await conversations.resolve_or_create("u1", "u2")

    await asyncio.gather(*(store.append(cid, "u1" if i % 2 else "u2", f"m{i}") for i in range(8)))

    listed = await store.list(cid, "u1")
    assert [m["seq"] for m in listed] == list(range(1, 9))
    stamps = [m["timestamp"] for m in listed]
    assert all(a < b for a, b in zip(stamps, stamps[1:]))
    conversation = await repo.get(cid)
    assert conversation["last_message_id"] == listed[-1]["_id"]
    assert conversation["clock"] == stamps[-1]


async def test_read_mark_racing_an_append(racing, registered, backwards_clock):
    repo, conversations, store = racing
    await registered("u1", "u2")
    cid = await conversations.resolve_or_create("u1", "u2")

    for i in range(6):
        await asyncio.gather(store.mark_read(cid, "u2"), store.append(cid, "u1", f"r{i}"))
        last_kind = repo.swaps[-1][0]
        # an append that won its slot after the read mark is always unread
        expected = 1 if last_kind == "append" else 0
        assert await store.unread_count(cid, "u2") == expected


async def test_append_after_future_watermark_is_unread(messages, conversation_id):
    watermark = await messages.mark_read(conversation_id, "u2", at=now_ms() + 60_000)
    msg = await messages.append(conversation_id, "u1", "later")
    assert msg["timestamp"] > watermark
    assert await messages.unread_count(conversation_id, "u2") == 1
