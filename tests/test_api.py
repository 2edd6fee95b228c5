import time

from jose import jwt

from conftest import TEST_SECRET, auth


def send(client, sender, content, **extra):
    return client.post("/messages", json={"content": content, **extra}, headers=auth(sender))


def drain(client):
    client.portal.call(client.app.state.fanout.drain)


def open_conversation(client, user, other):
    resp = client.get("/messages", params={"userId": other}, headers=auth(user))
    assert resp.status_code == 200, resp.text
    return resp.json()["conversationId"]


def test_healthz(client):
    assert client.get("/healthz").json() == {"status": "ok"}


def test_requests_without_token_are_rejected(client):
    resp = client.get("/conversations")
    assert resp.status_code == 401
    assert resp.json()["error"] == "Unauthenticated"

    resp = client.get("/conversations", headers={"Authorization": "Bearer garbage"})
    assert resp.status_code == 401


def test_conversation_and_unread_flow(client, register_via_api):
    register_via_api("u1", "u2")
    cid = open_conversation(client, "u1", "u2")
    assert open_conversation(client, "u2", "u1") == cid

    resp = send(client, "u1", "hi", conversationId=cid)
    assert resp.status_code == 200, resp.text
    body = resp.json()
    assert body["success"] is True
    assert body["conversationId"] == cid
    assert body["message"]["status"] == "sent"
    assert body["message"]["senderInfo"]["displayName"] == "U1"

    convs = client.get("/conversations", headers=auth("u2")).json()
    assert convs["total"] == 1
    conv = convs["conversations"][0]
    assert conv["id"] == cid
    assert conv["unreadCount"] == 1
    assert conv["lastMessage"]["content"] == "hi"
    assert conv["participantInfo"]["u1"]["displayName"] == "U1"
    assert conv["participantInfo"]["u1"]["isOnline"] is True

    resp = client.post("/messages/mark_read", json={"conversationId": cid}, headers=auth("u2"))
    assert resp.status_code == 200
    assert resp.json()["success"] is True

    conv = client.get("/conversations", headers=auth("u2")).json()["conversations"][0]
    assert conv["unreadCount"] == 0

    send(client, "u1", "are you there?", conversationId=cid)
    conv = client.get("/conversations", headers=auth("u2")).json()["conversations"][0]
    assert conv["unreadCount"] == 1
    # the sender's own messages never count as unread for them
    conv = client.get("/conversations", headers=auth("u1")).json()["conversations"][0]
    assert conv["unreadCount"] == 0


def test_bare_messages_get_lists_conversations(client, register_via_api):
    register_via_api("u1", "u2")
    cid = open_conversation(client, "u1", "u2")
    send(client, "u1", "hello", conversationId=cid)

    via_alias = client.get("/messages", headers=auth("u1")).json()
    assert [c["id"] for c in via_alias["conversations"]] == [cid]


def test_unregistered_recipient(client, register_via_api, db):
    register_via_api("u3")

    resp = client.get("/messages", params={"userId": "u4"}, headers=auth("u3"))
    assert resp.status_code == 400
    body = resp.json()
    assert body["error"] == "RecipientNotRegistered"
    assert body["recipientId"] == "u4"
    assert body["userRegistered"] is False

    resp = send(client, "u3", "hello?", recipientId="u4")
    assert resp.status_code == 400
    assert resp.json()["error"] == "RecipientNotRegistered"

    assert client.portal.call(db["conversations"].count_documents, {}) == 0
    assert client.get("/conversations", headers=auth("u3")).json()["total"] == 0


def test_send_by_recipient_creates_conversation(client, register_via_api):
    register_via_api("u1", "u2")
    resp = send(client, "u1", "first contact", recipientId="u2")
    assert resp.status_code == 200, resp.text
    cid = resp.json()["conversationId"]
    assert open_conversation(client, "u2", "u1") == cid


def test_blank_content_is_rejected(client, register_via_api):
    register_via_api("u1", "u2")
    cid = open_conversation(client, "u1", "u2")
    for content in ("", "   "):
        resp = send(client, "u1", content, conversationId=cid)
        assert resp.status_code == 400
        assert resp.json()["error"] == "ValidationError"

    resp = client.post("/messages", json={"content": "x", "type": "sticker", "conversationId": cid}, headers=auth("u1"))
    assert resp.status_code == 400
    assert resp.json()["error"] == "ValidationError"

    history = client.get("/messages", params={"conversationId": cid}, headers=auth("u1")).json()
    assert history["total"] == 0


def test_outsider_cannot_read_or_post(client, register_via_api):
    register_via_api("u1", "u2", "u3")
    cid = open_conversation(client, "u1", "u2")
    send(client, "u1", "private", conversationId=cid)

    resp = client.get("/messages", params={"conversationId": cid}, headers=auth("u3"))
    assert resp.status_code == 403
    assert resp.json()["error"] == "AccessDenied"

    resp = send(client, "u3", "let me in", conversationId=cid)
    assert resp.status_code == 403

    resp = client.post("/messages/mark_read", json={"conversationId": cid}, headers=auth("u3"))
    assert resp.status_code == 403


def test_client_message_id_is_echoed(client, register_via_api):
    register_via_api("u1", "u2")
    cid = open_conversation(client, "u1", "u2")
    first = send(client, "u1", "same", conversationId=cid, clientMessageId="a").json()["message"]
    second = send(client, "u1", "same", conversationId=cid, clientMessageId="b").json()["message"]
    assert first["clientMessageId"] == "a"
    assert second["clientMessageId"] == "b"
    assert first["id"] != second["id"]

    history = client.get("/messages", params={"conversationId": cid}, headers=auth("u2")).json()
    assert [m["clientMessageId"] for m in history["messages"]] == ["a", "b"]
    assert history["messages"][0]["timestamp"] < history["messages"][1]["timestamp"]


def test_history_projects_delivery_status(client, register_via_api):
    register_via_api("u1", "u2")
    cid = open_conversation(client, "u1", "u2")

    send(client, "u1", "one", conversationId=cid)
    client.post("/messages/mark_read", json={"conversationId": cid}, headers=auth("u2"))
    send(client, "u1", "two", conversationId=cid)
    time.sleep(0.01)
    client.post("/users/heartbeat", headers=auth("u2"))
    time.sleep(0.01)
    send(client, "u1", "three", conversationId=cid)

    history = client.get("/messages", params={"conversationId": cid}, headers=auth("u1")).json()
    assert [m["status"] for m in history["messages"]] == ["read", "delivered", "sent"]


def test_notifications_inbox(client, register_via_api):
    register_via_api("u1", "u2")
    cid = open_conversation(client, "u1", "u2")
    send(client, "u1", "ping", conversationId=cid)
    send(client, "u1", "pong", conversationId=cid)
    drain(client)

    assert client.get("/notifications", headers=auth("u1")).json()["total"] == 0

    inbox = client.get("/notifications", headers=auth("u2")).json()
    assert inbox["total"] == 2
    assert inbox["unreadCount"] == 2
    latest = inbox["notifications"][0]
    assert latest["type"] == "new_message"
    assert latest["fromUserId"] == "u1"
    assert latest["fromUserInfo"]["displayName"] == "U1"
    assert latest["data"]["conversationId"] == cid

    resp = client.post("/notifications", json={"action": "markRead", "notificationId": latest["id"]}, headers=auth("u1"))
    assert resp.status_code == 404

    resp = client.post("/notifications", json={"action": "markRead", "notificationId": latest["id"]}, headers=auth("u2"))
    assert resp.json() == {"success": True}
    assert client.get("/notifications", headers=auth("u2")).json()["unreadCount"] == 1

    resp = client.post("/notifications", json={"action": "markAllRead"}, headers=auth("u2"))
    assert resp.json() == {"success": True, "updatedCount": 1}

    resp = client.post("/notifications", json={"action": "explode"}, headers=auth("u2"))
    assert resp.status_code == 400


def test_user_lookup_and_presence(client, register_via_api):
    register_via_api("u1")

    found = client.get("/users/u1", headers=auth("u2")).json()
    assert found["isRegistered"] is True
    assert found["userData"]["displayName"] == "U1"
    assert client.get("/users/ghost", headers=auth("u2")).json() == {"isRegistered": False, "userData": None}

    presence = client.get("/presence/u1", headers=auth("u2")).json()
    assert presence["userId"] == "u1"
    assert presence["online"] is True
    assert client.get("/presence/ghost", headers=auth("u2")).json()["online"] is False


def test_register_device(client):
    resp = client.post("/devices/register", json={"platform": "fcm", "token": "abc"}, headers=auth("u1"))
    assert resp.status_code == 200
    assert resp.json()["device"] == {"platform": "fcm", "token": "abc"}

    resp = client.post("/devices/register", json={"platform": "carrier-pigeon", "token": "abc"}, headers=auth("u1"))
    assert resp.status_code == 400


def test_history_looks_up_each_user_once(client, register_via_api):
    register_via_api("u1", "u2")
    cid = open_conversation(client, "u1", "u2")
    for i in range(10):
        send(client, "u1" if i % 2 else "u2", f"m{i}", conversationId=cid)

    directory = client.app.state.directory
    directory.invalidate("u1")
    directory.invalidate("u2")
    before = directory.fetch_count
    history = client.get("/messages", params={"conversationId": cid}, headers=auth("u1")).json()
    assert history["total"] == 10
    assert directory.fetch_count - before == 2


def bearer(claims):
    return {"Authorization": f"Bearer {jwt.encode(claims, TEST_SECRET, algorithm='HS256')}"}


def test_token_without_expiry_is_accepted(client, register_via_api):
    register_via_api("u1")
    resp = client.get("/conversations", headers=bearer({"sub": "u1"}))
    assert resp.status_code == 200, resp.text
    assert resp.json()["total"] == 0


def test_token_with_malformed_claims_is_rejected(client):
    for claims in ({"sub": ["u1"]}, {"sub": "u1", "exp": "tomorrow"}):
        resp = client.get("/conversations", headers=bearer(claims))
        assert resp.status_code == 401
        assert resp.json()["error"] == "Unauthenticated"


def test_history_pages_back_from_newest(client, register_via_api):
    register_via_api("u1", "u2")
    cid = open_conversation(client, "u1", "u2")
    for i in range(7):
        send(client, "u1", f"m{i}", conversationId=cid)

    page = client.get("/messages", params={"conversationId": cid, "pageSize": 5}, headers=auth("u2")).json()
    assert [m["content"] for m in page["messages"]] == ["m2", "m3", "m4", "m5", "m6"]
    assert page["hasMore"] is True

    params = {"conversationId": cid, "pageSize": 5, "before": page["messages"][0]["id"]}
    older = client.get("/messages", params=params, headers=auth("u2")).json()
    assert [m["content"] for m in older["messages"]] == ["m0", "m1"]
    assert older["hasMore"] is False

    resp = client.get("/messages", params={"conversationId": cid, "before": "nope"}, headers=auth("u2"))
    assert resp.status_code == 400
    assert resp.json()["error"] == "ValidationError"


def test_conversation_list_summarises_each_conversation(client, register_via_api):
    register_via_api("u1", "u2", "u3")
    with_u2 = open_conversation(client, "u1", "u2")
    with_u3 = open_conversation(client, "u1", "u3")
    send(client, "u2", "from two", conversationId=with_u2)
    send(client, "u2", "again two", conversationId=with_u2)
    send(client, "u3", "from three", conversationId=with_u3)
    send(client, "u1", "reply three", conversationId=with_u3)

    convs = client.get("/conversations", headers=auth("u1")).json()["conversations"]
    summary = {c["id"]: (c["lastMessage"]["content"], c["unreadCount"]) for c in convs}
    assert summary == {with_u2: ("again two", 2), with_u3: ("reply three", 1)}
    # most recently active first
    assert [c["id"] for c in convs] == [with_u3, with_u2]
