from __future__ import annotations

import json

from niya.core.exceptions import UpstreamUnavailableError
from niya.services.ai_client import SegmentedReply, SingleReply


def _create(client, headers, agent_id="therapist"):
    resp = client.post("/chats", json={"agentId": agent_id}, headers=headers)
    assert resp.status_code == 201
    return resp.json()["data"]


def _sse_frames(body: str) -> list[dict]:
    frames = []
    for block in body.strip().split("\n\n"):
        data = "".join(
            line[len("data: ") :] for line in block.splitlines() if line.startswith("data: ")
        )
        frames.append(json.loads(data))
    return frames


def test_requests_without_token_are_unauthorized(client):
    resp = client.get("/chats")
    assert resp.status_code == 401
    assert resp.json()["error"] == "Authentication token required"


def test_unknown_user_is_unauthorized(client, authenticator):
    headers = {"Authorization": f"Bearer {authenticator.issue_token(999)}"}
    resp = client.get("/chats", headers=headers)
    assert resp.status_code == 401


def test_create_and_list_chats(client, make_user, auth_headers):
    user = make_user()
    headers = auth_headers(user)

    chat = _create(client, headers, agent_id="dietician")
    assert chat["title"] == "New dietician chat"
    assert chat["agentId"] == "dietician"
    assert chat["messageCount"] == 0

    resp = client.get("/chats", headers=headers)
    assert resp.status_code == 200
    body = resp.json()
    assert body["success"] is True
    assert [c["id"] for c in body["data"]] == [chat["id"]]


def test_create_chat_rejects_unknown_agent(client, make_user, auth_headers):
    resp = client.post("/chats", json={"agentId": "astrologer"}, headers=auth_headers(make_user()))
    assert resp.status_code == 400
    assert resp.json()["error"] == "Invalid agent ID"


def test_rename_and_delete_chat(client, make_user, auth_headers):
    headers = auth_headers(make_user())
    chat = _create(client, headers)

    resp = client.patch(f"/chats/{chat['id']}", json={"title": "Sunday"}, headers=headers)
    assert resp.status_code == 200
    assert resp.json()["data"]["title"] == "Sunday"

    resp = client.delete(f"/chats/{chat['id']}", headers=headers)
    assert resp.json() == {"success": True}
    assert client.get(f"/chats/{chat['id']}", headers=headers).status_code == 404


def test_foreign_chat_is_not_found(client, make_user, auth_headers):
    chat = _create(client, auth_headers(make_user()))
    intruder = auth_headers(make_user())

    assert client.get(f"/chats/{chat['id']}", headers=intruder).status_code == 404
    resp = client.post(
        f"/chats/{chat['id']}/messages",
        json={"content": "hi", "agentId": "therapist"},
        headers=intruder,
    )
    assert resp.status_code == 404
    assert resp.json()["error"] == "Chat not found"


def test_send_single_reply(client, make_user, auth_headers, fake_ai):
    headers = auth_headers(make_user())
    chat = _create(client, headers)
    fake_ai.queue(SingleReply("That sounds like a long day."))

    resp = client.post(
        f"/chats/{chat['id']}/messages",
        json={"content": "I'm tired", "agentId": "therapist"},
        headers=headers,
    )

    assert resp.status_code == 200
    data = resp.json()["data"]
    assert data["role"] == "assistant"
    assert data["content"] == "That sounds like a long day."
    assert data["isMultiMessage"] is False
    assert data["additionalMessages"] == []

    detail = client.get(f"/chats/{chat['id']}", headers=headers).json()["data"]
    assert [m["role"] for m in detail["messages"]] == ["user", "assistant"]


def test_send_segmented_reply_persists_every_segment(client, make_user, auth_headers, fake_ai):
    headers = auth_headers(make_user())
    chat = _create(client, headers)
    fake_ai.queue(SegmentedReply(("one", "two", "three")))

    resp = client.post(
        f"/chats/{chat['id']}/messages",
        json={"content": "tell me more", "agentId": "therapist"},
        headers=headers,
    )

    body = resp.json()
    assert body["isMultiMessage"] is True
    assert body["totalMessages"] == 3
    assert body["messages"] == ["one", "two", "three"]
    assert body["data"]["additionalMessages"] == ["two", "three"]

    listed = client.get("/chats", headers=headers).json()["data"][0]
    assert listed["messageCount"] == 4
    assert listed["lastMessage"] == "three"


def test_send_multi_endpoint_shape(client, make_user, auth_headers, fake_ai):
    headers = auth_headers(make_user())
    chat = _create(client, headers)
    fake_ai.queue(SegmentedReply(("hey", "there")))

    resp = client.post(
        f"/chats/{chat['id']}/messages/multi",
        json={"content": "hi", "agentId": "therapist"},
        headers=headers,
    )

    data = resp.json()["data"]
    assert data["messages"] == ["hey", "there"]
    assert data["isMultiMessage"] is True
    assert data["totalMessages"] == 2
    assert data["primaryMessage"]["content"] == "hey"


def test_send_rejects_blank_content(client, make_user, auth_headers):
    headers = auth_headers(make_user())
    chat = _create(client, headers)

    resp = client.post(
        f"/chats/{chat['id']}/messages",
        json={"content": "   ", "agentId": "therapist"},
        headers=headers,
    )
    assert resp.status_code == 422
    assert resp.json()["code"] == "validation_error"

    stream = client.post(
        f"/chats/{chat['id']}/messages/stream",
        json={"content": "", "agentId": "therapist"},
        headers=headers,
    )
    assert stream.status_code == 422


def test_send_upstream_failure_keeps_user_message(client, make_user, auth_headers, fake_ai):
    headers = auth_headers(make_user())
    chat = _create(client, headers)
    fake_ai.queue(UpstreamUnavailableError("AI service unavailable"))

    resp = client.post(
        f"/chats/{chat['id']}/messages",
        json={"content": "hello?", "agentId": "therapist"},
        headers=headers,
    )

    assert resp.status_code == 503
    messages = client.get(f"/chats/{chat['id']}/messages", headers=headers).json()["data"]
    assert [m["role"] for m in messages["messages"]] == ["user"]


def test_message_paging_is_oldest_first_within_page(
    client, make_user, auth_headers, store, fake_ai
):
    user = make_user()
    headers = auth_headers(user)
    chat = _create(client, headers)
    for i in range(5):
        store.create_message(
            chat_id=chat["id"], user_id=user.id, agent_id="therapist", role="user", content=f"m{i}"
        )

    first = client.get(
        f"/chats/{chat['id']}/messages", params={"page": 1, "limit": 2}, headers=headers
    ).json()["data"]
    assert [m["content"] for m in first["messages"]] == ["m3", "m4"]
    assert first["hasMore"] is True
    assert first["total"] == 5

    last = client.get(
        f"/chats/{chat['id']}/messages", params={"page": 3, "limit": 2}, headers=headers
    ).json()["data"]
    assert [m["content"] for m in last["messages"]] == ["m0"]
    assert last["hasMore"] is False


def test_poll_returns_messages_after_cursor(client, make_user, auth_headers, store):
    user = make_user()
    headers = auth_headers(user)
    chat = _create(client, headers)
    seen = store.create_message(
        chat_id=chat["id"], user_id=user.id, agent_id="therapist", role="user", content="a"
    )
    store.create_message(
        chat_id=chat["id"], user_id=user.id, agent_id="therapist", role="assistant", content="b"
    )

    resp = client.get(
        f"/chats/{chat['id']}/messages/poll",
        params={"lastMessageId": seen.id},
        headers=headers,
    )
    assert [m["content"] for m in resp.json()["data"]] == ["b"]

    everything = client.get(f"/chats/{chat['id']}/messages/poll", headers=headers).json()
    assert [m["content"] for m in everything["data"]] == ["a", "b"]


def test_mark_read_reports_updated_count(client, make_user, auth_headers, store):
    user = make_user()
    headers = auth_headers(user)
    chat = _create(client, headers)
    message = store.create_message(
        chat_id=chat["id"], user_id=user.id, agent_id="therapist", role="user", content="a"
    )

    resp = client.post(
        f"/chats/{chat['id']}/messages/read",
        json={"messageIds": [message.id, "missing"]},
        headers=headers,
    )
    assert resp.json() == {"success": True, "updated": 1}


def test_stream_emits_connected_segments_complete(client, make_user, auth_headers, fake_ai):
    headers = auth_headers(make_user())
    chat = _create(client, headers)
    fake_ai.queue(SegmentedReply(("first", "second")))

    resp = client.post(
        f"/chats/{chat['id']}/messages/stream",
        json={"content": "hi", "agentId": "therapist"},
        headers=headers,
    )

    assert resp.status_code == 200
    assert resp.headers["content-type"].startswith("text/event-stream")
    assert resp.headers["cache-control"] == "no-cache"
    frames = _sse_frames(resp.text)
    assert [f["type"] for f in frames] == ["connected", "message", "message", "complete"]
    assert frames[1]["data"]["content"] == "first"
    assert frames[1]["data"]["isFirst"] is True
    assert frames[2]["data"]["isAdditional"] is True
    assert frames[2]["data"]["messageIndex"] == 2


def test_stream_single_reply_is_flagged(client, make_user, auth_headers, fake_ai):
    headers = auth_headers(make_user())
    chat = _create(client, headers)
    fake_ai.queue(SingleReply("only"))

    resp = client.post(
        f"/chats/{chat['id']}/messages/stream",
        json={"content": "hi", "agentId": "therapist"},
        headers=headers,
    )

    frames = _sse_frames(resp.text)
    assert frames[1]["data"]["isSingle"] is True
    assert frames[-1]["type"] == "complete"


def test_stream_upstream_failure_is_one_error_frame(client, make_user, auth_headers, fake_ai):
    headers = auth_headers(make_user())
    chat = _create(client, headers)
    fake_ai.queue(UpstreamUnavailableError("AI service unavailable"))

    resp = client.post(
        f"/chats/{chat['id']}/messages/stream",
        json={"content": "hi", "agentId": "therapist"},
        headers=headers,
    )

    frames = _sse_frames(resp.text)
    assert [f["type"] for f in frames] == ["connected", "error"]
    assert frames[1]["code"] == "upstream_unavailable"


def test_stream_rejects_bad_agent_before_opening(client, make_user, auth_headers):
    headers = auth_headers(make_user())
    chat = _create(client, headers)

    resp = client.post(
        f"/chats/{chat['id']}/messages/stream",
        json={"content": "hi", "agentId": "nobody"},
        headers=headers,
    )
    assert resp.status_code == 400
