import asyncio

from chatrelay.services.sessions import STREAMING
from chatrelay.schemas.chat import ChatRequest
from chatrelay.streaming.decoder import decode_all
from chatrelay.streaming.events import ChatIdEvent, DoneEvent

from conftest import auth_headers, eventually, settle


async def _post_stream(client, **body):
    payload = {"chatId": None, "userMessageContent": "hello", "userId": "u1", "model": "openai/gpt-4o"}
    payload.update(body)
    return await client.post("/api/v1/chat/stream", json=payload)


async def _conversation(app, client, turns=2):
    """Chat owned by u1 with `turns` user/assistant pairs."""
    resp = await _post_stream(client, userMessageContent="turn 0")
    chat_id = decode_all([resp.content])[0].chat_id
    await settle(app)
    for i in range(1, turns):
        await _post_stream(client, chatId=chat_id, userMessageContent=f"turn {i}")
        await settle(app)
    return chat_id


async def test_healthz(client):
    resp = await client.get("/healthz")
    assert resp.json() == {"status": "ok"}


async def test_models_endpoint(client, settings):
    data = (await client.get("/api/v1/models")).json()
    assert data["default"] == settings.default_model
    assert data["models"][0]["id"] == settings.default_model


async def test_stream_endpoint_emits_sse(app, client):
    resp = await _post_stream(client)
    assert resp.status_code == 200
    assert resp.headers["content-type"].startswith("text/event-stream")
    assert resp.headers["cache-control"] == "no-cache, no-transform"
    events = decode_all([resp.content])
    assert isinstance(events[0], ChatIdEvent)
    assert events[-1] == DoneEvent("Hello world", "Think more", events[0].chat_id)


async def test_stream_endpoint_rejects_missing_user(client):
    resp = await _post_stream(client, userId="")
    assert resp.status_code == 400
    assert resp.json() == {"error": "User ID is required"}


async def test_stream_endpoint_rejects_bad_attachment_type(client):
    resp = await _post_stream(client, attachedFiles=[{"name": "x.exe", "type": "application/x-msdownload", "url": "u"}])
    assert resp.status_code == 400
    assert "error" in resp.json()


async def test_stream_endpoint_without_api_key(app, client, network):
    app.state.relay.upstream.settings = app.state.settings.model_copy(update={"openrouter_api_key": None})
    resp = await _post_stream(client)
    assert resp.status_code == 500
    assert "configuration" in resp.json()["error"].lower()
    assert network.requests == []


async def test_stream_endpoint_rejects_foreign_chat(app, client):
    chat_id = await _conversation(app, client, turns=1)
    resp = await _post_stream(client, chatId=chat_id, userId="u2")
    assert resp.status_code == 403


async def test_edit_truncates_and_regenerates(app, client, network):
    chat_id = await _conversation(app, client, turns=2)
    before = await app.state.chats.list_messages(chat_id)
    first_user = before[0]

    resp = await client.post(
        "/api/v1/chat/edit",
        json={"id": first_user.id, "newContent": "turn 0, rephrased"},
        headers=auth_headers("u1"),
    )
    assert resp.status_code == 200
    assert isinstance(decode_all([resp.content])[-1], DoneEvent)
    await settle(app)

    after = await app.state.chats.list_messages(chat_id)
    assert [(m.role, m.content) for m in after] == [("user", "turn 0, rephrased"), ("assistant", "Hello world")]
    assert after[0].id == first_user.id
    assert after[1].id not in {m.id for m in before}
    assert network.requests[-1]["messages"][1:] == [
        {"role": "user", "content": [{"type": "text", "text": "turn 0, rephrased"}]},
    ]


async def test_edit_keeps_earlier_messages(app, client):
    chat_id = await _conversation(app, client, turns=2)
    before = await app.state.chats.list_messages(chat_id)
    resp = await client.post(
        "/api/v1/chat/edit",
        json={"id": before[2].id, "newContent": "turn 1 again"},
        headers=auth_headers("u1"),
    )
    assert resp.status_code == 200
    await settle(app)
    after = await app.state.chats.list_messages(chat_id)
    assert [m.id for m in after[:3]] == [m.id for m in before[:3]]
    assert len(after) == 4
    assert after[3].id != before[3].id


async def test_edit_with_unreachable_attachment_keeps_history(app, client, network):
    url = "https://files.test/report.pdf"
    network.files[url] = b"%PDF-1.4 test document"
    files = [{"name": "report.pdf", "type": "application/pdf", "url": url}]
    resp = await _post_stream(client, userMessageContent="turn 0", attachedFiles=files)
    chat_id = decode_all([resp.content])[0].chat_id
    await settle(app)
    before = await app.state.chats.list_messages(chat_id)
    upstream_calls = len(network.requests)

    del network.files[url]
    resp = await client.post(
        "/api/v1/chat/edit",
        json={"id": before[0].id, "newContent": "turn 0 rephrased"},
        headers=auth_headers("u1"),
    )

    assert resp.status_code == 400
    assert "report.pdf" in resp.json()["error"]
    after = await app.state.chats.list_messages(chat_id)
    assert [(m.id, m.role, m.content) for m in after] == [(m.id, m.role, m.content) for m in before]
    assert [(m.role, m.content) for m in after] == [("user", "turn 0"), ("assistant", "Hello world")]
    assert len(network.requests) == upstream_calls


async def test_edit_requires_auth(app, client):
    chat_id = await _conversation(app, client, turns=1)
    msg = (await app.state.chats.list_messages(chat_id))[0]
    resp = await client.post("/api/v1/chat/edit", json={"id": msg.id, "newContent": "x"})
    assert resp.status_code == 401
    resp = await client.post(
        "/api/v1/chat/edit", json={"id": msg.id, "newContent": "x"}, headers={"Authorization": "Bearer garbage"}
    )
    assert resp.status_code == 401


async def test_edit_forbidden_cases(app, client):
    chat_id = await _conversation(app, client, turns=1)
    user_msg, assistant_msg = await app.state.chats.list_messages(chat_id)

    other = await client.post(
        "/api/v1/chat/edit", json={"id": user_msg.id, "newContent": "x"}, headers=auth_headers("u2")
    )
    assert other.status_code == 403
    not_user = await client.post(
        "/api/v1/chat/edit", json={"id": assistant_msg.id, "newContent": "x"}, headers=auth_headers("u1")
    )
    assert not_user.status_code == 403
    missing = await client.post(
        "/api/v1/chat/edit", json={"id": "nope", "newContent": "x"}, headers=auth_headers("u1")
    )
    assert missing.status_code == 403
    assert len(await app.state.chats.list_messages(chat_id)) == 2


async def test_delete_removes_chat_and_attachments(app, client, network):
    files = [{"name": "a.png", "type": "image/png", "url": "https://files.test/a.png",
              "bucket": "chat-attachments", "path": "u1/a.png"}]
    resp = await _post_stream(client, attachedFiles=files)
    chat_id = decode_all([resp.content])[0].chat_id
    await settle(app)

    denied = await client.post("/api/v1/chat/delete", json={"chatId": chat_id}, headers=auth_headers("u2"))
    assert denied.status_code == 403

    resp = await client.post("/api/v1/chat/delete", json={"chatId": chat_id}, headers=auth_headers("u1"))
    assert resp.json() == {"success": True}
    assert await app.state.chats.get_chat(chat_id) is None
    assert network.storage_calls == [{
        "method": "DELETE",
        "url": "https://storage.test/storage/v1/object/chat-attachments",
        "json": {"prefixes": ["u1/a.png"]},
    }]

    gone = await client.post("/api/v1/chat/delete", json={"chatId": chat_id}, headers=auth_headers("u1"))
    assert gone.status_code == 404


async def test_chat_crud(client):
    headers = auth_headers("u1")
    created = (await client.post("/api/v1/chats", json={"prompt": "How do plants grow?"}, headers=headers)).json()
    assert created["chatTitle"] == "Greeting Chat"

    listed = (await client.get("/api/v1/chats", headers=headers)).json()
    assert [c["id"] for c in listed] == [created["chatId"]]

    patched = await client.patch(
        f"/api/v1/chats/{created['chatId']}", json={"visibility": "public"}, headers=headers
    )
    assert patched.json()["visibility"] == "public"

    bad = await client.patch(f"/api/v1/chats/{created['chatId']}", json={"visibility": "secret"}, headers=headers)
    assert bad.status_code == 400

    assert (await client.get("/api/v1/chats", headers=auth_headers("u2"))).json() == []


async def test_private_messages_need_the_owner(app, client):
    chat_id = await _conversation(app, client, turns=1)
    assert (await client.get(f"/api/v1/chats/{chat_id}/messages")).status_code == 403
    assert (await client.get(f"/api/v1/chats/{chat_id}/messages", headers=auth_headers("u2"))).status_code == 403
    owner = await client.get(f"/api/v1/chats/{chat_id}/messages", headers=auth_headers("u1"))
    assert [m["role"] for m in owner.json()] == ["user", "assistant"]

    await app.state.chats.update_chat(chat_id, visibility="public")
    assert (await client.get(f"/api/v1/chats/{chat_id}/messages")).status_code == 200


async def test_active_session_endpoint(app, client, network):
    gate = network.hold(after=2)
    relay = app.state.relay
    job = await relay.prepare(ChatRequest(userMessageContent="hi", userId="u1", model=""))
    handle = relay.start(job)
    url = f"/api/v1/chats/{job.chat_id}/session"

    async def streaming_session():
        data = (await client.get(url, headers=auth_headers("u1"))).json()
        session = data["session"]
        return session if session and session["streamed_content"] == "Hel" else None

    session = await eventually(streaming_session)
    assert session["status"] == STREAMING
    assert session["id"] == job.session_id

    gate.set()
    [_ async for _ in handle.body()]
    await asyncio.wait_for(handle.task, 5)
    assert (await client.get(url, headers=auth_headers("u1"))).json() == {"session": None}


async def test_rate_limit(app, client):
    app.state.rate_limiter.limit = 1
    assert (await _post_stream(client)).status_code == 200
    limited = await _post_stream(client)
    assert limited.status_code == 429
    assert limited.json() == {"error": "Rate limit exceeded"}
    assert "retry-after" in limited.headers
