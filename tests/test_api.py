"""
HTTP tests for health, chat CRUD, streaming turns and admission control.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
from typing import Any

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.orm import Session

from lampchat.auth import create_session
from lampchat.config import Settings
from lampchat.db.models import Chat, User
from lampchat.services import ChatOrchestrator


def parse_sse(raw: str) -> list[tuple[str | None, dict[str, Any]]]:
    """Split an SSE body into (event, payload) pairs."""
    events = []
    for block in raw.split("\n\n"):
        if not block.strip():
            continue
        event = None
        data_lines: list[str] = []
        for line in block.splitlines():
            if line.startswith("event:"):
                event = line.split("event:", 1)[1].strip()
            elif line.startswith("data:"):
                data_lines.append(line.split("data:", 1)[1].strip())
        events.append((event, json.loads("".join(data_lines)) if data_lines else {}))
    return events


def test_health_endpoints(client: TestClient) -> None:
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json()["status"] == "ok"
    assert "version" in response.json()

    ready = client.get("/readyz")
    assert ready.status_code == 200
    assert ready.json()["checks"] == {"database": True}

    snapshot = client.get("/metrics").json()
    assert "turns_committed_total" in snapshot["counters"]
    assert "active_turns" in snapshot["gauges"]


def test_requests_without_session_are_rejected(client: TestClient) -> None:
    missing = client.get("/chats")
    assert missing.status_code == 401
    assert missing.json()["error"]["code"] == "E2000"

    unknown = client.get("/chats", headers={"Authorization": "Bearer not-a-session"})
    assert unknown.status_code == 401
    assert unknown.json()["error"]["code"] == "E2002"


def test_chat_crud(client: TestClient, auth_headers: dict[str, str]) -> None:
    untitled = client.post("/chats", headers=auth_headers)
    assert untitled.status_code == 200
    assert untitled.json()["chat"]["title"] == "New Chat"

    created = client.post("/chats", json={"title": "Plans"}, headers=auth_headers)
    chat_id = created.json()["chat"]["id"]

    listed = client.get("/chats", headers=auth_headers).json()["chats"]
    assert {chat["title"] for chat in listed} == {"New Chat", "Plans"}

    deleted = client.delete(f"/chats/{chat_id}", headers=auth_headers)
    assert deleted.json() == {"status": "deleted", "chatId": chat_id}
    assert client.delete(f"/chats/{chat_id}", headers=auth_headers).status_code == 404


def test_message_append_list_and_patch(
    client: TestClient, auth_headers: dict[str, str], chat: Chat
) -> None:
    base = f"/chats/{chat.id}/messages"
    for n in range(4):
        response = client.post(
            base,
            json={"content": f"m{n}", "createdAt": 1_700_000_000_000 + n * 1000},
            headers=auth_headers,
        )
        assert response.status_code == 200

    page = client.get(base, params={"limit": 2, "offset": 0}, headers=auth_headers).json()
    assert [m["content"] for m in page["messages"]] == ["m2", "m3"]
    assert page["hasMore"] is True
    assert page["total"] == 4
    assert page["messages"][0]["chatId"] == chat.id
    assert page["messages"][0]["createdAt"] == "2023-11-14T22:13:22.000Z"

    message_id = page["messages"][1]["id"]
    patched = client.patch(
        f"{base}/{message_id}",
        json={"stats": {"completionTokens": 2}, "generatedImages": [{"url": "x"}]},
        headers=auth_headers,
    ).json()["message"]
    assert patched["content"] == "m3"
    assert patched["generatedImages"] == [{"url": "x"}]

    cleared = client.patch(
        f"{base}/{message_id}", json={"generatedImages": None}, headers=auth_headers
    ).json()["message"]
    assert cleared["generatedImages"] is None
    assert cleared["stats"] == {"completionTokens": 2}


def test_duplicate_message_id_is_rejected(
    client: TestClient, auth_headers: dict[str, str], chat: Chat
) -> None:
    body = {"id": "6f1c1f0e-8d8a-4a57-9d38-3c1e3fb0a001", "content": "once"}
    assert client.post(f"/chats/{chat.id}/messages", json=body, headers=auth_headers).status_code == 200

    again = client.post(f"/chats/{chat.id}/messages", json=body, headers=auth_headers)

    assert again.status_code == 500
    error = again.json()["error"]
    assert error["code"] == "E5100"
    assert error["details"] == {"reason": "duplicate_id"}


def test_invalid_and_foreign_chats(
    client: TestClient, db_session: Session, other_user: User, chat: Chat
) -> None:
    other_headers = {"Authorization": f"Bearer {create_session(db_session, other_user)}"}

    foreign = client.get(f"/chats/{chat.id}/messages", headers=other_headers)
    assert foreign.status_code == 404
    assert foreign.json()["error"]["code"] == "E1002"

    malformed = client.get("/chats/not-a-uuid/messages", headers=other_headers)
    assert malformed.status_code == 400
    assert malformed.json()["error"]["code"] == "E1001"


def test_stream_turn_over_sse(
    app_factory, source_factory, auth_headers: dict[str, str], chat: Chat
) -> None:
    app = app_factory(source=source_factory(["Hel", "lo"], ["Again"]))
    with TestClient(app) as client:
        response = client.post(
            "/chat/stream", json={"chatId": chat.id, "content": "Hi"}, headers=auth_headers
        )
        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/event-stream")
        assert response.headers["X-Request-ID"]

        events = parse_sse(response.text)
        assert [name for name, _ in events] == ["meta", "delta", "delta", "final"]
        assert "".join(payload["text"] for name, payload in events if name == "delta") == "Hello"
        message_id = events[0][1]["message_id"]
        assert events[-1][1]["message"]["content"] == "Hello"

        messages = client.get(f"/chats/{chat.id}/messages", headers=auth_headers).json()["messages"]
        assert [(m["role"], m["content"]) for m in messages] == [
            ("user", "Hi"),
            ("assistant", "Hello"),
        ]

        regenerated = client.post(
            "/chat/regenerate",
            json={"chatId": chat.id, "messageId": message_id},
            headers=auth_headers,
        )
        events = parse_sse(regenerated.text)
        assert events[0][1]["message_id"] == message_id
        assert events[-1][1]["message"]["content"] == "Again"

        status = client.get(f"/chat/status/{chat.id}", headers=auth_headers).json()
        assert status == {"chatId": chat.id, "inProgress": False, "state": "idle"}


def test_stream_to_unknown_chat_is_not_found(
    client: TestClient, auth_headers: dict[str, str]
) -> None:
    response = client.post(
        "/chat/stream",
        json={"chatId": "6f1c1f0e-8d8a-4a57-9d38-3c1e3fb0a002", "content": "Hi"},
        headers=auth_headers,
    )
    assert response.status_code == 404
    assert response.json()["error"]["code"] == "E1002"


def test_busy_chat_conflicts_and_can_be_cancelled(
    app_factory, source_factory, user: User, auth_headers: dict[str, str], chat: Chat
) -> None:
    app = app_factory(source=source_factory(["ok"]))
    orchestrator = ChatOrchestrator(app.state.message_gateway, app.state.stream_source)
    app.state.orchestrator = orchestrator
    turn = orchestrator._acquire(user.id, chat.id, "test-model", regenerate=False)

    with TestClient(app) as client:
        conflict = client.post(
            "/chat/stream", json={"chatId": chat.id, "content": "Hi"}, headers=auth_headers
        )
        assert conflict.status_code == 409
        assert conflict.json()["error"]["code"] == "E1006"

        status = client.get(f"/chat/status/{chat.id}", headers=auth_headers).json()
        assert status["inProgress"] is True

        cancelled = client.post("/chat/cancel", json={"chatId": chat.id}, headers=auth_headers)
        assert cancelled.json() == {"status": "cancelled", "chatId": chat.id}
        assert turn.cancel_event.is_set()


def test_cancel_without_active_turn_is_not_found(
    client: TestClient, auth_headers: dict[str, str], chat: Chat
) -> None:
    response = client.post("/chat/cancel", json={"chatId": chat.id}, headers=auth_headers)
    assert response.status_code == 404
    assert response.json()["error"]["message"] == "No active response for this chat"


def test_rate_limit_rejects_with_retry_metadata(
    app_factory, auth_headers: dict[str, str]
) -> None:
    app = app_factory(settings=Settings(rate_limit_data_max_requests=2))
    with TestClient(app) as client:
        first = client.get("/chats", headers=auth_headers)
        assert first.headers["X-RateLimit-Limit"] == "2"
        assert first.headers["X-RateLimit-Remaining"] == "1"
        assert client.get("/chats", headers=auth_headers).status_code == 200

        denied = client.get("/chats", headers=auth_headers)
        assert denied.status_code == 429
        body = denied.json()
        assert body["error"] == "Too many requests"
        assert 1 <= body["retryAfter"] <= 60
        assert body["message"] == f"Rate limit exceeded. Try again in {body['retryAfter']} seconds."
        assert denied.headers["Retry-After"] == str(body["retryAfter"])
        assert denied.headers["X-RateLimit-Remaining"] == "0"

        # Another client identity has its own window; health stays exempt.
        other = client.get("/chats", headers={**auth_headers, "X-Forwarded-For": "203.0.113.7"})
        assert other.status_code == 200
        assert client.get("/health").status_code == 200


def test_deleting_chat_drops_its_in_memory_state(
    app_factory, auth_headers: dict[str, str], chat: Chat
) -> None:
    app = app_factory()
    orchestrator = ChatOrchestrator(app.state.message_gateway, app.state.stream_source)
    app.state.orchestrator = orchestrator
    orchestrator.store.load_chat(chat.id, [])

    with TestClient(app) as client:
        deleted = client.delete(f"/chats/{chat.id}", headers=auth_headers)

    assert deleted.status_code == 200
    assert orchestrator.store.get_state(chat.id) is None


@pytest.mark.asyncio
async def test_turn_released_when_response_cannot_be_sent(
    app_factory, source_factory, auth_headers: dict[str, str], chat: Chat
) -> None:
    app = app_factory(source=source_factory(["Hel", "lo"]))
    orchestrator = ChatOrchestrator(app.state.message_gateway, app.state.stream_source)
    app.state.orchestrator = orchestrator
    body = json.dumps({"chatId": chat.id, "content": "Hi"}).encode()
    scope = {
        "type": "http",
        "asgi": {"version": "3.0"},
        "http_version": "1.1",
        "method": "POST",
        "scheme": "http",
        "path": "/chat/stream",
        "raw_path": b"/chat/stream",
        "root_path": "",
        "query_string": b"",
        "headers": [
            (b"host", b"testserver"),
            (b"content-type", b"application/json"),
            (b"authorization", auth_headers["Authorization"].encode()),
        ],
        "client": ("127.0.0.1", 50000),
        "server": ("testserver", 80),
    }
    delivered = False

    async def receive() -> dict[str, Any]:
        nonlocal delivered
        if not delivered:
            delivered = True
            return {"type": "http.request", "body": body, "more_body": False}
        await asyncio.Event().wait()
        return {"type": "http.disconnect"}

    async def send(message: dict[str, Any]) -> None:
        if message["type"] == "http.response.start":
            raise OSError("connection reset by peer")

    # The failed send surfaces as whatever the middleware stack raises.
    with contextlib.suppress(Exception):
        await asyncio.wait_for(app(scope, receive, send), timeout=5)

    loop = asyncio.get_running_loop()
    deadline = loop.time() + 2
    while orchestrator.is_turn_in_progress(chat.id) and loop.time() < deadline:
        await asyncio.sleep(0.01)

    assert not orchestrator.is_turn_in_progress(chat.id)
    assert orchestrator.store.get_state(chat.id) is None
