"""
Chat API 路由测试（FastAPI TestClient + 依赖覆盖）
"""

import json

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from conftest import FakeProvider, make_orchestrator
from nexus.api.chat import router
from nexus.models.catalog import Character
from nexus.services.cancellation import CancellationToken
from nexus.services.catalog import Catalog
from nexus.services.chat_service import ChatService, get_chat_service
from nexus.storage.memory_storage import MemorySessionStore


def _events(body: str):
    return [
        json.loads(line[len("data: "):])
        for line in body.splitlines()
        if line.startswith("data: ")
    ]


def _build(provider):
    store = MemorySessionStore()
    catalog = Catalog(characters=[
        Character(id="c-aria", name="Aria", persona="A wandering bard."),
        Character(id="c-bram", name="Bram", persona="A grumpy smith.")
    ])
    service = ChatService(store, make_orchestrator(provider, store), catalog)

    app = FastAPI()
    app.include_router(router)
    app.dependency_overrides[get_chat_service] = lambda: service
    return TestClient(app), service


@pytest.fixture
def provider():
    return FakeProvider(chunks=["Hello", " there"])


@pytest.fixture
def api(provider):
    client, service = _build(provider)
    client.put("/api/sessions/solo", json={"id": "s1", "character_id": "c-aria"})
    return client, service


def test_put_solo_requires_character(provider):
    client, _ = _build(provider)
    response = client.put("/api/sessions/solo", json={"id": "s1"})
    assert response.status_code == 400


def test_send_message_streams_events(api):
    client, _ = api

    response = client.post("/api/sessions/c-aria/s1/messages", json={"content": "Hi"})

    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/event-stream")
    events = _events(response.text)
    assert events[0] == {"type": "session", "session_id": "s1"}
    assert events[-1]["type"] == "done"
    assert events[-1]["content"] == "Hello there"

    session = client.get("/api/sessions/c-aria/s1").json()
    assert [m["content"] for m in session["messages"]] == ["Hi", "Hello there"]

    state = client.get("/api/sessions/c-aria/s1/state").json()
    assert state == {"session_id": "s1", "state": "idle", "is_generating": False}


def test_send_error_event(provider):
    provider.chunks = []
    provider.error = RuntimeError("kaput")
    client, _ = _build(provider)
    client.put("/api/sessions/solo", json={"id": "s1", "character_id": "c-aria"})

    response = client.post("/api/sessions/c-aria/s1/messages", json={"content": "Hi"})

    events = _events(response.text)
    assert events[-1]["type"] == "error"
    assert events[-1]["message"] == "kaput"
    session = client.get("/api/sessions/c-aria/s1").json()
    assert session["messages"][-1]["content"] == "Error: kaput"
    assert session["messages"][-1]["is_error"] is True


def test_send_rejects_empty_content(api):
    client, _ = api
    response = client.post("/api/sessions/c-aria/s1/messages", json={"content": "  "})
    assert response.status_code == 400


def test_unknown_session(api):
    client, _ = api
    assert client.get("/api/sessions/c-aria/missing").status_code == 404
    response = client.post("/api/sessions/c-aria/missing/messages", json={"content": "Hi"})
    assert response.status_code == 404


def test_conflict_while_generating(api):
    client, service = api
    service._active["s1"] = CancellationToken()

    response = client.post("/api/sessions/c-aria/s1/messages", json={"content": "Hi"})

    assert response.status_code == 409
    assert client.post("/api/sessions/c-aria/s1/stop").json() == {"status": "success", "stopped": True}
    assert client.post("/api/sessions/c-aria/s1/stop").json()["stopped"] is False


def test_regenerate_and_continue(api, provider):
    client, _ = api
    client.post("/api/sessions/c-aria/s1/messages", json={"content": "Hi"})

    provider.chunks = ["Again"]
    events = _events(client.post("/api/sessions/c-aria/s1/regenerate").text)
    assert events[-1]["content"] == "Again"

    provider.chunks = ["More"]
    client.post("/api/sessions/c-aria/s1/continue")

    session = client.get("/api/sessions/c-aria/s1").json()
    assert [m["content"] for m in session["messages"]] == ["Hi", "Again", "More"]


def test_edit_assistant_message_in_place(api):
    client, _ = api
    client.post("/api/sessions/c-aria/s1/messages", json={"content": "Hi"})
    reply_id = client.get("/api/sessions/c-aria/s1").json()["messages"][1]["id"]

    response = client.patch(
        f"/api/sessions/c-aria/s1/messages/{reply_id}", json={"content": "Edited"}
    )

    events = _events(response.text)
    assert [e["type"] for e in events] == ["session", "done"]
    assert client.get("/api/sessions/c-aria/s1").json()["messages"][1]["content"] == "Edited"
    assert client.patch(
        "/api/sessions/c-aria/s1/messages/missing", json={"content": "x"}
    ).status_code == 404


def test_fork_and_delete(api):
    client, _ = api
    client.post("/api/sessions/c-aria/s1/messages", json={"content": "Hi"})
    first_id = client.get("/api/sessions/c-aria/s1").json()["messages"][0]["id"]

    forked = client.post(f"/api/sessions/c-aria/s1/fork/{first_id}").json()
    assert forked["removed"] == 1
    assert forked["message_count"] == 1

    assert client.delete(f"/api/sessions/c-aria/s1/messages/{first_id}").status_code == 200
    assert client.delete("/api/sessions/c-aria/s1/messages/missing").status_code == 404

    assert [s["id"] for s in client.get("/api/sessions/c-aria").json()] == ["s1"]
    assert client.delete("/api/sessions/c-aria/s1").status_code == 200
    assert client.delete("/api/sessions/c-aria/s1").status_code == 404


def test_group_session_attributes_speaker():
    client, _ = _build(FakeProvider(chunks=["[Bram]: Hmph."]))
    client.put("/api/sessions/group", json={
        "id": "g1",
        "participant_ids": ["c-aria", "c-bram"],
        "scenario": "A forge."
    })

    client.post("/api/sessions/group/g1/messages", json={"content": "Hello"})

    session = client.get("/api/sessions/group/g1").json()
    assert session["participant_ids"] == ["c-aria", "c-bram"]
    assert session["messages"][-1]["speaker_id"] == "c-bram"
