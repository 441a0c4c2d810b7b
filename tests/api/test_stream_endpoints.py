from __future__ import annotations

import json
from typing import Any

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from chatstream.api.v1.endpoints import stream_endpoints


@pytest.fixture
def client() -> TestClient:
    app = FastAPI()
    app.include_router(stream_endpoints.router, prefix="/api/v1")
    return TestClient(app)


def _frames(body: str) -> list[dict[str, Any]]:
    return [
        json.loads(line[len("data: "):])
        for line in body.splitlines()
        if line.startswith("data: ")
    ]


def _events() -> list[dict[str, Any]]:
    return [
        {"event": "run-step-created", "data": {"id": "A", "runId": "R1", "index": 0, "stepDetails": {"type": "message_creation"}}},
        {"event": "message-delta", "data": {"id": "A", "delta": {"content": {"type": "text", "text": "Hel"}}}},
        {"event": "on_message_delta", "data": {"id": "A", "delta": {"content": [{"type": "text", "text": "lo"}]}}},
    ]


def test_health(client: TestClient) -> None:
    response = client.get("/api/v1/stream/health")

    assert response.status_code == 200
    assert response.json() == {"status": "ok"}


def test_assemble_streams_updates_and_final_message(client: TestClient) -> None:
    response = client.post(
        "/api/v1/stream/assemble",
        json={"conversation_id": "convo-1", "parent_message_id": "user-1", "sender": "Assistant", "events": _events()},
    )

    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/event-stream")
    frames = _frames(response.text)

    assert all(frame["type"] == "message" for frame in frames)
    assert [frame["message"]["text"] for frame in frames if not frame["final"]] == ["Hel", "Hello"]
    final = frames[-1]
    assert final["final"] is True
    assert final["message"]["text"] == "Hello"
    assert final["message"]["messageId"] == "R1-primary"
    assert final["message"]["parentMessageId"] == "user-1"


def test_assemble_drops_bad_events_without_failing(client: TestClient) -> None:
    events = _events()
    events.insert(1, {"event": "message-delta", "data": {"id": "ghost", "delta": {"content": {"type": "text", "text": "x"}}}})
    events.insert(1, {"event": "not-a-real-event", "data": {}})

    response = client.post("/api/v1/stream/assemble", json={"parent_message_id": "user-1", "events": events})

    final = _frames(response.text)[-1]
    assert final["final"] is True
    assert final["message"]["text"] == "Hello"


def test_assemble_reports_recovery_for_failed_run(client: TestClient) -> None:
    events = _events()[:2] + [{"event": "error", "data": {"message": "provider down"}}]

    response = client.post(
        "/api/v1/stream/assemble",
        json={"parent_message_id": "user-1", "panel": "secondary", "events": events},
    )

    frames = _frames(response.text)
    recovery = frames[-1]
    assert recovery["type"] == "recovery"
    assert recovery["recovery"]["partialText"] == "Hel"
    assert recovery["recovery"]["panel"] == "secondary"
    assert recovery["recovery"]["error"] == "provider down"

    frozen = frames[-2]
    assert frozen["final"] is True
    assert frozen["message"]["unfinished"] is True
    assert frozen["message"]["content"][-1] == {"type": "error", "error": "provider down"}


def test_unfinished_replay_is_aborted(client: TestClient) -> None:
    response = client.post(
        "/api/v1/stream/assemble",
        json={"parent_message_id": "user-1", "events": _events(), "final": False},
    )

    recovery = _frames(response.text)[-1]
    assert recovery["type"] == "recovery"
    assert recovery["recovery"]["reason"] == "session_closed"
    assert recovery["recovery"]["partialText"] == "Hello"


def test_assemble_validates_request(client: TestClient) -> None:
    response = client.post("/api/v1/stream/assemble", json={"events": []})
    assert response.status_code == 422
