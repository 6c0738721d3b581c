import json
from datetime import date
from pathlib import Path
from typing import Any, Dict, List

import httpx
import pytest
from fastapi.testclient import TestClient

from sellerpulse.main import build_services, create_app
from sellerpulse.settings import Settings

ALICE = {"X-Database-Name": "demo"}
BOB = {"X-Database-Name": "bob"}

ANSWER_STREAM = (
    b'{"message": {"role": "assistant", "content": "Sales were "}, "done": false}\n'
    b'{"message": {"role": "assistant", "content": "$511.96."}, "done": false}\n'
    b'{"done": true}\n'
)


def upstream(request: httpx.Request) -> httpx.Response:
    """Fake model server: asks for sales data, then answers."""
    if request.url.path == "/api/tags":
        return httpx.Response(200, json={"models": [{"name": "qwen2.5:32b-instruct"}]})
    body = json.loads(request.content)
    if body.get("tools"):
        call = {"function": {"name": "get_sales_data", "arguments": {"filterType": "previousmonth"}}}
        return httpx.Response(
            200, json={"message": {"role": "assistant", "content": "", "tool_calls": [call]}, "done": True}
        )
    if body["stream"]:
        return httpx.Response(200, content=ANSWER_STREAM)
    return httpx.Response(200, json={"message": {"role": "assistant", "content": "Sales were $511.96."}, "done": True})


def _client(tmp_path: Path, handler=upstream) -> TestClient:
    settings = Settings(
        _env_file=None,
        data_dir=tmp_path,
        seed_demo_tenant="demo",
        reference_date=date(2024, 3, 15),
        session_cleanup_interval_seconds=0,
    )
    app = create_app(build_services(settings, transport=httpx.MockTransport(handler)))
    return TestClient(app)


def _events(response: httpx.Response) -> List[Dict[str, Any]]:
    frames = [f for f in response.text.split("\n\n") if f.strip()]
    assert all(f.startswith("data: ") for f in frames)
    return [json.loads(f[len("data: ") :]) for f in frames]


@pytest.fixture
def client(tmp_path: Path):
    with _client(tmp_path) as c:
        yield c


def test_root_health(client: TestClient) -> None:
    """The root health check needs no upstream."""
    assert client.get("/health").json() == {"status": "ok"}


def test_list_tools(client: TestClient) -> None:
    """The tools route lists every data tool."""
    body = client.get("/api/agent/tools").json()
    assert body["success"] is True
    assert len(body["data"]) == 8
    assert {"name", "description", "parameters"} <= set(body["data"][0])


def test_chat_stream_and_session_routes(client: TestClient) -> None:
    """A streamed turn is readable through the session routes."""
    response = client.post(
        "/api/agent/chat/stream", json={"message": "show me sales for last month"}, headers=ALICE
    )
    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/event-stream")
    assert response.headers["cache-control"] == "no-cache"

    events = _events(response)
    assert [e["type"] for e in events] == [
        "start", "session", "tool", "tool", "thinking", "chunk", "chunk", "end",
    ]
    ids = [e["id"] for e in events]
    assert ids == sorted(set(ids))
    session_id = events[1]["sessionId"]
    assert events[-1]["sessionId"] == session_id

    listed = client.get("/api/agent/chat/sessions", headers=ALICE).json()["data"]
    assert [s["id"] for s in listed] == [session_id]
    assert listed[0]["title"] == "Sales for last month"
    assert listed[0]["messageCount"] == 2

    history = client.get(f"/api/agent/chat/sessions/{session_id}", headers=ALICE).json()["data"]
    assert [m["role"] for m in history["messages"]] == ["user", "assistant"]
    assert history["messages"][1]["content"] == "Sales were $511.96."
    assert history["messages"][1]["toolCalls"][0]["parameters"] == {"filterType": "previousmonth"}

    assert client.get(f"/api/agent/chat/sessions/{session_id}", headers=BOB).status_code == 403
    assert client.delete(f"/api/agent/chat/sessions/{session_id}", headers=BOB).status_code == 403
    assert client.get("/api/agent/chat/sessions/session_missing", headers=ALICE).status_code == 404
    assert client.get("/api/agent/chat/sessions", headers=BOB).json()["data"] == []

    renamed = client.patch(
        f"/api/agent/chat/sessions/{session_id}", json={"title": "Feb sales"}, headers=ALICE
    )
    assert renamed.status_code == 200
    assert client.get("/api/agent/chat/sessions", headers=ALICE).json()["data"][0]["title"] == "Feb sales"

    assert client.delete(f"/api/agent/chat/sessions/{session_id}", headers=ALICE).json()["success"] is True
    assert client.get(f"/api/agent/chat/sessions/{session_id}", headers=ALICE).status_code == 404


def test_chat_stream_requires_message(client: TestClient) -> None:
    """A stream request without a message gets a single error event."""
    events = _events(client.post("/api/agent/chat/stream", json={}, headers=ALICE))
    assert [e["type"] for e in events] == ["error"]
    assert events[0]["message"] == "Message is required"


def test_clear_sessions(client: TestClient) -> None:
    """Clearing removes every session of the caller."""
    for text in ("first", "second"):
        client.post("/api/agent/chat/stream", json={"message": text}, headers=ALICE)
    body = client.delete("/api/agent/chat/sessions", headers=ALICE).json()
    assert body["deleted"] == 2
    assert client.get("/api/agent/chat/sessions", headers=ALICE).json()["data"] == []


def test_query(client: TestClient) -> None:
    """The query route answers with response, data and tool calls."""
    body = client.post("/api/agent/query", json={"query": "sales last month"}, headers=ALICE).json()
    assert body["success"] is True
    assert body["response"] == "Sales were $511.96."
    assert body["toolCalls"] == [{"name": "get_sales_data", "parameters": {"filterType": "previousmonth"}}]
    assert len(body["data"]["data"]) == 6


def test_query_requires_text(client: TestClient) -> None:
    """A blank query is a 400."""
    response = client.post("/api/agent/query", json={"query": "  "}, headers=ALICE)
    assert response.status_code == 400
    assert response.json()["error"] == "Query is required"


def test_query_with_foreign_session_is_forbidden(client: TestClient) -> None:
    """Querying another user's session is a 403."""
    events = _events(client.post("/api/agent/chat/stream", json={"message": "hi"}, headers=ALICE))
    session_id = events[1]["sessionId"]
    response = client.post(
        "/api/agent/query", json={"query": "hi", "sessionId": session_id}, headers=BOB
    )
    assert response.status_code == 403
    assert response.json() == {"success": False, "error": "Access denied"}


def test_query_maps_upstream_failures(tmp_path: Path) -> None:
    """Upstream failures map to 502, 503 and 504."""
    def missing_model(request: httpx.Request) -> httpx.Response:
        return httpx.Response(404, json={"error": "model 'qwen2.5:32b-instruct' not found"})

    with _client(tmp_path, missing_model) as client:
        response = client.post("/api/agent/query", json={"query": "sales"}, headers=ALICE)
    assert response.status_code == 502
    assert "ollama pull" in response.json()["error"]

    def refused(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("[Errno 111] Connection refused", request=request)

    with _client(tmp_path, refused) as client:
        response = client.post("/api/agent/query", json={"query": "sales"}, headers=ALICE)
        assert response.status_code == 503

        health = client.get("/api/agent/health").json()
        assert health["success"] is False
        assert health["data"]["running"] is False
        assert len(health["data"]["allTests"]) == 2

        models = client.get("/api/agent/models").json()
        assert models["success"] is False


def test_health_reports_working_loopback(tmp_path: Path) -> None:
    """Health reports the loopback URL when only it answers."""
    def only_loopback(request: httpx.Request) -> httpx.Response:
        if request.url.host == "127.0.0.1":
            return httpx.Response(200, json={"models": []})
        raise httpx.ConnectError("[Errno 111] Connection refused", request=request)

    with _client(tmp_path, only_loopback) as client:
        body = client.get("/api/agent/health").json()
    assert body["success"] is True
    assert body["data"]["workingHost"] == "127.0.0.1"
    assert body["data"]["recommendation"] == "Update OLLAMA_BASE_URL to: http://127.0.0.1:11434"


def test_models(client: TestClient) -> None:
    """The models route lists upstream models."""
    body = client.get("/api/agent/models").json()
    assert body["success"] is True
    assert body["data"]["models"] == [{"name": "qwen2.5:32b-instruct"}]
