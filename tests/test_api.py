"""
API tests for the code execution service.

These tests exercise the HTTP and WebSocket endpoints using FastAPI's
TestClient.  They verify that executions can be submitted, inspected and
cancelled, that invalid submissions are rejected, that the blocking
compatibility endpoint returns collected output and that the WebSocket
streams events for the sessions a client watches.
"""

from __future__ import annotations

import sys
import time

import pytest
from fastapi.testclient import TestClient

from codestream.api import main
from codestream.api.main import app, config


TERMINAL = {"succeeded", "failed", "timed_out", "cancelled"}


@pytest.fixture(autouse=True)
def isolate_config(tmp_path, monkeypatch):
    """Point the service at a temporary workspace and the test interpreter."""
    monkeypatch.setattr(config, "workspace_path", str(tmp_path / "ws"))
    monkeypatch.setattr(config, "python_bin", sys.executable)
    monkeypatch.setattr(config, "allowed_langs", ["python", "javascript"])
    monkeypatch.setattr(config, "max_source_bytes", 1024)
    monkeypatch.setattr(config, "execution_timeout_seconds", 10.0)
    monkeypatch.setattr(config, "kill_grace_seconds", 0.5)
    monkeypatch.setattr(config, "ws_broadcast", False)
    yield


def _wait_terminal(client: TestClient, session_id: str, timeout: float = 15.0) -> dict:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        data = client.get(f"/v1/executions/{session_id}").json()
        if data["state"] in TERMINAL:
            return data
        time.sleep(0.05)
    raise AssertionError(f"session {session_id} did not finish")


def test_health():
    with TestClient(app) as client:
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json() == {"status": "ok"}


def test_execution_lifecycle(tmp_path):
    with TestClient(app) as client:
        res = client.post("/v1/executions", json={"language": "python", "code": "print(1 + 1)"})
        assert res.status_code == 201
        data = res.json()
        session_id = data["sessionId"]
        assert data["state"] == "queued"

        data = _wait_terminal(client, session_id)
        assert data["state"] == "succeeded"
        assert data["exitCode"] == 0
        assert data["reason"] == "exit"
        assert data["startedAt"] is not None

        listed = client.get("/v1/executions").json()["sessions"]
        assert session_id in [s["sessionId"] for s in listed]
        assert list((tmp_path / "ws").iterdir()) == []


def test_unsupported_language():
    with TestClient(app) as client:
        res = client.post("/v1/executions", json={"language": "ruby", "code": "puts 1"})
        assert res.status_code == 400
        assert "ruby" in res.json()["detail"]
        assert client.get("/v1/executions").json()["sessions"] == []


def test_code_too_large():
    with TestClient(app) as client:
        res = client.post("/v1/executions", json={"language": "python", "code": "#" * 2048})
        assert res.status_code == 413


def test_unknown_session():
    with TestClient(app) as client:
        assert client.get("/v1/executions/nope").status_code == 404
        assert client.post("/v1/executions/nope/cancel").status_code == 404


def test_cancel_running_execution():
    with TestClient(app) as client:
        res = client.post(
            "/v1/executions",
            json={"language": "python", "code": "import time\ntime.sleep(30)"},
        )
        session_id = res.json()["sessionId"]
        time.sleep(0.3)

        res = client.post(f"/v1/executions/{session_id}/cancel")
        assert res.status_code == 200
        assert res.json() == {"sessionId": session_id, "cancelled": True}

        data = _wait_terminal(client, session_id)
        assert data["state"] == "cancelled"
        assert data["exitCode"] is None

        res = client.post(f"/v1/executions/{session_id}/cancel")
        assert res.json()["cancelled"] is False


def test_blocking_execute_collects_output():
    with TestClient(app) as client:
        code = "import sys\nprint('hello')\nsys.stderr.write('warn')\n"
        res = client.post("/api/execute", json={"language": "python", "code": code, "projectId": 1})
        assert res.status_code == 200
        data = res.json()
        assert data["output"] == "hello\n"
        assert data["error"] == "warn"
        assert data["exitCode"] == 0


def test_websocket_execute_streams_events():
    with TestClient(app) as client:
        with client.websocket_connect("/ws") as ws:
            ws.send_json({"type": "execute", "language": "python", "code": "print('hi')"})
            messages = []
            while True:
                message = ws.receive_json()
                messages.append(message)
                if message["type"] == "execution_complete":
                    break

    accepted = [m for m in messages if m["type"] == "accepted"]
    assert len(accepted) == 1
    session_id = accepted[0]["sessionId"]
    events = [m for m in messages if m["type"] != "accepted"]
    assert all(m["sessionId"] == session_id for m in events)
    assert events[0]["type"] == "execution_start"
    output = "".join(m["content"] for m in events if m["type"] == "output")
    assert output == "hi\n"
    assert events[-1]["exitCode"] == 0
    assert events[-1]["reason"] == "exit"
    sequences = [m["sequence"] for m in events]
    assert sequences == sorted(sequences)


def test_websocket_rejects_bad_messages():
    with TestClient(app) as client:
        with client.websocket_connect("/ws") as ws:
            ws.send_json({"type": "execute", "language": "ruby", "code": "puts 1"})
            assert ws.receive_json()["type"] == "rejected"
            ws.send_text("not json")
            assert ws.receive_json() == {"type": "rejected", "message": "Invalid JSON"}
            ws.send_json({"type": "subscribe", "sessionId": "missing"})
            assert ws.receive_json()["type"] == "rejected"
            ws.send_json({"type": "dance"})
            assert ws.receive_json()["type"] == "rejected"


def test_websocket_only_sees_watched_sessions():
    with TestClient(app) as client:
        with client.websocket_connect("/ws") as watcher:
            # another client's execution must not reach this connection
            other = client.post("/v1/executions", json={"language": "python", "code": "print('other')"})
            _wait_terminal(client, other.json()["sessionId"])

            watcher.send_json({"type": "execute", "language": "python", "code": "print('mine')"})
            messages = []
            while True:
                message = watcher.receive_json()
                messages.append(message)
                if message["type"] == "execution_complete":
                    break

    accepted = [m for m in messages if m["type"] == "accepted"]
    assert len(accepted) == 1
    session_id = accepted[0]["sessionId"]
    assert all(m["sessionId"] == session_id for m in messages)
    assert "".join(m["content"] for m in messages if m["type"] == "output") == "mine\n"


def test_websocket_broadcast_mode():
    with TestClient(app) as client:
        with client.websocket_connect("/ws?all=true") as ws:
            res = client.post("/v1/executions", json={"language": "python", "code": "print('x')"})
            session_id = res.json()["sessionId"]
            while True:
                message = ws.receive_json()
                if message["type"] == "execution_complete":
                    break
            assert message["sessionId"] == session_id


def test_shutdown_releases_running_sessions(tmp_path):
    with TestClient(app) as client:
        res = client.post(
            "/v1/executions",
            json={"language": "python", "code": "import time\ntime.sleep(30)"},
        )
        assert res.status_code == 201
        registry = main.app.state.registry
        time.sleep(0.3)
    assert all(s.state.value == "cancelled" for s in registry.sessions())
    assert list((tmp_path / "ws").iterdir()) == []
