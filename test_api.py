"""HTTP endpoints and the agent WebSocket, driven through FastAPI's TestClient."""

import contextlib
import dataclasses
import os

from fastapi.testclient import TestClient

from agent.supervisor import AGENT_NOT_FOUND
from web import create_app

AGENT_EVENTS = """\
echo "args:$*"
cat <<'EOF'
{"type":"text","sessionID":"ses_1","part":{"type":"text","text":"Hello from agent"}}
{"type":"tool_use","sessionID":"ses_1","part":{"type":"tool","tool":"read_file","callID":"call_1","state":{"status":"completed","input":{"target_file":"a.txt"},"output":"hello"}}}
{"type":"tool_use","sessionID":"ses_1","part":{"type":"tool","tool":"glob","callID":"g1","state":{"status":"completed","input":{"pattern":"*.ts"},"output":"x.ts"}}}
EOF
"""


@contextlib.contextmanager
def serve(settings, synthesis):
    app = create_app(settings, synthesis)
    with TestClient(app) as client:
        yield client


def receive_until(ws, predicate, limit=100):
    seen = []
    for _ in range(limit):
        msg = ws.receive_json()
        seen.append(msg)
        if predicate(msg):
            return seen
    raise AssertionError(f"expected message never arrived: {seen}")


def is_end(msg):
    return msg["type"] == "end"


def test_health(settings, fake_synthesis):
    with serve(settings, fake_synthesis) as client:
        assert client.get("/api/health").json() == {"status": "ok"}


def test_execute_tool_endpoint(settings, fake_synthesis, workspace):
    with open(os.path.join(workspace, "a.txt"), "w") as f:
        f.write("hello")
    with serve(settings, fake_synthesis) as client:
        r = client.post("/api/agent/execute-tool", json={"workspaceId": "ws1"})
        assert r.status_code == 400
        assert r.json() == {"success": False, "error": "Missing workspaceId or tool"}

        r = client.post("/api/agent/execute-tool", json={
            "workspaceId": "ws1", "tool": "read_file", "arguments": {"target_file": "a.txt"}})
        assert r.status_code == 200
        assert r.json() == {"success": True, "output": "hello"}

        r = client.post("/api/agent/execute-tool", json={"workspaceId": "ws1", "tool": "teleport"})
        assert r.status_code == 200
        assert r.json()["success"] is False
        assert r.json()["error"] == "Tool not implemented: teleport"


def test_execute_tool_rejects_non_json_body(settings, fake_synthesis):
    with serve(settings, fake_synthesis) as client:
        r = client.post("/api/agent/execute-tool", content=b"not json",
                        headers={"content-type": "application/json"})
        assert r.status_code == 400


def test_kill_command_endpoint(settings, fake_synthesis):
    with serve(settings, fake_synthesis) as client:
        assert client.post("/api/agent/kill-command", json={"workspaceId": "ws1"}).status_code == 400
        r = client.post("/api/agent/kill-command", json={"workspaceId": "ws1", "callId": "nope"})
        assert r.json() == {"success": False}


def test_preview_target(settings, fake_synthesis):
    with serve(settings, fake_synthesis) as client:
        r = client.get("/api/preview/ws1/target")
        assert r.status_code == 404
        assert r.json() == {"error": "No preview running for this workspace"}

        client.app.state.orchestrator.ports.register("ws1", 5174)
        r = client.get("/api/preview/ws1/target")
        assert r.json() == {"port": 5174, "host": "127.0.0.1", "url": "http://localhost:5174"}


def test_socket_rejects_bad_messages(settings, fake_synthesis):
    with serve(settings, fake_synthesis) as client:
        with client.websocket_connect("/api/agent") as ws:
            ws.send_text("{not json")
            assert ws.receive_json() == {"type": "error", "error": "Invalid message"}
            ws.send_json({"type": "run", "message": "hi"})
            assert ws.receive_json() == {"type": "error", "error": "Missing workspaceId or message"}


def test_socket_run_streams_events(settings, fake_synthesis, make_agent):
    settings = dataclasses.replace(settings, agent_path=make_agent(AGENT_EVENTS))
    with serve(settings, fake_synthesis) as client:
        orch = client.app.state.orchestrator
        with client.websocket_connect("/api/agent") as ws:
            ws.send_json({"type": "run", "workspaceId": "ws1", "chatSessionId": "chat1", "message": "hi"})
            first = receive_until(ws, is_end)

            narrative = "".join(m["data"] for m in first if m["type"] == "chunk")
            assert "Hello from agent" in narrative
            assert "-s ses_1" not in narrative

            calls = [m for m in first if m["type"] == "tool_call"]
            assert calls[0] == {
                "type": "tool_call", "callId": "call_1", "tool": "read_file",
                "pending": False, "path": "a.txt", "content": "hello",
            }
            assert calls[1]["callId"].startswith("g1-")
            assert calls[1]["content"] == "Built-in tools are disabled. Use the custom tools instead."
            assert first[-1] == {"type": "end", "code": 0}
            assert orch.continuations["ws1:chat1"] == "ses_1"

            ws.send_json({"type": "run", "workspaceId": "ws1", "chatSessionId": "chat1", "message": "more"})
            second = receive_until(ws, is_end)
            assert "-s ses_1" in "".join(m["data"] for m in second if m["type"] == "chunk")


def test_socket_run_reports_missing_agent(settings, fake_synthesis, tmp_path):
    settings = dataclasses.replace(settings, agent_path=str(tmp_path / "missing-agent"))
    with serve(settings, fake_synthesis) as client:
        with client.websocket_connect("/api/agent") as ws:
            ws.send_json({"type": "run", "workspaceId": "ws1", "message": "hi"})
            assert ws.receive_json() == {"type": "error", "error": AGENT_NOT_FOUND}
        assert client.app.state.orchestrator.runs == {}


def test_tool_callback_is_mirrored_and_abort_ends_run(settings, fake_synthesis, make_agent, workspace):
    with open(os.path.join(workspace, "a.txt"), "w") as f:
        f.write("hello")
    settings = dataclasses.replace(settings, agent_path=make_agent("echo ready\nsleep 30\n"))
    with serve(settings, fake_synthesis) as client:
        with client.websocket_connect("/api/agent") as ws:
            ws.send_json({"type": "run", "workspaceId": "ws1", "chatSessionId": "chat1", "message": "hi"})
            receive_until(ws, lambda m: m["type"] == "chunk" and "ready" in m["data"])

            r = client.post("/api/agent/execute-tool", json={
                "workspaceId": "ws1", "chatSessionId": "chat1", "callId": "c-9",
                "tool": "read_file", "arguments": {"target_file": "a.txt"}})
            assert r.json() == {"success": True, "output": "hello"}
            assert ws.receive_json() == {
                "type": "tool_call", "callId": "c-9", "tool": "read_file", "pending": True, "path": "a.txt"}
            assert ws.receive_json() == {
                "type": "tool_call", "callId": "c-9", "tool": "read_file", "pending": False,
                "path": "a.txt", "content": "hello", "startLine": 1, "endLine": 1}

            ws.send_json({"type": "abort", "workspaceId": "ws1"})
            assert receive_until(ws, is_end)[-1] == {"type": "end", "code": 130}
