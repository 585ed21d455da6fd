import json

import pytest
from fastapi.testclient import TestClient

import config
from agent.chat import run_chat_turn
from agent.plan_store import PlanRecord, PlanStore
from agent.mcp_client import set_mcp_pool
from api import routes
from api.app import create_app
from rendering import jsx_sandbox

from conftest import FakeAdapter, FakePool, llm_response

LOAD = "analytics__load_compound_data"

COMPONENT = "export default function Chart() { return <div>hi</div>; }"
COMPONENT_JS = 'const Component = function Chart() {\n  return React.createElement("div", null, "hi");\n};\n'


@pytest.fixture
def pool():
    pool = FakePool({LOAD: {"status": "success", "rowCount": 10}})
    set_mcp_pool(pool)
    return pool


@pytest.fixture
def client(pool, monkeypatch):
    monkeypatch.setattr(config, "INSIGHT_MODEL", None)
    with TestClient(create_app()) as c:
        yield c


def _wire_user(msg_id, text):
    return {"id": msg_id, "role": "user", "parts": [{"type": "text", "text": text}]}


def _sse_events(body: str) -> list[dict]:
    return [
        json.loads(line[len("data:"):].strip())
        for line in body.splitlines()
        if line.startswith("data:")
    ]


def test_status_reports_tool_servers(client):
    resp = client.get("/api/status")
    assert resp.status_code == 200
    body = resp.json()
    assert body["status"] == "ok"
    assert body["total_tools"] == 1
    assert body["mcp_servers"]["analytics"]["connected"] is True
    assert body["tool_cache"]["size"] == 0


def test_insight_requires_text(client):
    assert client.post("/api/extract-insight", json={"phase": "QC"}).status_code == 400


def test_insight_falls_back_to_heuristic(client):
    resp = client.post(
        "/api/extract-insight",
        json={"responseText": "The table has 245 metabolites across 120 samples.", "phase": "Data Loading"},
    )
    assert resp.status_code == 200
    assert resp.json()["source"] == "heuristic"
    assert "245 metabolites" in resp.json()["insight"]


def test_workflow_from_wire_messages(client):
    messages = [
        _wire_user("u1", "load X"),
        {
            "id": "a1", "role": "assistant",
            "parts": [
                {"type": "reasoning", "text": '[WORKFLOW: type="sequential" phase="Data Loading" insight="Loaded 10 rows"]'},
                {"type": "tool-invocation", "toolInvocation": {
                    "toolCallId": "c1", "toolName": LOAD, "args": {"file": "X"},
                    "state": "result", "result": {"rowCount": 10},
                }},
            ],
        },
    ]
    resp = client.post("/api/workflow", json={"messages": messages, "conversation_id": "c1"})
    assert resp.status_code == 200
    workflow = resp.json()["workflow"]
    assert len(workflow["nodes"]) == 1
    node = workflow["nodes"][0]
    assert node["phase"] == "Data Loading"
    assert node["insight"] == "Loaded 10 rows"
    assert node["userQuery"] == "load X"
    assert workflow["edges"] == []
    assert resp.json()["plans"] == []


def test_plans_listing(client):
    assert client.get("/api/plans/bad id!").status_code in (400, 404)
    PlanStore().save(PlanRecord("plan-1", "s1", 1000, "1. load\n2. test", ["load"], "analyze"))
    resp = client.get("/api/plans/s1")
    assert resp.status_code == 200
    assert [r["id"] for r in resp.json()] == ["plan-1"]
    assert resp.json()[0]["userQuery"] == "analyze"
    assert client.get("/api/plans/unknown").json() == []


def test_render_validation_error(client):
    resp = client.post("/api/render", json={"code": "const A = 1;"})
    assert resp.status_code == 422
    assert resp.json()["stage"] == "validation"


def test_render_without_esbuild(client, monkeypatch):
    monkeypatch.setattr(jsx_sandbox.config, "ESBUILD_PATH", None)
    monkeypatch.setattr(jsx_sandbox.shutil, "which", lambda name: None)
    resp = client.post("/api/render", json={"code": COMPONENT})
    assert resp.status_code == 503


def test_render_success(client, monkeypatch):
    monkeypatch.setattr(jsx_sandbox, "transpile", lambda code, timeout=None: COMPONENT_JS)
    resp = client.post("/api/render", json={"code": COMPONENT, "props": {"title": "t"}})
    assert resp.status_code == 200
    body = resp.json()
    assert "return Component;" in body["moduleCode"]
    assert body["propsJson"] == '{"title":"t"}'


def test_chat_rejects_conversation_ending_with_assistant(client):
    resp = client.post("/api/chat", json={"messages": [
        {"id": "a1", "role": "assistant", "parts": [{"type": "text", "text": "hi"}]},
    ]})
    assert resp.status_code == 400


def test_chat_streams_events_and_done(client, pool, monkeypatch):
    adapter = FakeAdapter([
        llm_response("Loading.", [("c1", LOAD, {"file": "X"})]),
        llm_response("Checked. ---ANSWER--- 10 rows loaded.\n---FOLLOWUP---\nRun QC?"),
    ])

    def _turn(messages, **kwargs):
        return run_chat_turn(messages, adapter=adapter, pool=pool, **kwargs)

    monkeypatch.setattr(routes, "run_chat_turn", _turn)
    resp = client.post("/api/chat", json={"messages": [_wire_user("u1", "load X")], "session_id": "s1"})
    assert resp.status_code == 200

    events = _sse_events(resp.text)
    types = [e["type"] for e in events if e["type"] != "activity"]
    assert "text-delta" in types and "tool-call" in types and "tool-result" in types
    assert types[-2:] == ["finish", "done"]

    done = events[-1]
    assert done["followup"] == "Run QC?"
    assert done["display"]["finalText"] == "10 rows loaded."
    assert done["message"]["role"] == "assistant"
    assert len(done["workflow"]["nodes"]) == 1
    assert pool.calls == [(LOAD, {"file": "X"})]


def test_chat_reports_model_failure(client, pool, monkeypatch):
    adapter = FakeAdapter([RuntimeError("provider down")])
    monkeypatch.setattr(
        routes, "run_chat_turn",
        lambda messages, **kwargs: run_chat_turn(messages, adapter=adapter, pool=pool, **kwargs),
    )
    resp = client.post("/api/chat", json={"messages": [_wire_user("u1", "hi")]})
    events = _sse_events(resp.text)
    assert events[-1]["type"] == "error"
    assert events[-1]["status"] == 502
