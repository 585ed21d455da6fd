"""Shared fixtures: isolated data dir, fresh singletons, scripted LLM and tool pool."""

from typing import Any, Optional

import pytest

import config
from agent.event_bus import EventBus, reset_event_bus, set_event_bus
from agent.llm import ChatSession, FunctionSchema, LLMAdapter, LLMResponse, ToolCall, UsageMetadata
from agent.mcp_client import set_mcp_pool
from agent.messages import Message, TextPart, ToolCallPart, ToolResultPart
from agent.tool_cache import reset_tool_cache
from rendering import reset_artifact_compiler
from workflow import reset_workflow_trackers


# ---- Fakes ----

class FakeChatSession(ChatSession):
    """Replays scripted responses; an Exception in the script is raised instead."""

    def __init__(self, script: list, sent: list):
        self._script = list(script)
        self.sent = sent

    def send(self, message) -> LLMResponse:
        self.sent.append(message)
        if not self._script:
            return LLMResponse(text="", finish_reason="stop")
        item = self._script.pop(0)
        if isinstance(item, Exception):
            raise item
        return item

    def send_stream(self, message, on_chunk=None) -> LLMResponse:
        response = self.send(message)
        if on_chunk and response.text:
            # Two chunks so consecutive deltas are exercised
            half = len(response.text) // 2
            for chunk in (response.text[:half], response.text[half:]):
                if chunk:
                    on_chunk(chunk)
        return response

    def get_history(self) -> list[dict]:
        return []


class QuotaError(Exception):
    pass


class FakeAdapter(LLMAdapter):
    def __init__(self, script: Optional[list] = None, generate_text: str = "", generate_error=None):
        self.script = list(script or [])
        self.generate_text = generate_text
        self.generate_error = generate_error
        self.sent: list = []
        self.created: list[dict] = []
        self.prompts: list[str] = []

    def create_chat(self, model, system_prompt, tools=None, *, history=None, max_output_tokens=None):
        self.created.append({
            "model": model, "system_prompt": system_prompt,
            "tools": tools, "history": history,
        })
        return FakeChatSession(self.script, self.sent)

    def generate(self, model, contents, *, system_prompt=None, temperature=None, max_output_tokens=None):
        self.prompts.append(contents)
        if self.generate_error is not None:
            raise self.generate_error
        return LLMResponse(text=self.generate_text)

    def make_tool_result_message(self, tool_name, result, *, tool_call_id=None, is_error=False):
        return {"tool": tool_name, "id": tool_call_id, "result": result, "is_error": is_error}

    def convert_history(self, messages: list[Message]) -> list[dict]:
        return [{"role": m.role, "id": m.id} for m in messages]

    def is_quota_error(self, exc: Exception) -> bool:
        return isinstance(exc, QuotaError)


class FakePool:
    """Stands in for MCPClientPool with canned tool results."""

    def __init__(self, results: Optional[dict[str, Any]] = None, tools: Optional[list[str]] = None):
        self.results = dict(results or {})
        self.tools = list(tools or self.results)
        self.calls: list[tuple[str, dict]] = []
        self._closed = False

    def get_tool_schemas(self) -> list[dict]:
        return [
            {"name": t, "description": f"{t} tool", "parameters": {"type": "object", "properties": {}}}
            for t in self.tools
        ]

    def status(self) -> dict:
        servers = {}
        for t in self.tools:
            server = t.split("__")[0]
            entry = servers.setdefault(server, {"connected": True, "tools": 0, "error": None})
            entry["tools"] += 1
        return {"servers": servers, "total_tools": len(self.tools)}

    def call_tool(self, namespaced: str, args: dict, timeout: float = 120) -> dict:
        self.calls.append((namespaced, args))
        result = self.results.get(namespaced, {"status": "success"})
        if isinstance(result, Exception):
            raise result
        return result

    def close_all(self):
        self._closed = True


def llm_response(text: str = "", tool_calls: Optional[list] = None, finish_reason: Optional[str] = None):
    calls = [
        ToolCall(name=name, args=args, id=call_id)
        for call_id, name, args in (tool_calls or [])
    ]
    return LLMResponse(
        text=text,
        tool_calls=calls,
        usage=UsageMetadata(input_tokens=10, output_tokens=5),
        finish_reason=finish_reason or ("tool-calls" if calls else "stop"),
    )


# ---- Message builders ----

def user(msg_id: str, text: str, created_at: Optional[str] = None) -> Message:
    return Message(id=msg_id, role="user", parts=(TextPart(text),), created_at=created_at)


def assistant(msg_id: str, *parts, created_at: Optional[str] = None) -> Message:
    built = []
    for p in parts:
        built.append(TextPart(p) if isinstance(p, str) else p)
    return Message(id=msg_id, role="assistant", parts=tuple(built), created_at=created_at)


def tool_pair(call_id: str, name: str, args: dict, result: Any, is_error: bool = False) -> tuple:
    return (
        ToolCallPart(call_id, name, args),
        ToolResultPart(call_id, name, result, is_error),
    )


# ---- Fixtures ----

@pytest.fixture(autouse=True)
def data_dir(tmp_path, monkeypatch):
    """Every test gets its own EDACHAT_DIR and fresh process-wide singletons."""
    monkeypatch.setenv("EDACHAT_DIR", str(tmp_path / "edachat"))
    config._reset_data_dir()
    reset_tool_cache()
    reset_workflow_trackers()
    reset_artifact_compiler()
    yield tmp_path / "edachat"
    reset_tool_cache()
    reset_workflow_trackers()
    reset_artifact_compiler()
    set_mcp_pool(None)
    config._reset_data_dir()


@pytest.fixture
def bus():
    """An isolated EventBus for the current context."""
    event_bus = EventBus(session_id="test")
    token = set_event_bus(event_bus)
    yield event_bus
    reset_event_bus(token)


@pytest.fixture
def fake_pool():
    pool = FakePool({
        "analytics__load_compound_data": {"status": "success", "rowCount": 10},
        "analytics__calculate_cv": {"status": "success", "meanCv": 12.5},
    })
    set_mcp_pool(pool)
    return pool


@pytest.fixture
def schemas():
    return [FunctionSchema("analytics__load_compound_data", "Load compounds", {"type": "object"})]
